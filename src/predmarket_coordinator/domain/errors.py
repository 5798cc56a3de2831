"""Classified failures surfaced by the coordinators.

Precondition errors are raised before any remote call. Remote errors carry the
reason reported by the ledger or the matching service.
"""

from __future__ import annotations


class CoordinatorError(Exception):
    """Base error with a stable machine-readable code."""

    code = "coordinator_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class Unauthenticated(CoordinatorError):
    code = "unauthenticated"

    def __init__(self, message: str = "no wallet connected") -> None:
        super().__init__(message)


class InvalidAmount(CoordinatorError):
    code = "invalid_amount"


class InsufficientWalletFunds(CoordinatorError):
    code = "insufficient_wallet_funds"

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"insufficient wallet balance: required {required} units, available {available} units"
        )


class InsufficientPlatformFunds(CoordinatorError):
    code = "insufficient_platform_funds"

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"insufficient platform balance: required {required} units, "
            f"available {available} units"
        )


class InvalidOrderParameters(CoordinatorError):
    code = "invalid_order_parameters"


class ApprovalFailed(CoordinatorError):
    code = "approval_failed"


class ActionInProgress(CoordinatorError):
    code = "action_in_progress"

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"another {kind} action is still in progress")


class RemoteCallFailed(CoordinatorError):
    code = "remote_call_failed"

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)
