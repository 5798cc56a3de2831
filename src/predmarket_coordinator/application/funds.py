from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any

import structlog

from predmarket_coordinator.application.state import AppState
from predmarket_coordinator.domain.errors import (
    ActionInProgress,
    ApprovalFailed,
    CoordinatorError,
    InsufficientPlatformFunds,
    InsufficientWalletFunds,
    RemoteCallFailed,
    Unauthenticated,
)
from predmarket_coordinator.domain.models import (
    ActionKind,
    ActionPhase,
    ActionState,
    ActionStatus,
    BalanceSnapshot,
    PendingAction,
)
from predmarket_coordinator.ports.clock import ClockPort
from predmarket_coordinator.ports.ledger import LedgerPort, TxHandle, TxStatus
from predmarket_coordinator.util.amounts import to_units
from predmarket_coordinator.util.ids import new_action_id

logger = structlog.get_logger(__name__)


class FundsCoordinator:
    """Moves tokens between the wallet and platform escrow.

    Requests run one at a time. A deposit checks the wallet balance, re-reads
    the allowance, approves only when the allowance is short, waits for each
    transaction to confirm and then publishes one fresh balance snapshot.
    Progress is exposed through the ``funds`` slice of ``AppState``; the
    ``balances`` slice is only ever replaced by a complete snapshot.
    """

    def __init__(
        self,
        state: AppState,
        ledger: LedgerPort,
        clock: ClockPort,
        platform_address: str,
    ) -> None:
        self._state = state
        self._ledger = ledger
        self._clock = clock
        self._platform_address = platform_address
        self._busy: ActionKind | None = None
        self._step: PendingAction | None = None

    @property
    def busy(self) -> ActionKind | None:
        return self._busy

    async def read_snapshot(self) -> BalanceSnapshot:
        owner = self._require_account()
        read_seq = self._state.next_balance_seq()
        wallet, platform, allowance = await asyncio.gather(
            self._ledger.balance_of(owner),
            self._ledger.platform_balance(owner),
            self._ledger.allowance(owner, self._platform_address),
        )
        return BalanceSnapshot(
            owner=owner,
            wallet_balance=int(wallet),
            platform_balance=int(platform),
            allowance=int(allowance),
            taken_at_ms=self._clock.now_ms(),
            read_seq=read_seq,
        )

    def publish_snapshot(self, snapshot: BalanceSnapshot) -> bool:
        if snapshot.owner != self._state.current.account:
            logger.debug("balances_owner_changed", owner=snapshot.owner)
            return False
        published = self._state.publish_balances(snapshot)
        if published:
            logger.debug(
                "balances_published",
                wallet=snapshot.wallet_balance,
                platform=snapshot.platform_balance,
                allowance=snapshot.allowance,
                read_seq=snapshot.read_seq,
            )
        return published

    async def refresh_balances(self) -> BalanceSnapshot:
        snapshot = await self.read_snapshot()
        self.publish_snapshot(snapshot)
        return snapshot

    async def request_deposit(self, amount: Any) -> PendingAction:
        owner, units = self._admit(ActionKind.DEPOSIT, amount)
        try:
            self._set_phase(ActionPhase.CHECKING)
            snapshot = await self._known_snapshot()
            if units > snapshot.wallet_balance:
                raise InsufficientWalletFunds(units, snapshot.wallet_balance)
            allowance = await self._ledger.allowance(owner, self._platform_address)
            if allowance < units:
                await self._approve(owner, units)
            action = await self._run_step(
                ActionKind.DEPOSIT,
                ActionPhase.DEPOSITING,
                units,
                self._ledger.deposit(units),
            )
            logger.info("funds_deposit_confirmed", amount=units, tx_id=action.tx_id)
            await self._refresh_after(action)
            return action
        except CoordinatorError as exc:
            self._fail(exc)
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._fail_unclassified(exc) from exc
        finally:
            self._release()

    async def request_withdraw(self, amount: Any) -> PendingAction:
        _, units = self._admit(ActionKind.WITHDRAW, amount)
        try:
            self._set_phase(ActionPhase.CHECKING)
            snapshot = await self._known_snapshot()
            if units > snapshot.platform_balance:
                raise InsufficientPlatformFunds(units, snapshot.platform_balance)
            action = await self._run_step(
                ActionKind.WITHDRAW,
                ActionPhase.WITHDRAWING,
                units,
                self._ledger.withdraw(units),
            )
            logger.info("funds_withdraw_confirmed", amount=units, tx_id=action.tx_id)
            await self._refresh_after(action)
            return action
        except CoordinatorError as exc:
            self._fail(exc)
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._fail_unclassified(exc) from exc
        finally:
            self._release()

    async def request_mint(self, target_address: str | None, amount: Any) -> PendingAction:
        """Test faucet: mint tokens to ``target_address`` (the connected account by default)."""
        owner, units = self._admit(ActionKind.MINT, amount)
        target = target_address or owner
        try:
            action = await self._run_step(
                ActionKind.MINT,
                ActionPhase.MINTING,
                units,
                self._ledger.mint(target, units),
            )
            logger.info("funds_mint_confirmed", amount=units, target=target, tx_id=action.tx_id)
            self._set_phase(ActionPhase.REFRESHING, action=action)
            if target.lower() == owner.lower():
                await self._refresh_wallet(owner)
            self._set_phase(ActionPhase.SUCCEEDED, action=action)
            return action
        except CoordinatorError as exc:
            self._fail(exc)
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._fail_unclassified(exc) from exc
        finally:
            self._release()

    def clear_error(self) -> None:
        status = self._state.current.funds
        if self._busy is not None or status.phase is not ActionPhase.ERROR:
            return
        self._state.update(funds=ActionStatus(action=status.action))

    def _admit(self, kind: ActionKind, amount: Any) -> tuple[str, int]:
        if self._busy is not None:
            logger.info("funds_request_rejected", kind=kind.value, busy=self._busy.value)
            raise ActionInProgress(self._busy.value)
        try:
            owner = self._require_account()
            units = to_units(amount)
        except CoordinatorError as exc:
            logger.info("funds_request_rejected", kind=kind.value, reason=exc.message)
            self._state.update(
                funds=ActionStatus(
                    phase=ActionPhase.ERROR,
                    action=self._state.current.funds.action,
                    error=exc.message,
                    error_code=exc.code,
                )
            )
            raise
        self._busy = kind
        self._step = None
        return owner, units

    def _release(self) -> None:
        self._busy = None
        self._step = None

    def _require_account(self) -> str:
        account = self._state.current.account
        if not account:
            raise Unauthenticated()
        return account

    async def _known_snapshot(self) -> BalanceSnapshot:
        snapshot = self._state.current.balances
        if snapshot is not None:
            return snapshot
        return await self.refresh_balances()

    async def _approve(self, owner: str, units: int) -> None:
        try:
            await self._run_step(
                ActionKind.APPROVE,
                ActionPhase.APPROVING,
                units,
                self._ledger.approve(self._platform_address, units),
            )
            allowance = await self._ledger.allowance(owner, self._platform_address)
        except RemoteCallFailed as exc:
            raise ApprovalFailed(f"approval failed: {exc.message}") from exc
        if allowance < units:
            raise ApprovalFailed(
                f"allowance still {allowance} units after approving {units} units"
            )
        logger.info("funds_approve_confirmed", amount=units, allowance=allowance)

    async def _run_step(
        self,
        kind: ActionKind,
        phase: ActionPhase,
        units: int,
        submit: Awaitable[TxHandle],
    ) -> PendingAction:
        now_ms = self._clock.now_ms()
        action = PendingAction(
            action_id=new_action_id(),
            kind=kind,
            amount=units,
            created_ms=now_ms,
            updated_ms=now_ms,
        )
        self._track(phase, action)
        handle = await submit
        if kind is ActionKind.APPROVE:
            logger.info("funds_approve_submitted", amount=units, tx_id=handle.tx_id)
        action = action.advance(ActionState.CONFIRMING, self._clock.now_ms(), tx_id=handle.tx_id)
        self._track(phase, action)
        outcome = await handle.wait()
        if outcome is not TxStatus.CONFIRMED:
            raise RemoteCallFailed(f"{kind.value} transaction {handle.tx_id} reverted")
        action = action.advance(ActionState.SUCCEEDED, self._clock.now_ms())
        self._step = action
        self._set_phase(phase, action=action)
        return action

    async def _refresh_wallet(self, owner: str) -> None:
        current = self._state.current.balances
        if current is None:
            await self.refresh_balances()
            return
        read_seq = self._state.next_balance_seq()
        wallet = await self._ledger.balance_of(owner)
        self.publish_snapshot(
            current.model_copy(
                update={
                    "wallet_balance": int(wallet),
                    "taken_at_ms": self._clock.now_ms(),
                    "read_seq": read_seq,
                }
            )
        )

    async def _refresh_after(self, action: PendingAction) -> None:
        self._set_phase(ActionPhase.REFRESHING, action=action)
        self.publish_snapshot(await self.read_snapshot())
        self._set_phase(ActionPhase.SUCCEEDED, action=action)

    def _track(self, phase: ActionPhase, action: PendingAction) -> None:
        self._step = action
        self._state.update(funds=ActionStatus(phase=phase, action=action, in_flight=(action,)))

    def _set_phase(self, phase: ActionPhase, action: PendingAction | None = None) -> None:
        self._state.update(funds=ActionStatus(phase=phase, action=action))

    def _fail(self, exc: CoordinatorError) -> None:
        action = self._step
        if action is not None and not action.is_terminal:
            action = action.advance(ActionState.FAILED, self._clock.now_ms(), reason=exc.message)
        logger.warning(
            "funds_action_failed",
            kind=self._busy.value if self._busy else None,
            code=exc.code,
            reason=exc.message,
        )
        self._state.update(
            funds=ActionStatus(
                phase=ActionPhase.ERROR,
                action=action,
                error=exc.message,
                error_code=exc.code,
            )
        )

    def _fail_unclassified(self, exc: Exception) -> RemoteCallFailed:
        kind = self._busy.value if self._busy else "funds"
        failure = RemoteCallFailed(f"{kind} failed: {type(exc).__name__}: {exc}")
        self._fail(failure)
        return failure

