from __future__ import annotations

from enum import StrEnum
from typing import Protocol


class TxStatus(StrEnum):
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TxHandle(Protocol):
    """A submitted write; resolves once the ledger confirms or reverts it."""

    tx_id: str

    async def wait(self) -> TxStatus: ...


class LedgerPort(Protocol):
    def bind_account(self, account: str | None) -> None: ...

    async def balance_of(self, account: str) -> int: ...

    async def allowance(self, owner: str, spender: str) -> int: ...

    async def platform_balance(self, user: str) -> int: ...

    async def approve(self, spender: str, amount: int) -> TxHandle: ...

    async def deposit(self, amount: int) -> TxHandle: ...

    async def withdraw(self, amount: int) -> TxHandle: ...

    async def mint(self, to: str, amount: int) -> TxHandle: ...
