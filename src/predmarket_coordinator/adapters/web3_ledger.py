from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, TypeVar

import aiohttp
import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, Web3Exception

from predmarket_coordinator.domain.errors import RemoteCallFailed, Unauthenticated
from predmarket_coordinator.ports.ledger import TxStatus

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PLATFORM_ABI: list[dict[str, Any]] = [
    {
        "name": "deposit",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "balances",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

TOKEN_ABI: list[dict[str, Any]] = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "mint",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
]

_RPC_ERRORS = (
    Web3Exception,
    aiohttp.ClientError,
    ValueError,
    OSError,
    asyncio.TimeoutError,
)


@dataclass(slots=True)
class Web3TxHandle:
    tx_id: str
    ledger: Web3Ledger

    async def wait(self) -> TxStatus:
        return await self.ledger.wait_for_receipt(self.tx_id)


class Web3Ledger:
    """Token and settlement contracts reached over JSON-RPC.

    Transactions are sent from the bound account; signing happens in the node
    or wallet behind ``rpc_url``.
    """

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        platform_address: str,
        receipt_timeout_sec: float = 180.0,
        receipt_poll_sec: float = 1.0,
        account: str | None = None,
    ) -> None:
        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._token = self._w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=TOKEN_ABI,
        )
        self._platform = self._w3.eth.contract(
            address=Web3.to_checksum_address(platform_address),
            abi=PLATFORM_ABI,
        )
        self._platform_address = Web3.to_checksum_address(platform_address)
        self._receipt_timeout_sec = receipt_timeout_sec
        self._receipt_poll_sec = receipt_poll_sec
        self._account: str | None = None
        self.bind_account(account)

    @property
    def platform_address(self) -> str:
        return self._platform_address

    def bind_account(self, account: str | None) -> None:
        self._account = Web3.to_checksum_address(account) if account else None

    async def balance_of(self, account: str) -> int:
        call = self._token.functions.balanceOf(_checksum(account)).call()
        return int(await self._guard("balanceOf", call))

    async def allowance(self, owner: str, spender: str) -> int:
        call = self._token.functions.allowance(_checksum(owner), _checksum(spender)).call()
        return int(await self._guard("allowance", call))

    async def platform_balance(self, user: str) -> int:
        call = self._platform.functions.balances(_checksum(user)).call()
        return int(await self._guard("balances", call))

    async def approve(self, spender: str, amount: int) -> Web3TxHandle:
        fn = self._token.functions.approve(_checksum(spender), amount)
        return await self._transact("approve", fn)

    async def deposit(self, amount: int) -> Web3TxHandle:
        return await self._transact("deposit", self._platform.functions.deposit(amount))

    async def withdraw(self, amount: int) -> Web3TxHandle:
        return await self._transact("withdraw", self._platform.functions.withdraw(amount))

    async def mint(self, to: str, amount: int) -> Web3TxHandle:
        return await self._transact("mint", self._token.functions.mint(_checksum(to), amount))

    async def wait_for_receipt(self, tx_id: str) -> TxStatus:
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_id,
                timeout=self._receipt_timeout_sec,
                poll_latency=self._receipt_poll_sec,
            )
        except TimeExhausted as exc:
            raise RemoteCallFailed(f"no receipt for {tx_id} yet: {exc}") from exc
        except _RPC_ERRORS as exc:
            raise RemoteCallFailed(f"receipt lookup failed for {tx_id}: {exc}") from exc
        status = receipt.get("status") if hasattr(receipt, "get") else receipt["status"]
        return TxStatus.CONFIRMED if status == 1 else TxStatus.FAILED

    async def _transact(self, name: str, fn: Any) -> Web3TxHandle:
        if self._account is None:
            raise Unauthenticated()
        tx_hash = await self._guard(name, fn.transact({"from": self._account}))
        tx_id = tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)
        if not tx_id.startswith("0x"):
            tx_id = f"0x{tx_id}"
        logger.info("ledger_tx_sent", function=name, tx_id=tx_id)
        return Web3TxHandle(tx_id=tx_id, ledger=self)

    @staticmethod
    async def _guard(name: str, pending: Awaitable[T]) -> T:
        try:
            return await pending
        except _RPC_ERRORS as exc:
            raise RemoteCallFailed(f"{name} call failed: {exc}") from exc


def _checksum(address: str) -> str:
    try:
        return Web3.to_checksum_address(address)
    except ValueError as exc:
        raise RemoteCallFailed(f"invalid address: {address}") from exc
