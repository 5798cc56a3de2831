from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from predmarket_coordinator.domain.models import (
    ActionStatus,
    BalanceSnapshot,
    Market,
    Order,
    OrderBook,
    Trade,
)

logger = structlog.get_logger(__name__)


class Slice(StrEnum):
    ACCOUNT = "account"
    MARKETS = "markets"
    SELECTED_MARKET = "selected_market"
    SELECTED_OUTCOME = "selected_outcome"
    ORDER_BOOK = "order_book"
    TRADES = "trades"
    USER_ORDERS = "user_orders"
    BALANCES = "balances"
    FUNDS = "funds"
    ORDERS = "orders"
    LOADING = "loading"
    ERROR = "error"
    REFRESH_ERRORS = "refresh_errors"


class StateData(BaseModel):
    """One immutable view of everything the presentation layer can read."""

    model_config = ConfigDict(frozen=True)

    account: str | None = None
    markets: tuple[Market, ...] = ()
    selected_market: Market | None = None
    selected_outcome: int = 1
    order_book: OrderBook | None = None
    trades: tuple[Trade, ...] = ()
    user_orders: tuple[Order, ...] = ()
    balances: BalanceSnapshot | None = None
    funds: ActionStatus = Field(default_factory=ActionStatus)
    orders: ActionStatus = Field(default_factory=ActionStatus)
    loading: bool = False
    error: str | None = None
    refresh_errors: dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StateChange:
    version: int
    slices: frozenset[Slice]
    state: StateData


StateListener = Callable[[StateChange], None]


class AppState:
    """Explicit state container shared by the coordinators.

    Every ``update`` swaps the whole ``StateData`` in one step and then tells
    each subscriber once which slices changed. Subscribers never observe a
    half-applied update.
    """

    def __init__(self, initial: StateData | None = None) -> None:
        self._data = initial or StateData()
        self._version = 0
        self._listeners: list[StateListener] = []
        self._balance_seq = 0

    @property
    def current(self) -> StateData:
        return self._data

    @property
    def version(self) -> int:
        return self._version

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, **changes: Any) -> StateChange | None:
        unknown = set(changes) - set(Slice._value2member_map_)
        if unknown:
            raise KeyError(f"unknown state slices: {sorted(unknown)}")
        changed = {
            Slice(name)
            for name, value in changes.items()
            if getattr(self._data, name) != value
        }
        if not changed:
            return None
        self._data = self._data.model_copy(
            update={name.value: changes[name.value] for name in changed}
        )
        self._version += 1
        change = StateChange(version=self._version, slices=frozenset(changed), state=self._data)
        self._notify(change)
        return change

    def next_balance_seq(self) -> int:
        self._balance_seq += 1
        return self._balance_seq

    def publish_balances(self, snapshot: BalanceSnapshot) -> bool:
        """Swap in a balance snapshot unless a newer read was already published."""
        current = self._data.balances
        if current is not None and snapshot.read_seq < current.read_seq:
            logger.debug(
                "balances_stale_read_dropped",
                read_seq=snapshot.read_seq,
                current_seq=current.read_seq,
            )
            return False
        self.update(balances=snapshot)
        return True

    def set_refresh_error(self, key: str, reason: str | None) -> None:
        errors = dict(self._data.refresh_errors)
        if reason is None:
            if key not in errors:
                return
            errors.pop(key)
        else:
            errors[key] = reason
        self.update(refresh_errors=errors)

    def _notify(self, change: StateChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "state_listener_failed",
                    error=str(exc),
                    slices=sorted(change.slices),
                )
