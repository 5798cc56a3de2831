from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from predmarket_coordinator.application.state import AppState, StateChange, StateData
from predmarket_coordinator.domain.models import ActionPhase, ActionStatus, Order, OrderBook
from predmarket_coordinator.util.amounts import format_units


@dataclass(slots=True)
class DashboardSnapshot:
    state: StateData
    version: int
    last_change_age_s: float | None
    uptime_s: float


class TerminalDashboard:
    """Read-only rich view of ``AppState``; never writes back."""

    def __init__(
        self,
        state: AppState,
        refresh_hz: float,
        max_levels: int,
        max_orders: int,
    ) -> None:
        self._state = state
        self._refresh_hz = max(0.5, refresh_hz)
        self._max_levels = max(1, max_levels)
        self._max_orders = max(1, max_orders)
        self._last_change_ts: float | None = None
        self._start_ts = time.time()
        self._stop_event = asyncio.Event()
        self._console = Console()
        self._unsubscribe = state.subscribe(self._on_change)

    def _on_change(self, change: StateChange) -> None:
        self._last_change_ts = time.time()

    def snapshot(self) -> DashboardSnapshot:
        now = time.time()
        age = now - self._last_change_ts if self._last_change_ts is not None else None
        return DashboardSnapshot(
            state=self._state.current,
            version=self._state.version,
            last_change_age_s=age,
            uptime_s=now - self._start_ts,
        )

    async def run(self) -> None:
        refresh_sec = 1 / self._refresh_hz
        try:
            with Live(
                self.render(self.snapshot()),
                console=self._console,
                refresh_per_second=self._refresh_hz,
                transient=False,
            ) as live:
                while not self._stop_event.is_set():
                    live.update(self.render(self.snapshot()))
                    await asyncio.sleep(refresh_sec)
        except asyncio.CancelledError:
            self._stop_event.set()
            raise
        finally:
            self._unsubscribe()

    async def stop(self) -> None:
        self._stop_event.set()

    def render(self, snapshot: DashboardSnapshot) -> Group:
        state = snapshot.state
        return Group(
            _render_account(snapshot),
            _render_book(state, self._max_levels),
            _render_orders(state.user_orders, self._max_orders),
        )


def _render_account(snapshot: DashboardSnapshot) -> Table:
    state = snapshot.state
    title = f"Account {state.account or '(not connected)'}"
    table = Table(title=title, caption=_build_caption(snapshot), show_header=False)
    table.add_column("field", style="cyan", no_wrap=True)
    table.add_column("value", no_wrap=True)
    balances = state.balances
    table.add_row("wallet", format_units(balances.wallet_balance if balances else None))
    table.add_row("platform", format_units(balances.platform_balance if balances else None))
    table.add_row("allowance", format_units(balances.allowance if balances else None))
    table.add_row("funds", _fmt_status(state.funds))
    table.add_row("orders", _fmt_status(state.orders))
    for key, reason in sorted(state.refresh_errors.items()):
        table.add_row(Text(f"! {key}", style="yellow"), Text(reason, style="yellow"))
    if state.error:
        table.add_row(Text("error", style="bold red"), Text(state.error, style="red"))
    return table


def _render_book(state: StateData, max_levels: int) -> Table:
    market = state.selected_market
    if market is None:
        return Table(title="Order book (no market selected)")
    outcome_name = (
        market.outcomes[state.selected_outcome - 1]
        if 0 < state.selected_outcome <= market.outcome_count
        else str(state.selected_outcome)
    )
    table = Table(title=f"#{market.id} {market.question} [{outcome_name}]")
    table.add_column("bid qty", justify="right")
    table.add_column("bid", justify="right", style="green")
    table.add_column("ask", justify="right", style="red")
    table.add_column("ask qty", justify="right")
    book: OrderBook | None = state.order_book
    if book is None or (not book.buys and not book.sells):
        table.add_row("—", "—", "—", "—")
        return table
    depth = min(max_levels, max(len(book.buys), len(book.sells)))
    for index in range(depth):
        bid = book.buys[index] if index < len(book.buys) else None
        ask = book.sells[index] if index < len(book.sells) else None
        table.add_row(
            _fmt_qty(bid.quantity if bid else None),
            _fmt_price(bid.price if bid else None),
            _fmt_price(ask.price if ask else None),
            _fmt_qty(ask.quantity if ask else None),
        )
    return table


def _render_orders(orders: tuple[Order, ...], max_orders: int) -> Table:
    table = Table(title=f"Orders ({len(orders)})")
    table.add_column("id", no_wrap=True)
    table.add_column("market", no_wrap=True)
    table.add_column("outcome", no_wrap=True)
    table.add_column("side", no_wrap=True)
    table.add_column("price", justify="right")
    table.add_column("filled/qty", justify="right")
    table.add_column("status", no_wrap=True)
    if not orders:
        table.add_row("-", "-", "-", "-", "-", "-", "-")
        return table
    for order in orders[:max_orders]:
        style = None if order.is_active else "bright_black"
        table.add_row(
            str(order.id),
            str(order.market_id),
            str(order.outcome),
            _fmt_side(order.side.value),
            _fmt_price(order.price),
            f"{_fmt_qty(order.filled_quantity)}/{_fmt_qty(order.quantity)}",
            order.status.value,
            style=style,
        )
    return table


def _fmt_status(status: ActionStatus) -> Text:
    if status.phase is ActionPhase.ERROR:
        return Text(f"error: {status.error}", style="bold red")
    label = status.phase.value
    if status.in_flight:
        label = f"{label} ({len(status.in_flight)} in flight)"
    style = "green" if status.phase is ActionPhase.SUCCEEDED else None
    return Text(label, style=style)


def _fmt_price(value: Decimal | None) -> str:
    if value is None:
        return "—"
    return f"{value * 100:.1f}¢"


def _fmt_qty(value: Decimal | None) -> str:
    if value is None:
        return "—"
    return f"{value.normalize():f}"


def _fmt_side(value: str) -> Text:
    upper = value.upper()
    if upper == "BUY":
        return Text(upper, style="bold green")
    return Text(upper, style="bold red")


def _build_caption(snapshot: DashboardSnapshot) -> str:
    change = (
        f"last change {snapshot.last_change_age_s:.0f}s ago"
        if snapshot.last_change_age_s is not None
        else "no changes yet"
    )
    return f"v{snapshot.version} | {change} | up {snapshot.uptime_s / 60:.1f}m"
