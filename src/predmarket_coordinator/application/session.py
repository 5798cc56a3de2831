from __future__ import annotations

import asyncio

import structlog

from predmarket_coordinator.application.dashboard import TerminalDashboard
from predmarket_coordinator.application.funds import FundsCoordinator
from predmarket_coordinator.application.markets import MarketBrowser
from predmarket_coordinator.application.orders import OrderLifecycleManager
from predmarket_coordinator.application.scheduler import (
    BALANCES_KEY,
    ORDERS_KEY,
    RefreshScheduler,
    order_book_key,
)
from predmarket_coordinator.application.state import AppState
from predmarket_coordinator.domain.errors import CoordinatorError, Unauthenticated
from predmarket_coordinator.domain.models import Market
from predmarket_coordinator.ports.clock import ClockPort
from predmarket_coordinator.ports.ledger import LedgerPort
from predmarket_coordinator.ports.market_service import MarketServicePort

logger = structlog.get_logger(__name__)


class TradingSession:
    """Wires the coordinators to one shared ``AppState`` and the polling keys.

    Connecting an account starts the balance poll (and the order poll when
    enabled); watching a market starts its order-book poll. Background
    failures only flag ``refresh_errors``; the next tick tries again.
    """

    def __init__(
        self,
        state: AppState,
        ledger: LedgerPort,
        service: MarketServicePort,
        clock: ClockPort,
        platform_address: str,
        balances_interval_sec: float,
        order_book_interval_sec: float,
        orders_interval_sec: float | None = None,
        dashboard: TerminalDashboard | None = None,
    ) -> None:
        self.state = state
        self._ledger = ledger
        self._service = service
        self._balances_interval_sec = balances_interval_sec
        self._order_book_interval_sec = order_book_interval_sec
        self._orders_interval_sec = orders_interval_sec
        self._dashboard = dashboard
        self.scheduler = RefreshScheduler(
            clock,
            on_error=self._on_poll_error,
            on_success=self._on_poll_success,
        )
        self.funds = FundsCoordinator(state, ledger, clock, platform_address)
        self.orders = OrderLifecycleManager(state, service, clock)
        self.markets = MarketBrowser(state, service)
        self._book_key: str | None = None
        self._stop_event = asyncio.Event()
        self._closed = False

    @property
    def order_book_key(self) -> str | None:
        return self._book_key

    async def connect(self, address: str, poll: bool = True) -> None:
        """Bind ``address`` as the acting account; with ``poll`` also start its refresh keys."""
        address = (address or "").strip()
        if not address:
            raise Unauthenticated("wallet address is empty")
        current = self.state.current.account
        if current == address:
            return
        if current is not None:
            await self.disconnect()

        self._ledger.bind_account(address)
        self.state.update(account=address, balances=None, user_orders=())
        logger.info("account_connected", account=address, poll=poll)
        if not poll:
            return

        self.scheduler.start(
            BALANCES_KEY,
            self._balances_interval_sec,
            self.funds.read_snapshot,
            self.funds.publish_snapshot,
        )
        if self._orders_interval_sec:
            self.scheduler.start(
                ORDERS_KEY,
                self._orders_interval_sec,
                lambda: self.orders.fetch_orders(address),
                lambda orders: self.orders.apply_orders(orders, address),
            )
        try:
            await self.orders.refresh_orders(address)
        except CoordinatorError as exc:
            logger.warning("orders_refresh_failed", account=address, reason=exc.message)
            self.state.set_refresh_error(ORDERS_KEY, exc.message)

    async def disconnect(self) -> None:
        account = self.state.current.account
        self.scheduler.stop(BALANCES_KEY)
        self.scheduler.stop(ORDERS_KEY)
        self._ledger.bind_account(None)
        errors = {
            key: reason
            for key, reason in self.state.current.refresh_errors.items()
            if key not in {BALANCES_KEY, ORDERS_KEY}
        }
        self.state.update(account=None, balances=None, user_orders=(), refresh_errors=errors)
        if account is not None:
            logger.info("account_disconnected", account=account)

    async def watch_order_book(self, market_id: int, outcome: int = 1) -> Market:
        """Select ``market_id`` and poll its book for ``outcome``, replacing any previous watch."""
        self._stop_book_poll()
        market = await self.markets.select_market(market_id)
        if outcome != 1:
            self.markets.select_outcome(outcome)
        key = order_book_key(market.id, outcome)
        self.scheduler.start(
            key,
            self._order_book_interval_sec,
            lambda: self.markets.fetch_order_book(market.id, outcome),
            self.markets.apply_order_book,
        )
        self._book_key = key
        return market

    async def run(self) -> None:
        logger.info("session_start", account=self.state.current.account)
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._stop_event.wait())
                if self._dashboard is not None:
                    tg.create_task(self._dashboard.run())
        finally:
            await self.aclose()

    async def stop(self) -> None:
        self._stop_event.set()
        if self._dashboard is not None:
            await self._dashboard.stop()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()
        if self._dashboard is not None:
            await self._dashboard.stop()
        await self.scheduler.aclose()
        await self._service.close()
        logger.info("session_shutdown")

    def _stop_book_poll(self) -> None:
        if self._book_key is None:
            return
        self.scheduler.stop(self._book_key)
        self.state.set_refresh_error(self._book_key, None)
        self._book_key = None

    def _on_poll_error(self, key: str, exc: Exception) -> None:
        reason = exc.message if isinstance(exc, CoordinatorError) else str(exc)
        self.state.set_refresh_error(key, reason or type(exc).__name__)

    def _on_poll_success(self, key: str) -> None:
        self.state.set_refresh_error(key, None)
