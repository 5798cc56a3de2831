from __future__ import annotations

import asyncio

import structlog

from predmarket_coordinator.application.state import AppState
from predmarket_coordinator.domain.errors import CoordinatorError, InvalidOrderParameters
from predmarket_coordinator.domain.models import Market, OrderBook
from predmarket_coordinator.ports.market_service import MarketServicePort

logger = structlog.get_logger(__name__)


class MarketBrowser:
    """Owns the market list, the selected market/outcome and its order book."""

    def __init__(self, state: AppState, service: MarketServicePort) -> None:
        self._state = state
        self._service = service

    async def load_markets(self, status: str | None = None) -> list[Market]:
        self._state.update(loading=True, error=None)
        try:
            markets = await self._service.list_markets(status)
        except CoordinatorError as exc:
            self._state.update(loading=False, error=exc.message)
            logger.warning("markets_load_failed", status=status, reason=exc.message)
            raise
        self._state.update(markets=tuple(markets), loading=False)
        logger.info("markets_loaded", status=status, count=len(markets))
        return markets

    async def select_market(self, market_id: int) -> Market:
        self._state.update(loading=True, error=None)
        try:
            market, trades = await asyncio.gather(
                self._service.get_market(market_id),
                self._service.list_trades(market_id),
            )
        except CoordinatorError as exc:
            self._state.update(loading=False, error=exc.message)
            logger.warning("market_select_failed", market_id=market_id, reason=exc.message)
            raise
        self._state.update(
            selected_market=market,
            selected_outcome=1,
            order_book=None,
            trades=tuple(trades),
            loading=False,
        )
        logger.info("market_selected", market_id=market.id, outcomes=market.outcome_count)
        return market

    def select_outcome(self, outcome: int) -> None:
        market = self._state.current.selected_market
        if market is None:
            raise InvalidOrderParameters("no market selected")
        if not (1 <= outcome <= market.outcome_count):
            raise InvalidOrderParameters(
                f"outcome must be between 1 and {market.outcome_count} for market {market.id}"
            )
        if outcome == self._state.current.selected_outcome:
            return
        self._state.update(selected_outcome=outcome, order_book=None)

    async def fetch_order_book(
        self,
        market_id: int | None = None,
        outcome: int | None = None,
    ) -> OrderBook:
        current = self._state.current
        if market_id is None:
            if current.selected_market is None:
                raise InvalidOrderParameters("no market selected")
            market_id = current.selected_market.id
        if outcome is None:
            outcome = current.selected_outcome
        return await self._service.get_order_book(market_id, outcome)

    def apply_order_book(self, book: OrderBook) -> bool:
        """Replace the order book slice unless the selection moved on meanwhile."""
        current = self._state.current
        selected = current.selected_market
        if (
            selected is None
            or selected.id != book.market_id
            or current.selected_outcome != book.outcome
        ):
            logger.debug("order_book_discarded", market_id=book.market_id, outcome=book.outcome)
            return False
        self._state.update(order_book=book)
        logger.debug(
            "order_book_refreshed",
            market_id=book.market_id,
            outcome=book.outcome,
            buys=len(book.buys),
            sells=len(book.sells),
        )
        return True

    async def refresh_order_book(self) -> OrderBook:
        book = await self.fetch_order_book()
        self.apply_order_book(book)
        return book
