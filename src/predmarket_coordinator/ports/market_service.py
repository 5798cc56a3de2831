from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from predmarket_coordinator.domain.models import (
    Market,
    Order,
    OrderBook,
    OrderSide,
    PlacedOrder,
    Trade,
)


class MarketServicePort(Protocol):
    async def list_markets(self, status: str | None = None) -> list[Market]: ...

    async def get_market(self, market_id: int) -> Market: ...

    async def list_trades(self, market_id: int) -> list[Trade]: ...

    async def get_order_book(self, market_id: int, outcome: int) -> OrderBook: ...

    async def place_order(
        self,
        market_id: int,
        outcome: int,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
        user_address: str,
    ) -> PlacedOrder: ...

    async def cancel_order(self, order_id: int, user_address: str) -> Order | None: ...

    async def list_user_orders(
        self,
        user_address: str,
        status: str | None = None,
    ) -> list[Order]: ...

    async def close(self) -> None: ...
