from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog
from pydantic import ValidationError

from predmarket_coordinator.domain.models import (
    Market,
    MarketStatus,
    Order,
    OrderBook,
    PlacedOrder,
    PriceLevel,
    Trade,
)
from predmarket_coordinator.util.amounts import to_decimal

logger = structlog.get_logger(__name__)


def _to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        num = float(value)
        if num > 10_000_000_000:  # milliseconds
            num /= 1000
        return datetime.fromtimestamp(num, tz=UTC)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _parse_outcomes(value: Any) -> list[str]:
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return [item.strip() for item in text.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return []


def parse_market(raw: dict[str, Any]) -> Market | None:
    market_id = _to_int(raw.get("id") or raw.get("market_id"))
    if market_id is None:
        return None
    status_raw = str(raw.get("status") or MarketStatus.PENDING.value).lower()
    if status_raw not in MarketStatus._value2member_map_:
        logger.debug("market_status_unknown", market_id=market_id, status=status_raw)
        status_raw = MarketStatus.PENDING.value
    return Market(
        id=market_id,
        question=str(raw.get("question") or ""),
        description=str(raw.get("description") or ""),
        outcomes=_parse_outcomes(raw.get("outcomes")),
        end_time=_parse_datetime(raw.get("end_time")),
        resolution_time=_parse_datetime(raw.get("resolution_time")),
        resolved_outcome=_to_int(raw.get("resolved_outcome")),
        status=MarketStatus(status_raw),
    )


def parse_order(raw: dict[str, Any]) -> Order | None:
    order_id = _to_int(raw.get("id"))
    market_id = _to_int(raw.get("market_id"))
    outcome = _to_int(raw.get("outcome"))
    price = to_decimal(raw.get("price"))
    quantity = to_decimal(raw.get("quantity"))
    if None in (order_id, market_id, outcome, price, quantity):
        logger.warning("order_payload_incomplete", order_id=raw.get("id"))
        return None
    try:
        return Order(
            id=order_id,
            market_id=market_id,
            user_address=str(raw.get("user_address") or ""),
            outcome=outcome,
            side=str(raw.get("side") or "").lower(),
            price=price,
            quantity=quantity,
            filled_quantity=to_decimal(raw.get("filled_quantity")) or Decimal(0),
            status=str(raw.get("status") or "open").lower(),
            created_at=_parse_datetime(raw.get("created_at")),
        )
    except ValidationError as exc:
        logger.warning("order_payload_invalid", order_id=order_id, error=str(exc))
        return None


def parse_trade(raw: dict[str, Any]) -> Trade | None:
    trade_id = _to_int(raw.get("id"))
    market_id = _to_int(raw.get("market_id"))
    price = to_decimal(raw.get("price"))
    quantity = to_decimal(raw.get("quantity"))
    if trade_id is None or market_id is None or price is None or quantity is None:
        return None
    return Trade(
        id=trade_id,
        market_id=market_id,
        outcome=_to_int(raw.get("outcome")) or 1,
        price=price,
        quantity=quantity,
        created_at=_parse_datetime(raw.get("created_at")),
    )


def _parse_levels(raw_levels: Any) -> list[PriceLevel]:
    levels: list[PriceLevel] = []
    if not isinstance(raw_levels, list):
        return levels
    for level in raw_levels:
        if isinstance(level, dict):
            price = to_decimal(level.get("price"))
            quantity = to_decimal(level.get("quantity"))
        elif isinstance(level, (list, tuple)) and len(level) >= 2:
            price = to_decimal(level[0])
            quantity = to_decimal(level[1])
        else:
            continue
        if price is None or quantity is None:
            continue
        levels.append(PriceLevel(price=price, quantity=quantity))
    return levels


def parse_order_book(
    payload: Any,
    market_id: int,
    outcome: int,
    fetched_at_ms: int,
) -> OrderBook:
    data = payload if isinstance(payload, dict) else {}
    buys = _parse_levels(data.get("buys"))
    sells = _parse_levels(data.get("sells"))
    buys.sort(key=lambda level: level.price, reverse=True)
    sells.sort(key=lambda level: level.price)
    return OrderBook(
        market_id=market_id,
        outcome=outcome,
        buys=buys,
        sells=sells,
        fetched_at_ms=fetched_at_ms,
    )


def parse_placed_order(payload: Any) -> PlacedOrder | None:
    if not isinstance(payload, dict):
        return None
    order_raw = payload.get("order") if isinstance(payload.get("order"), dict) else payload
    order = parse_order(order_raw)
    if order is None:
        return None
    trades_raw = payload.get("trades") or []
    trades = [
        trade
        for trade in (parse_trade(item) for item in trades_raw if isinstance(item, dict))
        if trade is not None
    ]
    return PlacedOrder(order=order, trades=trades)


def parse_items(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("data") or payload.get("results") or []
    else:
        items = []
    return [item for item in items if isinstance(item, dict)]
