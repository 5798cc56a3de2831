from __future__ import annotations

from decimal import Decimal
from typing import Any

import structlog

from predmarket_coordinator.application.scheduler import ORDERS_KEY
from predmarket_coordinator.application.state import AppState
from predmarket_coordinator.domain.errors import (
    CoordinatorError,
    InvalidOrderParameters,
    Unauthenticated,
)
from predmarket_coordinator.domain.models import (
    ActionKind,
    ActionPhase,
    ActionState,
    ActionStatus,
    Market,
    Order,
    OrderSide,
    PendingAction,
    PlacedOrder,
)
from predmarket_coordinator.ports.clock import ClockPort
from predmarket_coordinator.ports.market_service import MarketServicePort
from predmarket_coordinator.util.amounts import to_decimal
from predmarket_coordinator.util.ids import new_action_id

logger = structlog.get_logger(__name__)

MIN_PRICE = Decimal("0.01")
MAX_PRICE = Decimal("0.99")


class OrderLifecycleManager:
    """Places and cancels orders, treating the matching service as the source of truth.

    The cached order list is never edited locally: every successful placement
    or cancellation is followed by a full re-fetch that replaces it.
    """

    def __init__(self, state: AppState, service: MarketServicePort, clock: ClockPort) -> None:
        self._state = state
        self._service = service
        self._clock = clock
        self._in_flight: dict[str, PendingAction] = {}

    async def place_order(
        self,
        market_id: Any,
        outcome: Any,
        side: Any,
        price: Any,
        quantity: Any,
        user_address: str | None = None,
    ) -> PlacedOrder:
        try:
            address = self._require_address(user_address)
            order_side = _parse_side(side)
            order_price = _parse_price(price)
            order_quantity = _parse_quantity(quantity)
            target_market = _parse_positive_int(market_id, "market id")
        except CoordinatorError as exc:
            self._reject(ActionKind.PLACE, exc)
            raise

        try:
            market = await self._resolve_market(target_market)
        except CoordinatorError as exc:
            logger.warning(
                "order_market_lookup_failed", market_id=target_market, reason=exc.message
            )
            self._set_error(exc)
            raise

        try:
            order_outcome = _parse_outcome(outcome, market)
        except CoordinatorError as exc:
            self._reject(ActionKind.PLACE, exc)
            raise

        action = self._start(ActionKind.PLACE, ActionPhase.SUBMITTING)
        try:
            placed = await self._service.place_order(
                market.id,
                order_outcome,
                order_side,
                order_price,
                order_quantity,
                address,
            )
        except CoordinatorError as exc:
            self._fail(action, exc)
            logger.warning("order_place_failed", market_id=market.id, reason=exc.message)
            raise

        action = action.advance(
            ActionState.SUCCEEDED,
            self._clock.now_ms(),
            order_id=placed.order.id,
        )
        logger.info(
            "order_placed",
            order_id=placed.order.id,
            market_id=market.id,
            outcome=order_outcome,
            side=order_side.value,
            price=str(order_price),
            quantity=str(order_quantity),
            status=placed.order.status.value,
            trades=len(placed.trades),
        )
        await self._refresh_after(action, address)
        return placed

    async def cancel_order(self, order_id: Any, user_address: str | None = None) -> Order | None:
        """Ask the service to cancel ``order_id``.

        No local status check is made; the service decides. Whether it accepts
        or rejects the cancel, the order list is re-fetched afterwards.
        """
        try:
            address = self._require_address(user_address)
            target = _parse_positive_int(order_id, "order id")
        except CoordinatorError as exc:
            self._reject(ActionKind.CANCEL, exc)
            raise

        action = self._start(ActionKind.CANCEL, ActionPhase.CANCELLING, order_id=target)
        try:
            cancelled = await self._service.cancel_order(target, address)
        except CoordinatorError as exc:
            self._fail(action, exc)
            logger.warning("order_cancel_failed", order_id=target, reason=exc.message)
            if not isinstance(exc, Unauthenticated):
                await self._refresh_quietly(address)
            raise

        action = action.advance(ActionState.SUCCEEDED, self._clock.now_ms())
        logger.info("order_cancelled", order_id=target)
        await self._refresh_after(action, address)
        return cancelled

    async def refresh_orders(
        self,
        user_address: str | None = None,
        status: str | None = None,
    ) -> list[Order]:
        address = self._require_address(user_address)
        orders = await self.fetch_orders(address, status)
        self.apply_orders(orders, address)
        self._state.set_refresh_error(ORDERS_KEY, None)
        return orders

    async def fetch_orders(self, user_address: str, status: str | None = None) -> list[Order]:
        return await self._service.list_user_orders(user_address, status)

    def apply_orders(self, orders: list[Order], user_address: str | None = None) -> bool:
        account = self._state.current.account
        if user_address is not None and user_address != account:
            logger.debug("orders_owner_changed", owner=user_address)
            return False
        self._state.update(user_orders=tuple(orders))
        logger.debug("orders_refreshed", count=len(orders))
        return True

    def clear_error(self) -> None:
        status = self._state.current.orders
        if status.phase is not ActionPhase.ERROR:
            return
        self._state.update(
            orders=ActionStatus(
                phase=ActionPhase.IDLE,
                action=status.action,
                in_flight=tuple(self._in_flight.values()),
            )
        )

    def _require_address(self, user_address: str | None) -> str:
        address = user_address or self._state.current.account
        if not address:
            raise Unauthenticated()
        return address

    async def _resolve_market(self, market_id: int) -> Market:
        current = self._state.current
        if current.selected_market is not None and current.selected_market.id == market_id:
            return current.selected_market
        for market in current.markets:
            if market.id == market_id:
                return market
        return await self._service.get_market(market_id)

    async def _refresh_after(self, action: PendingAction, address: str) -> None:
        self._publish(ActionPhase.REFRESHING, action)
        await self._refresh_quietly(address)
        self._publish(ActionPhase.SUCCEEDED, action)

    async def _refresh_quietly(self, address: str) -> None:
        try:
            await self.refresh_orders(address)
        except CoordinatorError as exc:
            logger.warning("orders_refresh_failed", reason=exc.message)
            self._state.set_refresh_error(ORDERS_KEY, exc.message)

    def _start(
        self,
        kind: ActionKind,
        phase: ActionPhase,
        order_id: int | None = None,
    ) -> PendingAction:
        now_ms = self._clock.now_ms()
        action = PendingAction(
            action_id=new_action_id(),
            kind=kind,
            order_id=order_id,
            created_ms=now_ms,
            updated_ms=now_ms,
        )
        self._publish(phase, action)
        return action

    def _fail(self, action: PendingAction, exc: CoordinatorError) -> None:
        failed = action.advance(ActionState.FAILED, self._clock.now_ms(), reason=exc.message)
        self._publish(ActionPhase.ERROR, failed, error=exc.message, error_code=exc.code)

    def _reject(self, kind: ActionKind, exc: CoordinatorError) -> None:
        logger.info("order_rejected_locally", kind=kind.value, code=exc.code, reason=exc.message)
        self._set_error(exc)

    def _set_error(self, exc: CoordinatorError) -> None:
        self._state.update(
            orders=ActionStatus(
                phase=ActionPhase.ERROR,
                action=self._state.current.orders.action,
                in_flight=tuple(self._in_flight.values()),
                error=exc.message,
                error_code=exc.code,
            )
        )

    def _publish(
        self,
        phase: ActionPhase,
        action: PendingAction,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        if action.is_terminal and phase is not ActionPhase.REFRESHING:
            self._in_flight.pop(action.action_id, None)
        else:
            self._in_flight[action.action_id] = action
        self._state.update(
            orders=ActionStatus(
                phase=phase,
                action=action,
                in_flight=tuple(self._in_flight.values()),
                error=error,
                error_code=error_code,
            )
        )


def _parse_side(value: Any) -> OrderSide:
    try:
        return OrderSide(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidOrderParameters(f"side must be buy or sell, got {value!r}") from exc


def _parse_price(value: Any) -> Decimal:
    price = to_decimal(value)
    if price is None:
        raise InvalidOrderParameters(f"price is not a number: {value!r}")
    if not (MIN_PRICE <= price <= MAX_PRICE):
        raise InvalidOrderParameters(f"price must be between {MIN_PRICE} and {MAX_PRICE}")
    return price


def _parse_quantity(value: Any) -> Decimal:
    quantity = to_decimal(value)
    if quantity is None:
        raise InvalidOrderParameters(f"quantity is not a number: {value!r}")
    if quantity <= 0:
        raise InvalidOrderParameters("quantity must be greater than 0")
    return quantity


def _parse_positive_int(value: Any, label: str) -> int:
    number = to_decimal(value)
    if number is None or number != number.to_integral_value() or number <= 0:
        raise InvalidOrderParameters(f"{label} must be a positive integer, got {value!r}")
    return int(number)


def _parse_outcome(value: Any, market: Market) -> int:
    number = to_decimal(value)
    if number is None or number != number.to_integral_value():
        raise InvalidOrderParameters(f"outcome must be an integer, got {value!r}")
    outcome = int(number)
    if not (1 <= outcome <= market.outcome_count):
        raise InvalidOrderParameters(
            f"outcome must be between 1 and {market.outcome_count} for market {market.id}"
        )
    return outcome
