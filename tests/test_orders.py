from __future__ import annotations

from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from predmarket_coordinator.application.orders import OrderLifecycleManager
from predmarket_coordinator.application.scheduler import ORDERS_KEY
from predmarket_coordinator.application.state import AppState
from predmarket_coordinator.domain.errors import (
    InvalidOrderParameters,
    RemoteCallFailed,
    Unauthenticated,
)
from predmarket_coordinator.domain.models import (
    ActionKind,
    ActionPhase,
    ActionState,
    OrderSide,
    OrderStatus,
)
from tests.utils.fakes import OWNER, FakeMarketService, make_market


def make_manager(state, service, clock) -> OrderLifecycleManager:
    return OrderLifecycleManager(state, service, clock)


@pytest.mark.asyncio
async def test_place_order_submits_and_replaces_orders(state, service, clock) -> None:
    manager = make_manager(state, service, clock)

    placed = await manager.place_order(1, 2, "buy", "0.65", "10")

    assert placed.order.outcome == 2
    assert placed.order.side is OrderSide.BUY
    assert service.count("place_order") == 1
    assert service.count("list_user_orders") == 1
    assert [order.id for order in state.current.user_orders] == [placed.order.id]
    status = state.current.orders
    assert status.phase is ActionPhase.SUCCEEDED
    assert status.action.kind is ActionKind.PLACE
    assert status.action.order_id == placed.order.id
    assert status.in_flight == ()


@pytest.mark.asyncio
@pytest.mark.parametrize("price", ["1.00", "0", "0.001", "1.5", "-0.2", "abc"])
async def test_price_outside_range_is_rejected_locally(state, service, clock, price) -> None:
    manager = make_manager(state, service, clock)

    with pytest.raises(InvalidOrderParameters):
        await manager.place_order(1, 1, "buy", price, "10")

    assert service.calls == []
    assert state.current.orders.error_code == "invalid_order_parameters"


@pytest.mark.asyncio
@pytest.mark.parametrize("price", ["0.01", "0.99"])
async def test_price_bounds_are_inclusive(state, service, clock, price) -> None:
    manager = make_manager(state, service, clock)

    placed = await manager.place_order(1, 1, "sell", price, "1")

    assert placed.order.price == Decimal(price)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("outcome", "side", "quantity"),
    [(3, "buy", "1"), (0, "buy", "1"), (1, "hold", "1"), (1, "buy", "0"), (1, "buy", "-2")],
)
async def test_invalid_order_parameters(state, service, clock, outcome, side, quantity) -> None:
    state.update(markets=(make_market(1),))
    manager = make_manager(state, service, clock)

    with pytest.raises(InvalidOrderParameters):
        await manager.place_order(1, outcome, side, "0.5", quantity)

    assert service.count("place_order") == 0


@pytest.mark.asyncio
async def test_known_market_is_not_fetched_again(state, service, clock) -> None:
    state.update(markets=(make_market(1, ["A", "B", "C"]),))
    manager = make_manager(state, service, clock)

    await manager.place_order(1, 3, "buy", "0.2", "5")

    assert service.count("get_market") == 0


@pytest.mark.asyncio
async def test_market_lookup_failure_is_not_a_local_rejection(state, service, clock) -> None:
    service.failures["get_market"] = RemoteCallFailed("market service unreachable", 503)
    manager = make_manager(state, service, clock)

    with capture_logs() as logs:
        with pytest.raises(RemoteCallFailed):
            await manager.place_order(42, 1, "buy", "0.5", "1")

    events = [entry["event"] for entry in logs]
    assert "order_market_lookup_failed" in events
    assert "order_rejected_locally" not in events
    assert state.current.orders.error_code == "remote_call_failed"
    assert service.count("place_order") == 0


@pytest.mark.asyncio
async def test_place_without_address_is_unauthenticated(service, clock) -> None:
    manager = make_manager(AppState(), service, clock)

    with pytest.raises(Unauthenticated):
        await manager.place_order(1, 1, "buy", "0.5", "1")

    assert service.calls == []


@pytest.mark.asyncio
async def test_service_rejection_keeps_orders_and_surfaces_reason(state, service, clock) -> None:
    existing = service.add_order()
    manager = make_manager(state, service, clock)
    await manager.refresh_orders()
    service.failures["place_order"] = RemoteCallFailed("insufficient balance", 400)

    with pytest.raises(RemoteCallFailed) as excinfo:
        await manager.place_order(1, 1, "buy", "0.5", "1")

    assert excinfo.value.message == "insufficient balance"
    assert [order.id for order in state.current.user_orders] == [existing.id]
    status = state.current.orders
    assert status.phase is ActionPhase.ERROR
    assert status.error == "insufficient balance"
    assert status.action.state is ActionState.FAILED


@pytest.mark.asyncio
async def test_cancel_refreshes_from_server(state, service, clock) -> None:
    order = service.add_order()
    manager = make_manager(state, service, clock)
    await manager.refresh_orders()

    await manager.cancel_order(order.id)

    assert state.current.user_orders[0].status is OrderStatus.CANCELLED
    assert state.current.orders.action.kind is ActionKind.CANCEL


@pytest.mark.asyncio
async def test_cancel_of_cancelled_order_leaves_list_unchanged(state, service, clock) -> None:
    order = service.add_order(status=OrderStatus.CANCELLED)
    manager = make_manager(state, service, clock)
    await manager.refresh_orders()
    before = state.current.user_orders

    with pytest.raises(RemoteCallFailed) as excinfo:
        await manager.cancel_order(order.id)

    assert excinfo.value.message == "order cannot be cancelled"
    assert service.count("list_user_orders") == 2
    assert state.current.user_orders == before


@pytest.mark.asyncio
async def test_cancel_of_filled_order_converges_to_server_state(state, service, clock) -> None:
    order = service.add_order()
    manager = make_manager(state, service, clock)
    await manager.refresh_orders()
    service.fill(order.id, Decimal("10"))

    with pytest.raises(RemoteCallFailed):
        await manager.cancel_order(order.id)

    assert state.current.user_orders[0].status is OrderStatus.FILLED


@pytest.mark.asyncio
async def test_refresh_replaces_partially_filled_order(state, service, clock) -> None:
    order = service.add_order(quantity=Decimal("10"))
    manager = make_manager(state, service, clock)
    await manager.refresh_orders()
    assert state.current.user_orders[0].status is OrderStatus.OPEN

    service.fill(order.id, Decimal("4"))
    await manager.refresh_orders()

    refreshed = state.current.user_orders
    assert len(refreshed) == 1
    assert refreshed[0].status is OrderStatus.PARTIAL
    assert refreshed[0].filled_quantity == Decimal("4")
    assert refreshed[0].remaining_quantity == Decimal("6")


@pytest.mark.asyncio
async def test_refresh_is_a_full_replace_not_a_merge(state, service, clock) -> None:
    first = service.add_order()
    manager = make_manager(state, service, clock)
    await manager.refresh_orders()

    del service.orders[first.id]
    second = service.add_order()
    await manager.refresh_orders()

    assert [order.id for order in state.current.user_orders] == [second.id]


@pytest.mark.asyncio
async def test_refresh_passes_status_filter(state, service, clock) -> None:
    service.add_order()
    service.add_order(status=OrderStatus.CANCELLED)
    manager = make_manager(state, service, clock)

    orders = await manager.refresh_orders(status="open")

    assert [order.status for order in orders] == [OrderStatus.OPEN]
    assert service.calls[-1] == ("list_user_orders", OWNER, "open")


@pytest.mark.asyncio
async def test_failed_follow_up_refresh_keeps_placement_succeeded(state, service, clock) -> None:
    manager = make_manager(state, service, clock)
    service.failures["list_user_orders"] = RemoteCallFailed("market service unreachable")

    placed = await manager.place_order(1, 1, "buy", "0.5", "1")

    assert placed.order.id in service.orders
    status = state.current.orders
    assert status.phase is ActionPhase.SUCCEEDED
    assert status.action.state is ActionState.SUCCEEDED
    assert state.current.refresh_errors[ORDERS_KEY] == "market service unreachable"


@pytest.mark.asyncio
async def test_orders_for_previous_account_are_dropped(state, clock) -> None:
    service = FakeMarketService()
    manager = make_manager(state, service, clock)
    service.add_order()

    orders = await manager.fetch_orders(OWNER)
    state.update(account="0x00000000000000000000000000000000000000c3")

    assert manager.apply_orders(orders, OWNER) is False
    assert state.current.user_orders == ()


@pytest.mark.asyncio
async def test_clear_error(state, service, clock) -> None:
    manager = make_manager(state, service, clock)
    with pytest.raises(InvalidOrderParameters):
        await manager.place_order(1, 1, "buy", "1.00", "1")

    manager.clear_error()

    assert state.current.orders.phase is ActionPhase.IDLE
    assert state.current.orders.error is None
