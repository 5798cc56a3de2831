from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel
from rich.console import Console

from predmarket_coordinator.adapters.market_http import MarketServiceHttpClient
from predmarket_coordinator.adapters.web3_ledger import Web3Ledger
from predmarket_coordinator.application.dashboard import TerminalDashboard
from predmarket_coordinator.application.markets import MarketBrowser
from predmarket_coordinator.application.orders import OrderLifecycleManager
from predmarket_coordinator.application.session import TradingSession
from predmarket_coordinator.application.state import AppState, StateData
from predmarket_coordinator.config import Settings, load_settings
from predmarket_coordinator.domain.errors import CoordinatorError, Unauthenticated
from predmarket_coordinator.util.amounts import format_units
from predmarket_coordinator.util.clock import SystemClock
from predmarket_coordinator.util.httpx_setup import silence_httpx_logs
from predmarket_coordinator.util.logging_setup import configure_logging

logger = structlog.get_logger(__name__)

console = Console()


def _default_config_path() -> Path | None:
    candidate = Path("config/config.yaml")
    if candidate.exists():
        return candidate
    return None


def build_market_service(settings: Settings) -> MarketServiceHttpClient:
    return MarketServiceHttpClient(
        base_url=settings.market_service.base_url,
        timeout_sec=settings.market_service.timeout_sec,
        request_interval_ms=settings.market_service.request_interval_ms,
        retry_max_attempts=settings.market_service.retry_max_attempts,
        market_cache_sec=settings.market_service.market_cache_sec,
        identity_header=settings.market_service.identity_header,
    )


def build_ledger(settings: Settings) -> Web3Ledger:
    if not settings.ledger.token_address or not settings.ledger.platform_address:
        raise ValueError(
            "ledger.token_address and ledger.platform_address must be configured "
            "(PMC__LEDGER__TOKEN_ADDRESS / PMC__LEDGER__PLATFORM_ADDRESS)"
        )
    return Web3Ledger(
        rpc_url=settings.ledger.rpc_url,
        token_address=settings.ledger.token_address,
        platform_address=settings.ledger.platform_address,
        receipt_timeout_sec=settings.ledger.receipt_timeout_sec,
        receipt_poll_sec=settings.ledger.receipt_poll_sec,
    )


def build_session(settings: Settings, with_dashboard: bool = False) -> TradingSession:
    state = AppState()
    ledger = build_ledger(settings)
    dashboard = None
    if with_dashboard or settings.dashboard.enabled:
        dashboard = TerminalDashboard(
            state,
            refresh_hz=settings.dashboard.refresh_hz,
            max_levels=settings.dashboard.max_levels,
            max_orders=settings.dashboard.max_orders,
        )
    return TradingSession(
        state=state,
        ledger=ledger,
        service=build_market_service(settings),
        clock=SystemClock(),
        platform_address=ledger.platform_address,
        balances_interval_sec=settings.polling.balances_interval_sec,
        order_book_interval_sec=settings.polling.order_book_interval_sec,
        orders_interval_sec=(
            settings.polling.orders_interval_sec if settings.polling.orders_enabled else None
        ),
        dashboard=dashboard,
    )


def _emit(payload: Any) -> None:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, list | tuple):
        payload = [
            item.model_dump(mode="json") if isinstance(item, BaseModel) else item
            for item in payload
        ]
    console.print_json(data=payload)


def _require_address(settings: Settings, args: argparse.Namespace) -> str:
    address = args.address or settings.wallet.address
    if not address:
        raise Unauthenticated("no wallet address: pass --address or set PMC__WALLET__ADDRESS")
    return address


def _order_manager(state: AppState, service: MarketServiceHttpClient) -> OrderLifecycleManager:
    return OrderLifecycleManager(state, service, SystemClock())


async def _with_service(
    settings: Settings,
    action: Callable[[AppState, MarketServiceHttpClient], Awaitable[Any]],
    address: str | None = None,
) -> Any:
    service = build_market_service(settings)
    try:
        return await action(AppState(StateData(account=address)), service)
    finally:
        await service.close()


async def _with_session(
    settings: Settings,
    address: str,
    action: Callable[[TradingSession], Awaitable[Any]],
) -> Any:
    session = build_session(settings)
    try:
        await session.connect(address, poll=False)
        return await action(session)
    finally:
        await session.aclose()


async def _balances(session: TradingSession) -> dict[str, str]:
    snapshot = await session.funds.refresh_balances()
    return {
        "account": snapshot.owner,
        "wallet": format_units(snapshot.wallet_balance),
        "platform": format_units(snapshot.platform_balance),
        "allowance": format_units(snapshot.allowance),
    }


async def _after_funds(session: TradingSession, pending: Awaitable[Any]) -> dict[str, Any]:
    action = await pending
    snapshot = session.state.current.balances
    result: dict[str, Any] = {"action": action.model_dump(mode="json")}
    if snapshot is not None:
        result["wallet"] = format_units(snapshot.wallet_balance)
        result["platform"] = format_units(snapshot.platform_balance)
    return result


async def _watch(settings: Settings, args: argparse.Namespace) -> None:
    session = build_session(settings, with_dashboard=args.dashboard)
    address = args.address or settings.wallet.address
    try:
        if address:
            await session.connect(address)
        if args.market is not None:
            await session.watch_order_book(args.market, args.outcome)
        await session.run()
    finally:
        await session.aclose()


async def run_command(settings: Settings, args: argparse.Namespace) -> Any:
    command = args.command
    if command == "markets":
        return await _with_service(
            settings,
            lambda state, service: MarketBrowser(state, service).load_markets(args.status),
        )
    if command == "market":
        return await _with_service(settings, lambda _, service: service.get_market(args.market_id))
    if command == "book":
        return await _with_service(
            settings,
            lambda state, service: MarketBrowser(state, service).fetch_order_book(
                args.market_id, args.outcome
            ),
        )
    if command == "orders":
        address = _require_address(settings, args)
        return await _with_service(
            settings,
            lambda state, service: _order_manager(state, service).refresh_orders(
                address, args.status
            ),
            address,
        )
    if command == "place":
        address = _require_address(settings, args)
        return await _with_service(
            settings,
            lambda state, service: _order_manager(state, service).place_order(
                args.market_id, args.outcome, args.side, args.price, args.quantity, address
            ),
            address,
        )
    if command == "cancel":
        address = _require_address(settings, args)
        return await _with_service(
            settings,
            lambda state, service: _order_manager(state, service).cancel_order(
                args.order_id, address
            ),
            address,
        )
    if command == "balances":
        return await _with_session(settings, _require_address(settings, args), _balances)
    if command == "deposit":
        return await _with_session(
            settings,
            _require_address(settings, args),
            lambda session: _after_funds(session, session.funds.request_deposit(args.amount)),
        )
    if command == "withdraw":
        return await _with_session(
            settings,
            _require_address(settings, args),
            lambda session: _after_funds(session, session.funds.request_withdraw(args.amount)),
        )
    if command == "mint":
        return await _with_session(
            settings,
            _require_address(settings, args),
            lambda session: _after_funds(session, session.funds.request_mint(args.to, args.amount)),
        )
    if command == "watch":
        await _watch(settings, args)
        return None
    raise ValueError(f"unknown command: {command}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prediction market trading coordinator")
    parser.add_argument(
        "--config",
        type=Path,
        default=_default_config_path(),
        help="Path to config YAML/JSON (default: config/config.yaml if present)",
    )
    parser.add_argument("--address", help="Wallet address (overrides wallet.address)")
    sub = parser.add_subparsers(dest="command", required=True)

    markets = sub.add_parser("markets", help="List markets")
    markets.add_argument("--status", choices=["pending", "active", "resolved", "cancelled"])

    market = sub.add_parser("market", help="Show one market")
    market.add_argument("market_id", type=int)

    book = sub.add_parser("book", help="Show the order book of a market outcome")
    book.add_argument("market_id", type=int)
    book.add_argument("--outcome", type=int, default=1)

    orders = sub.add_parser("orders", help="List the wallet's orders")
    orders.add_argument("--status", choices=["open", "partial", "filled", "cancelled"])

    sub.add_parser("balances", help="Read wallet, platform and allowance balances")

    for name, help_text in (
        ("deposit", "Approve if needed, then deposit into the platform"),
        ("withdraw", "Withdraw from the platform to the wallet"),
    ):
        funds = sub.add_parser(name, help=help_text)
        funds.add_argument("amount")

    mint = sub.add_parser("mint", help="Mint test tokens")
    mint.add_argument("amount")
    mint.add_argument("--to", help="Recipient (default: the connected wallet)")

    place = sub.add_parser("place", help="Place a limit order")
    place.add_argument("market_id", type=int)
    place.add_argument("outcome", type=int)
    place.add_argument("side", choices=["buy", "sell"])
    place.add_argument("price")
    place.add_argument("quantity")

    cancel = sub.add_parser("cancel", help="Cancel an order")
    cancel.add_argument("order_id", type=int)

    watch = sub.add_parser("watch", help="Keep polling balances and an order book")
    watch.add_argument("--market", type=int)
    watch.add_argument("--outcome", type=int, default=1)
    watch.add_argument("--dashboard", action="store_true", help="Enable live terminal dashboard")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    settings = load_settings(args.config)
    configure_logging(
        settings.logging.level,
        settings.logging.style,
        settings.logging.console,
        settings.logging.file_path,
    )
    silence_httpx_logs()

    try:
        result = asyncio.run(run_command(settings, args))
    except KeyboardInterrupt:
        logger.info("session_shutdown")
        return 0
    except CoordinatorError as exc:
        logger.error("command_failed", command=args.command, code=exc.code, reason=exc.message)
        console.print(f"[bold red]{exc.code}[/]: {exc.message}")
        return 1
    except ValueError as exc:
        console.print(f"[bold red]error[/]: {exc}")
        return 2
    if result is not None:
        _emit(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
