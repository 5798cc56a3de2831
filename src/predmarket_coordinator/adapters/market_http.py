from __future__ import annotations

import time
from decimal import Decimal
from typing import Any

import httpx
import structlog
from aiolimiter import AsyncLimiter
from cachetools import TTLCache
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from predmarket_coordinator.application.parsers import (
    parse_items,
    parse_market,
    parse_order,
    parse_order_book,
    parse_placed_order,
    parse_trade,
)
from predmarket_coordinator.domain.errors import RemoteCallFailed, Unauthenticated
from predmarket_coordinator.domain.models import (
    Market,
    Order,
    OrderBook,
    OrderSide,
    PlacedOrder,
    Trade,
)

logger = structlog.get_logger(__name__)


class MarketServiceHttpClient:
    """REST client for the off-chain matching service.

    Reads are retried on 429/5xx and transport errors. Order placement and
    cancellation are sent exactly once; the caller decides whether to retry.
    """

    def __init__(
        self,
        base_url: str,
        timeout_sec: float,
        request_interval_ms: int = 0,
        retry_max_attempts: int = 3,
        market_cache_sec: int = 30,
        identity_header: str = "X-Wallet-Address",
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_sec)
        self._retry_max_attempts = max(1, retry_max_attempts)
        self._identity_header = identity_header
        self._market_cache: TTLCache[int, Market] | None = None
        if market_cache_sec > 0:
            self._market_cache = TTLCache(maxsize=256, ttl=market_cache_sec)
        self._rate_limiter: AsyncLimiter | None = None
        if request_interval_ms > 0:
            period = max(0.001, request_interval_ms / 1000.0)
            self._rate_limiter = AsyncLimiter(1, period)

    async def list_markets(self, status: str | None = None) -> list[Market]:
        params = {"status": status} if status else None
        payload = await self._get_json("/markets", params=params)
        markets = [parse_market(item) for item in parse_items(payload)]
        parsed = [market for market in markets if market is not None]
        if self._market_cache is not None:
            for market in parsed:
                self._market_cache[market.id] = market
        return parsed

    async def get_market(self, market_id: int) -> Market:
        if self._market_cache is not None:
            cached = self._market_cache.get(market_id)
            if cached is not None:
                return cached
        payload = await self._get_json(f"/markets/{market_id}")
        market = parse_market(payload) if isinstance(payload, dict) else None
        if market is None:
            raise RemoteCallFailed(f"malformed market payload for {market_id}")
        if self._market_cache is not None:
            self._market_cache[market_id] = market
        return market

    async def list_trades(self, market_id: int) -> list[Trade]:
        payload = await self._get_json(f"/markets/{market_id}/trades")
        trades = [parse_trade(item) for item in parse_items(payload)]
        return [trade for trade in trades if trade is not None]

    async def get_order_book(self, market_id: int, outcome: int) -> OrderBook:
        payload = await self._get_json(
            f"/markets/{market_id}/orderbook",
            params={"outcome": outcome},
        )
        return parse_order_book(
            payload,
            market_id=market_id,
            outcome=outcome,
            fetched_at_ms=int(time.time() * 1000),
        )

    async def place_order(
        self,
        market_id: int,
        outcome: int,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
        user_address: str,
    ) -> PlacedOrder:
        body = {
            "market_id": market_id,
            "outcome": outcome,
            "side": str(side),
            "price": str(price),
            "quantity": str(quantity),
        }
        payload = await self._send("POST", "/orders", user_address, json=body)
        placed = parse_placed_order(payload)
        if placed is None:
            raise RemoteCallFailed("order accepted but response could not be parsed")
        return placed

    async def cancel_order(self, order_id: int, user_address: str) -> Order | None:
        payload = await self._send("DELETE", f"/orders/{order_id}", user_address)
        return parse_order(payload) if isinstance(payload, dict) else None

    async def list_user_orders(
        self,
        user_address: str,
        status: str | None = None,
    ) -> list[Order]:
        params = {"status": status} if status else None
        payload = await self._get_json(
            "/user/orders",
            params=params,
            headers=self._identity(user_address),
        )
        orders = [parse_order(item) for item in parse_items(payload)]
        return [order for order in orders if order is not None]

    async def close(self) -> None:
        await self._client.aclose()

    def _identity(self, user_address: str) -> dict[str, str]:
        if not user_address:
            raise Unauthenticated()
        return {self._identity_header: user_address}

    async def _rate_limit_pause(self) -> None:
        if self._rate_limiter is None:
            return
        async with self._rate_limiter:
            return None

    async def _get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_max_attempts),
                wait=wait_exponential_jitter(initial=0.5, max=5),
                retry=retry_if_exception(self._is_retryable_http_error),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    await self._rate_limit_pause()
                    resp = await self._client.get(path, params=params, headers=headers)
                    if resp.status_code == 429 or 500 <= resp.status_code < 600:
                        raise httpx.HTTPStatusError(
                            "Retryable HTTP status",
                            request=resp.request,
                            response=resp,
                        )
                    return self._decode(resp)
        except httpx.HTTPStatusError as exc:
            raise self._classify(exc.response) from exc
        except httpx.RequestError as exc:
            raise RemoteCallFailed(f"market service unreachable: {exc}") from exc
        return None

    async def _send(
        self,
        method: str,
        path: str,
        user_address: str,
        json: dict[str, Any] | None = None,
    ) -> Any:
        headers = self._identity(user_address)
        await self._rate_limit_pause()
        try:
            resp = await self._client.request(method, path, json=json, headers=headers)
        except httpx.RequestError as exc:
            raise RemoteCallFailed(f"market service unreachable: {exc}") from exc
        return self._decode(resp)

    def _decode(self, resp: httpx.Response) -> Any:
        if resp.is_error:
            raise self._classify(resp)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteCallFailed(
                "market service returned invalid JSON", resp.status_code
            ) from exc

    @staticmethod
    def _classify(resp: httpx.Response) -> Exception:
        reason = _error_reason(resp)
        if resp.status_code == 401:
            return Unauthenticated(reason)
        return RemoteCallFailed(reason, resp.status_code)

    @staticmethod
    def _is_retryable_http_error(exc: BaseException) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            return status == 429 or 500 <= status < 600
        return isinstance(exc, httpx.RequestError)


def _error_reason(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        if message:
            return str(message)
    text = resp.text.strip()
    return text or f"HTTP {resp.status_code}"


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.info("market_request_retry", attempt=state.attempt_number, error=str(exc))
