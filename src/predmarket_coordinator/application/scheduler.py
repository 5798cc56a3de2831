from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from predmarket_coordinator.ports.clock import ClockPort

logger = structlog.get_logger(__name__)

BALANCES_KEY = "balances"
ORDERS_KEY = "orders"


def order_book_key(market_id: int, outcome: int) -> str:
    return f"order-book:{market_id}:{outcome}"


class PollState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(slots=True)
class PollTask:
    key: str
    interval_sec: float
    fetch: Callable[[], Awaitable[Any]]
    apply: Callable[[Any], None]
    state: PollState = PollState.IDLE
    timer: asyncio.Task[None] | None = None
    in_flight: asyncio.Task[None] | None = None
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    discarded: int = 0
    last_duration_ms: int | None = None
    completed: asyncio.Event = field(default_factory=asyncio.Event)


class RefreshScheduler:
    """Runs keyed polling jobs on a wall-clock cadence.

    A tick only starts a run when the key is idle, so a slow fetch is never
    overlapped by the next one. Stopping a key is terminal: future ticks are
    cancelled and a run still in flight finishes, but its result is dropped.
    """

    def __init__(
        self,
        clock: ClockPort,
        on_error: Callable[[str, Exception], None] | None = None,
        on_success: Callable[[str], None] | None = None,
    ) -> None:
        self._clock = clock
        self._on_error = on_error
        self._on_success = on_success
        self._tasks: dict[str, PollTask] = {}
        self._draining: set[asyncio.Task[None]] = set()

    def start(
        self,
        key: str,
        interval_sec: float,
        fetch: Callable[[], Awaitable[Any]],
        apply: Callable[[Any], None],
    ) -> PollTask:
        existing = self._tasks.get(key)
        if existing is not None and existing.state is not PollState.STOPPED:
            raise ValueError(f"poll key already active: {key}")
        task = PollTask(key=key, interval_sec=max(0.01, interval_sec), fetch=fetch, apply=apply)
        self._tasks[key] = task
        task.timer = asyncio.create_task(self._timer_loop(task), name=f"poll-timer:{key}")
        logger.info("poll_started", key=key, interval_sec=task.interval_sec)
        return task

    def state(self, key: str) -> PollState | None:
        task = self._tasks.get(key)
        return task.state if task else None

    def task(self, key: str) -> PollTask | None:
        return self._tasks.get(key)

    def active_keys(self) -> list[str]:
        return sorted(k for k, t in self._tasks.items() if t.state is not PollState.STOPPED)

    def tick(self, key: str) -> bool:
        """Start one run for ``key`` now; False when stopped, unknown or already running."""
        task = self._tasks.get(key)
        if task is None:
            return False
        return self._launch(task)

    def stop(self, key: str) -> None:
        task = self._tasks.get(key)
        if task is None or task.state is PollState.STOPPED:
            return
        task.state = PollState.STOPPED
        if task.timer is not None and task.timer is not asyncio.current_task():
            task.timer.cancel()
        self._retire(task)
        logger.info("poll_stopped", key=key, runs=task.runs, skipped=task.skipped)

    async def aclose(self) -> None:
        for key in list(self._tasks):
            self.stop(key)
        pending = list(self._draining)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _timer_loop(self, task: PollTask) -> None:
        while task.state is not PollState.STOPPED:
            self._launch(task)
            await self._clock.sleep(task.interval_sec)

    def _launch(self, task: PollTask) -> bool:
        if task.state is PollState.STOPPED:
            return False
        if task.state is PollState.RUNNING:
            task.skipped += 1
            logger.debug("poll_skipped_overlap", key=task.key, skipped=task.skipped)
            return False
        task.state = PollState.RUNNING
        task.completed.clear()
        task.in_flight = asyncio.create_task(self._run_once(task), name=f"poll-run:{task.key}")
        return True

    async def _run_once(self, task: PollTask) -> None:
        started_ms = self._clock.monotonic_ms()
        task.runs += 1
        try:
            result = await task.fetch()
            if task.state is PollState.STOPPED:
                task.discarded += 1
                logger.info("poll_result_discarded", key=task.key)
                return
            task.apply(result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            task.failures += 1
            logger.warning("poll_failed", key=task.key, error=str(exc))
            if task.state is not PollState.STOPPED and self._on_error is not None:
                self._on_error(task.key, exc)
        else:
            if self._on_success is not None:
                self._on_success(task.key)
        finally:
            task.last_duration_ms = self._clock.monotonic_ms() - started_ms
            if task.state is PollState.RUNNING:
                task.state = PollState.IDLE
            elif self._tasks.get(task.key) is task:
                del self._tasks[task.key]
            task.completed.set()

    def _retire(self, task: PollTask) -> None:
        """Keep a stopped key's pending work awaitable; forget the key once its run ends."""
        for pending in (task.timer, task.in_flight):
            if pending is not None and not pending.done():
                self._draining.add(pending)
                pending.add_done_callback(self._draining.discard)
        run_pending = task.in_flight is not None and not task.in_flight.done()
        if not run_pending and self._tasks.get(task.key) is task:
            del self._tasks[task.key]
