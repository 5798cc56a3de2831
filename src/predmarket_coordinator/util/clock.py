from __future__ import annotations

import asyncio
import time


class SystemClock:
    """Wall clock used for polling ticks and snapshot timestamps."""

    @staticmethod
    def now_ms() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def monotonic_ms() -> int:
        return int(time.monotonic() * 1000)

    @staticmethod
    async def sleep(seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
