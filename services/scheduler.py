from __future__ import annotations

import asyncio
import time

MIN_POLL_SECONDS = 0.25


def poll_seconds(interval: float) -> float:
    if interval != interval or interval < MIN_POLL_SECONDS:
        return MIN_POLL_SECONDS
    return float(interval)


async def wait_next_poll(interval: float) -> None:
    seconds = poll_seconds(interval)
    now = time.monotonic()
    next_poll = ((now // seconds) + 1) * seconds
    await asyncio.sleep(max(0.0, next_poll - now))
