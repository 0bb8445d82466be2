"""Default stand-in for the external processing call."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from ingestcue.clock import SystemClock, VirtualClock

Processor = Callable[[list[int]], Any]


def simulated_processor(
    clock: SystemClock | VirtualClock, duration: float = 1.0
) -> Callable[[list[int]], Awaitable[list[dict[str, Any]]]]:
    """
    Build a processor that takes ``duration`` seconds on ``clock`` and
    returns ``{"id": id, "data": "processed"}`` for every id.
    """

    async def process(ids: list[int]) -> list[dict[str, Any]]:
        await clock.sleep(duration)
        return [{"id": i, "data": "processed"} for i in ids]

    return process
