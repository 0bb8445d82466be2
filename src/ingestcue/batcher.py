"""Split submitted identifiers into fixed-size units."""

from __future__ import annotations

import uuid
from typing import Sequence

from ingestcue.models import Priority, Unit

DEFAULT_BATCH_SIZE = 3


def chunk_ids(ids: Sequence[int], size: int = DEFAULT_BATCH_SIZE) -> list[list[int]]:
    """
    Split ids into contiguous chunks of at most ``size``.

    Chunk ``i`` holds ``ids[i*size:(i+1)*size]``; order is preserved and
    nothing is dropped or duplicated.

    Example:
        chunk_ids([1, 2, 3, 4, 5], 3)  # [[1, 2, 3], [4, 5]]
    """
    if size < 1:
        raise ValueError(f"Batch size must be at least 1, got {size}")
    return [list(ids[start:start + size]) for start in range(0, len(ids), size)]


def make_units(
    request_id: str,
    ids: Sequence[int],
    priority: Priority,
    *,
    size: int = DEFAULT_BATCH_SIZE,
    now: float,
) -> list[Unit]:
    """Build the PENDING units for a new request."""
    return [
        Unit(
            unit_id=uuid.uuid4().hex[:12],
            request_id=request_id,
            ids=chunk,
            priority_rank=priority.rank,
            enqueued_at=now,
            index=index,
        )
        for index, chunk in enumerate(chunk_ids(ids, size))
    ]
