"""Priority queue of pending units."""

from __future__ import annotations

import heapq
import itertools

from ingestcue.models import QueueEntry, Unit


class UnitQueue:
    """
    Ordered collection of units waiting to be processed.

    Ordering is ``(priority_rank desc, enqueued_at asc, seq asc)`` where
    ``seq`` is a per-queue monotonic counter, so ties are deterministic.

    Every method is synchronous. Under a single event loop that makes each
    operation atomic: no entry is handed out by two dequeues.

    Example:
        queue = UnitQueue()
        for unit in units:
            queue.enqueue(unit)
        entry = queue.dequeue_next()
    """

    def __init__(self) -> None:
        self._heap: list[QueueEntry] = []
        self._seq = itertools.count()
        # unit_id -> seq of its live entry; heap entries not matching are stale
        self._live: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._live

    def _is_live(self, entry: QueueEntry) -> bool:
        return self._live.get(entry.unit_id) == entry.seq

    def enqueue(self, unit: Unit, *, not_before: float | None = None) -> QueueEntry:
        """
        Add a unit to the queue.

        Args:
            unit: The unit to schedule.
            not_before: Earliest time the unit may be picked (retry backoff).

        Raises:
            ValueError: If the unit is already queued.
        """
        if unit.unit_id in self._live:
            raise ValueError(f"Unit already queued: {unit.unit_id}")
        entry = QueueEntry(
            unit_id=unit.unit_id,
            request_id=unit.request_id,
            priority_rank=unit.priority_rank,
            enqueued_at=unit.enqueued_at,
            seq=next(self._seq),
            not_before=not_before,
        )
        heapq.heappush(self._heap, entry)
        self._live[unit.unit_id] = entry.seq
        return entry

    def restore(self, entry: QueueEntry) -> None:
        """
        Put a dequeued entry back at its original position.

        Raises:
            ValueError: If the unit has been queued again since.
        """
        if entry.unit_id in self._live:
            raise ValueError(f"Unit already queued: {entry.unit_id}")
        heapq.heappush(self._heap, entry)
        self._live[entry.unit_id] = entry.seq

    def dequeue_next(self, now: float | None = None) -> QueueEntry | None:
        """
        Remove and return the highest-ranked eligible entry.

        Args:
            now: Current time. Entries whose ``not_before`` is later stay queued.
                None ignores ``not_before``.

        Returns:
            The entry, or None if nothing is eligible.
        """
        waiting: list[QueueEntry] = []
        picked: QueueEntry | None = None

        while self._heap:
            entry = heapq.heappop(self._heap)
            if not self._is_live(entry):
                continue
            if now is not None and entry.not_before is not None and entry.not_before > now:
                waiting.append(entry)
                continue
            picked = entry
            break

        for entry in waiting:
            heapq.heappush(self._heap, entry)

        if picked is not None:
            del self._live[picked.unit_id]
        return picked

    def peek(self, now: float | None = None) -> QueueEntry | None:
        """Return the entry dequeue_next would pick, without removing it."""
        for entry in self.entries():
            if now is None or entry.not_before is None or entry.not_before <= now:
                return entry
        return None

    def discard(self, unit_id: str) -> bool:
        """Drop a unit from the queue. Returns True if it was queued."""
        return self._live.pop(unit_id, None) is not None

    def entries(self) -> list[QueueEntry]:
        """Snapshot of queued entries in dequeue order."""
        return sorted(e for e in self._heap if self._is_live(e))

    def next_eligible_at(self) -> float | None:
        """Earliest ``not_before`` among entries still in backoff."""
        times = [
            e.not_before
            for e in self._heap
            if self._is_live(e) and e.not_before is not None
        ]
        return min(times) if times else None

    def clear(self) -> None:
        self._heap.clear()
        self._live.clear()
