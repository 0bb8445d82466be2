"""Core IngestCue class."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from typing import Any, Callable

from ingestcue.aggregator import StatusAggregator
from ingestcue.batcher import make_units
from ingestcue.clock import SystemClock, VirtualClock
from ingestcue.config import IngestConfig
from ingestcue.errors import InvalidInput, NotFound
from ingestcue.models import (
    OverallStatus,
    Priority,
    QueueEntry,
    Request,
    StatusReport,
    Unit,
    UnitStatus,
)
from ingestcue.processing import Processor, simulated_processor
from ingestcue.queue import UnitQueue
from ingestcue.scheduler import RetryPolicy, Scheduler
from ingestcue.store import MemoryStore, SQLiteStore, Store

logger = logging.getLogger(__name__)


class IngestCue:
    """
    Accepts prioritized batches of ids and drains them one unit at a time.

    Submissions are split into units of ``batch_size`` ids, queued by
    priority, and processed by a single worker that waits ``cooldown``
    seconds between units. Each request's overall status is rolled up from
    its units.

    Example:
        cue = IngestCue(cooldown=5.0)

        @cue.processor
        async def fetch(ids):
            return [{"id": i, "data": await lookup(i)} for i in ids]

        await cue.start()
        request_id = await cue.submit([1, 2, 3, 4, 5], "MEDIUM")
        report = await cue.get_status(request_id)
        await cue.close()
    """

    def __init__(
        self,
        config: IngestConfig | None = None,
        *,
        clock: SystemClock | VirtualClock | None = None,
        store: Store | None = None,
        **overrides: Any,
    ) -> None:
        config = config or IngestConfig()
        self.config = config.with_overrides(**overrides) if overrides else config
        self.clock = clock or SystemClock()

        self._store: Store | None = store
        self._queue = UnitQueue()
        self._aggregator: StatusAggregator | None = None
        self._scheduler: Scheduler | None = None
        self._open_lock = asyncio.Lock()
        self._retry = RetryPolicy(
            max_attempts=self.config.max_attempts,
            backoff=self.config.retry_backoff,
            base_delay=self.config.retry_base_delay,
        )
        self._processor: Processor = simulated_processor(self.clock, self.config.work_duration)

        # Callbacks
        self._on_start_callback: Callable | None = None
        self._on_complete_callback: Callable | None = None
        self._on_failure_callback: Callable | None = None

    # --- Registration ---

    def processor(self, func: Processor) -> Processor:
        """
        Decorator to register the external processing call.

        Receives the unit's ids and returns one result per id. May be sync
        or async. Raising marks the attempt as failed.

        Example:
            @cue.processor
            async def enrich(ids):
                return [{"id": i, "data": await api.get(i)} for i in ids]
        """
        self._processor = func
        self._sync_hooks()
        return func

    def on_start(self, func):
        """
        Decorator to register start callback.

        Called with (unit) when a unit goes IN_FLIGHT.
        """
        self._on_start_callback = func
        self._sync_hooks()
        return func

    def on_complete(self, func):
        """
        Decorator to register completion callback.

        Called with (unit, result, duration) after a unit is DONE.

        Example:
            @cue.on_complete
            def on_complete(unit, result, duration):
                logging.info(f"{unit.unit_id} done in {duration:.2f}s")
        """
        self._on_complete_callback = func
        self._sync_hooks()
        return func

    def on_failure(self, func):
        """
        Decorator to register failure callback.

        Called with (unit, error, will_retry) after a failed attempt.
        """
        self._on_failure_callback = func
        self._sync_hooks()
        return func

    def _sync_hooks(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.processor = self._processor
        self._scheduler.on_start = self._on_start_callback
        self._scheduler.on_complete = self._on_complete_callback
        self._scheduler.on_failure = self._on_failure_callback

    # --- Lifecycle ---

    async def open(self) -> None:
        """Open the store and restore queued work. Called implicitly."""
        if self._scheduler is not None:
            return

        async with self._open_lock:
            if self._scheduler is not None:
                return

            if self._store is None:
                if self.config.db_path is None:
                    self._store = MemoryStore()
                else:
                    self._store = await SQLiteStore.open(self.config.db_path)

            self._aggregator = StatusAggregator(self._store, self.clock.now)
            await self._recover()

            self._scheduler = Scheduler(
                self._store,
                self._queue,
                self._aggregator,
                self._processor,
                clock=self.clock,
                cooldown=self.config.cooldown,
                work_timeout=self.config.work_timeout,
                retry=self._retry,
            )
            self._sync_hooks()

    async def _recover(self) -> None:
        """Re-queue work left behind by a previous process."""
        store = self._store
        now = self.clock.now()

        if await store.get_processing_flag():
            logger.warning("Clearing stale processing flag")
            await store.set_processing_flag(False, now)

        touched: set[str] = set()
        for unit in await store.units_in_status(UnitStatus.IN_FLIGHT):
            unit.status = UnitStatus.PENDING
            unit.started_at = None
            await store.update_unit(unit, now)
            touched.add(unit.request_id)
            logger.warning("Unit %s was in flight at shutdown, re-queued", unit.unit_id)

        restored = 0
        for unit in await store.units_in_status(UnitStatus.PENDING):
            if unit.unit_id not in self._queue:
                self._queue.enqueue(unit)
                restored += 1

        for request_id in touched:
            await self._aggregator.recompute(request_id)

        if restored:
            logger.info("Restored %d pending units", restored)

    async def start(self) -> None:
        """Start the worker loop. Non-blocking."""
        await self.open()
        self._scheduler.start()
        self._scheduler.wake()

    async def stop(self) -> None:
        """Stop the worker loop. An interrupted unit is re-queued."""
        if self._scheduler is not None:
            await self._scheduler.stop()

    async def close(self) -> None:
        """Stop and release the store."""
        await self.stop()
        if self._store is not None:
            await self._store.close()

    async def __aenter__(self) -> IngestCue:
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def scheduler(self) -> Scheduler | None:
        return self._scheduler

    # --- Intake ---

    async def submit(self, ids: Sequence[int], priority: Priority | str) -> str:
        """
        Submit ids for processing.

        Args:
            ids: Non-empty sequence of integer ids within the configured range.
            priority: HIGH, MEDIUM, or LOW.

        Returns:
            The request id.

        Raises:
            InvalidInput: If ids are empty, not integers, or out of range.
            InvalidPriority: If priority is not recognised.
        """
        ids = self._validate_ids(ids)
        priority = Priority.parse(priority)
        await self.open()

        now = self.clock.now()
        request_id = uuid.uuid4().hex[:12]
        units = make_units(request_id, ids, priority, size=self.config.batch_size, now=now)
        request = Request(
            request_id=request_id,
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        await self._store.save_request(request, units)

        for unit in units:
            self._queue.enqueue(unit)
        self._scheduler.wake()

        logger.info(
            "Accepted request %s: %d ids in %d units at %s",
            request_id, len(ids), len(units), priority.value,
        )
        return request_id

    def _validate_ids(self, ids: Any) -> list[int]:
        if isinstance(ids, (str, bytes)) or not isinstance(ids, Sequence):
            raise InvalidInput("ids must be a non-empty list of integers")
        if len(ids) == 0:
            raise InvalidInput("ids must be a non-empty list of integers")

        lo, hi = self.config.min_id, self.config.max_id
        for value in ids:
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidInput(f"ids must be integers, got {value!r}")
            if not lo <= value <= hi:
                raise InvalidInput(f"id {value} is out of the valid range [{lo}, {hi}]")
        return list(ids)

    # --- Lookups ---

    async def get_status(self, request_id: str) -> StatusReport:
        """
        Get a request's overall status and its units.

        Raises:
            NotFound: If the request id is unknown.
        """
        await self.open()
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFound(request_id)
        return StatusReport.from_request(request)

    async def list_requests(
        self,
        *,
        status: OverallStatus | str | None = None,
        limit: int = 100,
    ) -> list[StatusReport]:
        """
        List requests, newest first, with an optional status filter.

        Raises:
            InvalidInput: If status is not an overall status name.
        """
        if status is not None and not isinstance(status, OverallStatus):
            try:
                status = OverallStatus(status)
            except ValueError:
                raise InvalidInput(f"Unknown overall status: {status!r}") from None
        await self.open()
        requests = await self._store.list_requests(status=status, limit=limit)
        return [StatusReport.from_request(r) for r in requests]

    async def get_unit(self, unit_id: str) -> Unit | None:
        """Get a unit by id, including its result once done."""
        await self.open()
        return await self._store.get_unit(unit_id)

    def queue_depth(self) -> int:
        """Number of units waiting in the queue."""
        return len(self._queue)

    def pending_units(self) -> list[QueueEntry]:
        """Queued units in the order they will be picked."""
        return self._queue.entries()
