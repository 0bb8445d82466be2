"""Single-flight, rate-limited worker loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ingestcue.errors import ProcessingError, ProcessingTimeout
from ingestcue.models import Unit, UnitStatus

if TYPE_CHECKING:
    from ingestcue.aggregator import StatusAggregator
    from ingestcue.clock import SystemClock, VirtualClock
    from ingestcue.queue import UnitQueue
    from ingestcue.store import Store

logger = logging.getLogger(__name__)

BACKOFF_STRATEGIES = ("exponential", "fixed")


class CycleOutcome(str, Enum):
    """Result of one scheduler cycle."""

    BUSY = "busy"  # lock already held, nothing done
    IDLE = "idle"  # nothing eligible in the queue
    SKIPPED = "skipped"  # dequeued entry no longer pending
    DONE = "done"
    RETRY = "retry"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    """How failed units are retried."""

    max_attempts: int = 3
    backoff: str = "exponential"
    base_delay: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.backoff not in BACKOFF_STRATEGIES:
            raise ValueError(
                f"Unknown backoff: {self.backoff}. Use 'exponential' or 'fixed'."
            )

    def delay(self, attempts: int) -> float:
        """Seconds to wait before the next attempt, after ``attempts`` tries."""
        if self.backoff == "fixed":
            return self.base_delay
        return self.base_delay * (2 ** max(0, attempts - 1))


class ProcessingLock:
    """
    Process-wide "a unit is being worked" flag.

    ``try_acquire`` checks and sets in one synchronous step, so two cycles
    on the same event loop can never both see the lock free.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


class Scheduler:
    """
    Drains the unit queue one unit at a time with a fixed cooldown.

    Each cycle: take the lock, pick the next unit, mark it IN_FLIGHT, run the
    processor, mark it DONE (or retry / FAILED), wait ``cooldown``, release
    the lock, and go again. When the queue is empty the loop parks until
    ``wake()`` is called or a retry backoff expires.

    Example:
        scheduler = Scheduler(store, queue, aggregator, processor, clock=clock)
        scheduler.start()
        queue.enqueue(unit)
        scheduler.wake()
    """

    def __init__(
        self,
        store: Store,
        queue: UnitQueue,
        aggregator: StatusAggregator,
        processor: Callable[[list[int]], Any],
        *,
        clock: SystemClock | VirtualClock,
        cooldown: float = 5.0,
        work_timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.processor = processor
        self.cooldown = cooldown
        self.work_timeout = work_timeout
        self.retry = retry or RetryPolicy()
        self.lock = ProcessingLock()

        # Event callbacks
        self.on_start: Callable | None = None
        self.on_complete: Callable | None = None
        self.on_failure: Callable | None = None

        self._store = store
        self._queue = queue
        self._aggregator = aggregator
        self._clock = clock
        self._wake = asyncio.Event()
        self._running = False
        self._task: asyncio.Task | None = None
        self._current: Unit | None = None
        # Earliest time the next unit may start; survives stop()/start()
        self._resume_at: float | None = None
        # Final DONE/FAILED/retry write, shielded from stop()
        self._settling: asyncio.Future | None = None
        # Requests whose overall_status could not be written yet
        self._stale_requests: set[str] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def current(self) -> Unit | None:
        """The unit being worked, if any."""
        return self._current

    @property
    def resume_at(self) -> float | None:
        """Earliest time the next unit may go IN_FLIGHT."""
        return self._resume_at

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the worker loop as a background task."""
        if self.running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """
        Stop the worker loop.

        A unit interrupted before its processor returned goes back to PENDING
        and is re-queued. A unit whose outcome is already being written is
        left to finish that write. The cooldown still applies after restart.
        """
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        settling = self._settling
        if settling is not None:
            await asyncio.wait({settling})
            self._settling = None
            if not settling.cancelled() and settling.exception() is not None:
                logger.error(
                    "Outcome write failed during stop", exc_info=settling.exception()
                )

    def wake(self) -> None:
        """Ask an idle loop to attempt a cycle."""
        self._wake.set()

    async def _run(self) -> None:
        logger.debug("Scheduler loop started")
        while self._running:
            try:
                outcome = await self.run_cycle()
            except Exception:
                # Store or aggregator fault: keep the loop alive, pace retries
                logger.exception("Scheduler cycle failed")
                await self._clock.sleep(self.cooldown)
                continue

            if outcome == CycleOutcome.BUSY:
                self._wake.clear()
                await self._wait_for_wake()
            elif outcome == CycleOutcome.IDLE:
                await self._wait_for_wake()

    async def _wait_for_wake(self) -> None:
        """Park until woken, or until the earliest retry backoff expires."""
        waiters = [asyncio.ensure_future(self._wake.wait())]
        eligible_at = self._queue.next_eligible_at()
        if eligible_at is not None:
            waiters.append(
                asyncio.ensure_future(self._clock.sleep(eligible_at - self._clock.now()))
            )
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    # --- Cycle ---

    async def run_cycle(self) -> CycleOutcome:
        """
        Run one scheduling cycle.

        Returns immediately with BUSY if another cycle holds the lock.
        """
        if not self.lock.try_acquire():
            return CycleOutcome.BUSY
        processed = False
        try:
            await self._store.set_processing_flag(True, self._clock.now())
            self._wake.clear()
            await self._flush_stale_requests()

            if self._resume_at is not None:
                remaining = self._resume_at - self._clock.now()
                if remaining > 0:
                    await self._clock.sleep(remaining)

            entry = self._queue.dequeue_next(now=self._clock.now())
            if entry is None:
                return CycleOutcome.IDLE

            try:
                unit = await self._store.get_unit(entry.unit_id)
            except BaseException:
                self._queue.restore(entry)
                raise
            # Under the lock an IN_FLIGHT unit in the queue is left over from
            # a failed write, so it is picked up again
            if unit is None or unit.status.terminal:
                logger.warning("Dropping queue entry for finished unit %s", entry.unit_id)
                return CycleOutcome.SKIPPED

            outcome = await self._process(unit)
            processed = True
            self._resume_at = self._clock.now() + self.cooldown
            await self._clock.sleep(self.cooldown)
            return outcome
        finally:
            self.lock.release()
            await self._store.set_processing_flag(False, self._clock.now())
            if processed:
                self._wake.set()

    async def _process(self, unit: Unit) -> CycleOutcome:
        now = self._clock.now()
        unit.status = UnitStatus.IN_FLIGHT
        unit.attempts += 1
        unit.started_at = now
        unit.error = None
        self._current = unit
        self._settling = None
        self._resume_at = now + self.cooldown

        try:
            await self._store.update_unit(unit, now)
            await self._recompute(unit.request_id)

            logger.info(
                "Processing unit %s of request %s (ids=%s, attempt %d)",
                unit.unit_id, unit.request_id, unit.ids, unit.attempts,
            )
            self._emit(self.on_start, unit)

            try:
                result = await self._execute(unit)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                outcome = self._fail(unit, e)
            else:
                outcome = self._complete(unit, result, now)

            self._settling = asyncio.ensure_future(self._settle(unit, outcome))
            return await asyncio.shield(self._settling)
        except asyncio.CancelledError:
            if self._settling is None:
                await self._interrupt(unit)
            raise
        except Exception as e:
            # A store write failed; route the unit through the retry path
            # instead of leaving it IN_FLIGHT
            logger.exception("Store error while processing unit %s", unit.unit_id)
            return await self._fail(unit, e)
        finally:
            self._current = None
            if self._settling is not None and self._settling.done():
                self._settling = None

    async def _execute(self, unit: Unit) -> list[dict[str, Any]]:
        """Run the processor, bounded by ``work_timeout`` on the clock."""
        work = asyncio.ensure_future(self._call_processor(list(unit.ids)))
        if self.work_timeout is None:
            result = await work
        else:
            timer = asyncio.ensure_future(self._clock.sleep(self.work_timeout))
            try:
                done, _ = await asyncio.wait({work, timer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                timer.cancel()
                if not work.done():
                    work.cancel()
            if work not in done:
                raise ProcessingTimeout(f"Processor exceeded {self.work_timeout}s")
            result = work.result()

        return self._check_result(unit, result)

    async def _call_processor(self, ids: list[int]) -> Any:
        if inspect.iscoroutinefunction(self.processor):
            return await self.processor(ids)
        result = self.processor(ids)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _check_result(unit: Unit, result: Any) -> list[dict[str, Any]]:
        if not isinstance(result, (list, tuple)):
            raise ProcessingError(
                f"Processor returned {type(result).__name__}, expected a list"
            )
        if len(result) != len(unit.ids):
            raise ProcessingError(
                f"Processor returned {len(result)} results for {len(unit.ids)} ids"
            )
        return [entry if isinstance(entry, dict) else {"value": entry} for entry in result]

    async def _settle(self, unit: Unit, outcome: Awaitable[CycleOutcome]) -> CycleOutcome:
        """Write the attempt's outcome. On a store fault the unit is re-queued."""
        try:
            return await outcome
        except Exception:
            if unit.unit_id not in self._queue:
                unit.status = UnitStatus.PENDING
                unit.started_at = None
                unit.completed_at = None
                unit.result = None
                self._queue.enqueue(unit)
            raise

    async def _complete(
        self, unit: Unit, result: list[dict[str, Any]], started_at: float
    ) -> CycleOutcome:
        completed_at = self._clock.now()
        unit.status = UnitStatus.DONE
        unit.result = result
        unit.completed_at = completed_at
        await self._store.update_unit(unit, completed_at)
        await self._recompute(unit.request_id)

        duration = completed_at - started_at
        logger.info("Unit %s done in %.2fs", unit.unit_id, duration)
        self._emit(self.on_complete, unit, result, duration)
        return CycleOutcome.DONE

    async def _fail(self, unit: Unit, error: Exception) -> CycleOutcome:
        now = self._clock.now()
        unit.error = str(error) or type(error).__name__
        unit.result = None
        will_retry = unit.attempts < self.retry.max_attempts

        if will_retry:
            delay = self.retry.delay(unit.attempts)
            unit.status = UnitStatus.PENDING
            unit.started_at = None
            unit.completed_at = None
            # Queue first: if the write below fails the unit is still picked up
            self._queue.discard(unit.unit_id)
            self._queue.enqueue(unit, not_before=now + delay)
            await self._store.update_unit(unit, now)
            logger.warning(
                "Unit %s failed (attempt %d/%d), retrying in %.1fs: %s",
                unit.unit_id, unit.attempts, self.retry.max_attempts, delay, unit.error,
            )
            outcome = CycleOutcome.RETRY
        else:
            unit.status = UnitStatus.FAILED
            unit.completed_at = now
            self._queue.discard(unit.unit_id)
            await self._store.update_unit(unit, now)
            logger.warning(
                "Unit %s failed after %d attempts: %s", unit.unit_id, unit.attempts, unit.error
            )
            outcome = CycleOutcome.FAILED

        await self._recompute(unit.request_id)
        self._emit(self.on_failure, unit, error, will_retry)
        return outcome

    async def _interrupt(self, unit: Unit) -> None:
        """Put a unit cut off by stop() back in the queue."""
        now = self._clock.now()
        unit.status = UnitStatus.PENDING
        unit.started_at = None
        self._queue.discard(unit.unit_id)
        self._queue.enqueue(unit)
        await self._store.update_unit(unit, now)
        await self._recompute(unit.request_id)
        logger.info("Unit %s interrupted, re-queued", unit.unit_id)

    # --- Status rollup ---

    async def _recompute(self, request_id: str) -> None:
        """Recompute overall status; on failure retry it at the next cycle."""
        try:
            await self._aggregator.recompute(request_id)
        except Exception:
            logger.exception("Status recompute failed for request %s", request_id)
            self._stale_requests.add(request_id)
        else:
            self._stale_requests.discard(request_id)

    async def _flush_stale_requests(self) -> None:
        for request_id in sorted(self._stale_requests):
            await self._aggregator.recompute(request_id)
            self._stale_requests.discard(request_id)

    @staticmethod
    def _emit(callback: Callable | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            # Don't let callback errors affect flow
            logger.exception("Event callback %r raised", callback)
