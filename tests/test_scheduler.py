"""Scheduler: single flight, pacing, priority, retries."""

import asyncio

import pytest

from ingestcue import OverallStatus, UnitStatus
from ingestcue.aggregator import StatusAggregator
from ingestcue.batcher import make_units
from ingestcue.models import Priority, Request
from ingestcue.queue import UnitQueue
from ingestcue.scheduler import CycleOutcome, RetryPolicy, Scheduler
from ingestcue.store import MemoryStore


def record_starts(cue, clock):
    starts = []

    @cue.on_start
    def on_start(unit):
        starts.append((clock.now(), list(unit.ids)))

    return starts


class FlakyStore(MemoryStore):
    """Raises once on the first unit write with the given status."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on
        self.failures = 0

    async def update_unit(self, unit, updated_at):
        if unit.status == self.fail_on and not self.failures:
            self.failures += 1
            raise RuntimeError("disk I/O error")
        await super().update_unit(unit, updated_at)


class GatedStore(MemoryStore):
    """Blocks the first overall status write of the given status until released."""

    def __init__(self, gate_on):
        super().__init__()
        self.gate_on = gate_on
        self.gate = asyncio.Event()
        self.armed = True

    async def set_overall_status(self, request_id, status, updated_at):
        if status == self.gate_on and self.armed:
            self.armed = False
            await self.gate.wait()
        await super().set_overall_status(request_id, status, updated_at)


class TestRetryPolicy:
    """Test RetryPolicy delays."""

    def test_exponential(self):
        policy = RetryPolicy(base_delay=2.0)
        assert [policy.delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_fixed(self):
        policy = RetryPolicy(backoff="fixed", base_delay=3.0)
        assert [policy.delay(n) for n in (1, 2, 3)] == [3.0, 3.0, 3.0]


class TestSingleFlight:
    """At most one unit is processed at a time, at least cooldown apart."""

    async def test_one_unit_at_a_time(self, make_cue, clock):
        """The processor never runs concurrently, even under a burst."""
        cue = make_cue()
        active = 0
        peak = 0

        @cue.processor
        async def slow(ids):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await clock.sleep(1.0)
            active -= 1
            return [{"id": i} for i in ids]

        await cue.start()
        request_ids = await asyncio.gather(*[
            cue.submit(list(range(n * 10 + 1, n * 10 + 5)), "MEDIUM") for n in range(4)
        ])
        await clock.advance(100.0)

        assert peak == 1
        for request_id in request_ids:
            report = await cue.get_status(request_id)
            assert report.overall_status == OverallStatus.COMPLETED

    async def test_starts_at_least_cooldown_apart(self, make_cue, clock):
        cue = make_cue(cooldown=5.0, work_duration=1.0)
        starts = record_starts(cue, clock)

        await cue.start()
        await cue.submit(list(range(1, 10)), "LOW")
        await clock.advance(60.0)

        times = [t for t, _ in starts]
        assert len(times) == 3
        assert times == [0.0, 6.0, 12.0]
        assert all(b - a >= 5.0 for a, b in zip(times, times[1:]))

    async def test_zero_cooldown(self, make_cue, clock):
        """With no cooldown the next unit starts as soon as the last ends."""
        cue = make_cue(cooldown=0.0, work_duration=1.0)
        starts = record_starts(cue, clock)

        await cue.start()
        await cue.submit([1, 2, 3, 4, 5, 6], "HIGH")
        await clock.advance(10.0)

        assert [t for t, _ in starts] == [0.0, 1.0]

    async def test_processing_flag_tracks_cycle(self, make_cue, clock):
        cue = make_cue()
        await cue.start()
        await cue.submit([1], "HIGH")
        await clock.settle()

        assert cue.scheduler.lock.held
        assert await cue._store.get_processing_flag()

        await clock.advance(10.0)
        assert not cue.scheduler.lock.held
        assert not await cue._store.get_processing_flag()


class TestPriorityOrder:
    """Higher priorities overtake queued lower-priority units."""

    async def test_priority_jump(self, make_cue, clock):
        """A HIGH request arriving mid-cooldown runs before MEDIUM's remainder."""
        cue = make_cue(cooldown=5.0, work_duration=1.0)
        starts = record_starts(cue, clock)

        await cue.start()
        medium = await cue.submit([1, 2, 3, 4, 5], "MEDIUM")
        await clock.advance(4.0)
        high = await cue.submit([6, 7, 8, 9], "HIGH")
        await clock.advance(40.0)

        assert [ids for _, ids in starts] == [[1, 2, 3], [6, 7, 8], [9], [4, 5]]
        assert [t for t, _ in starts] == [0.0, 6.0, 12.0, 18.0]
        assert (await cue.get_status(medium)).overall_status == OverallStatus.COMPLETED
        assert (await cue.get_status(high)).overall_status == OverallStatus.COMPLETED

    async def test_in_flight_unit_not_preempted(self, make_cue, clock):
        """A LOW unit already running finishes; HIGH goes next."""
        cue = make_cue()
        starts = record_starts(cue, clock)

        await cue.start()
        await cue.submit([1, 2, 3], "LOW")
        await clock.settle()
        await cue.submit([4], "HIGH")
        await clock.advance(20.0)

        assert [ids for _, ids in starts] == [[1, 2, 3], [4]]

    async def test_high_first_when_both_queued(self, make_cue, clock):
        cue = make_cue()
        starts = record_starts(cue, clock)

        await cue.start()
        await cue.submit([1], "LOW")
        await cue.submit([2], "HIGH")
        await clock.advance(20.0)

        assert [ids for _, ids in starts] == [[2], [1]]

    async def test_fifo_within_priority(self, make_cue, clock):
        cue = make_cue()
        starts = record_starts(cue, clock)

        await cue.start()
        await cue.submit([1], "MEDIUM")
        await clock.advance(0.5)
        await cue.submit([2], "MEDIUM")
        await clock.advance(0.5)
        await cue.submit([3], "MEDIUM")
        await clock.advance(30.0)

        assert [ids for _, ids in starts] == [[1], [2], [3]]


class TestStatusRollup:
    """Overall status follows unit progress."""

    async def test_lifecycle(self, make_cue, clock):
        cue = make_cue()
        await cue.start()
        request_id = await cue.submit([1, 2, 3, 4, 5], "MEDIUM")

        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.NOT_STARTED

        await clock.settle()
        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.TRIGGERED
        assert [u.status for u in report.units] == [UnitStatus.IN_FLIGHT, UnitStatus.PENDING]

        await clock.advance(2.0)
        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.TRIGGERED
        assert [u.status for u in report.units] == [UnitStatus.DONE, UnitStatus.PENDING]

        await clock.advance(20.0)
        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.COMPLETED
        assert report.to_dict()["units"] == [
            {"unit_id": report.units[0].unit_id, "ids": [1, 2, 3], "status": "done"},
            {"unit_id": report.units[1].unit_id, "ids": [4, 5], "status": "done"},
        ]

    async def test_status_never_regresses(self, make_cue, clock):
        """Observed overall status only moves forward."""
        cue = make_cue(cooldown=2.0, max_attempts=2, retry_base_delay=1.0)
        attempts = {}

        @cue.processor
        async def flaky(ids):
            key = ids[0]
            attempts[key] = attempts.get(key, 0) + 1
            await clock.sleep(0.5)
            if key == 4 and attempts[key] == 1:
                raise RuntimeError("transient")
            return [{"id": i} for i in ids]

        order = {
            OverallStatus.NOT_STARTED: 0,
            OverallStatus.TRIGGERED: 1,
            OverallStatus.COMPLETED: 2,
            OverallStatus.PARTIAL: 2,
            OverallStatus.FAILED: 2,
        }

        await cue.start()
        request_id = await cue.submit(list(range(1, 10)), "HIGH")
        seen = []
        for _ in range(40):
            seen.append((await cue.get_status(request_id)).overall_status)
            await clock.advance(0.5)

        ranks = [order[s] for s in seen]
        assert ranks == sorted(ranks)
        assert seen[-1] == OverallStatus.COMPLETED

    async def test_result_stored_on_unit(self, make_cue, clock):
        cue = make_cue()
        await cue.start()
        request_id = await cue.submit([7, 8], "LOW")
        await clock.advance(10.0)

        report = await cue.get_status(request_id)
        unit = await cue.get_unit(report.units[0].unit_id)
        assert unit.result == [{"id": 7, "data": "processed"}, {"id": 8, "data": "processed"}]
        assert unit.attempts == 1
        assert unit.started_at == 0.0
        assert unit.completed_at == 1.0


class TestFailures:
    """Retries, terminal failures, timeouts."""

    async def test_retry_after_backoff(self, make_cue, clock):
        """A failed unit is retried once its backoff passes."""
        cue = make_cue(cooldown=5.0, retry_base_delay=10.0)
        starts = record_starts(cue, clock)
        failures = []
        calls = 0

        @cue.processor
        async def flaky(ids):
            nonlocal calls
            calls += 1
            await clock.sleep(1.0)
            if calls == 1:
                raise RuntimeError("upstream 503")
            return [{"id": i} for i in ids]

        @cue.on_failure
        def on_failure(unit, error, will_retry):
            failures.append((str(error), will_retry))

        await cue.start()
        request_id = await cue.submit([1, 2], "HIGH")
        await clock.advance(6.0)

        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.TRIGGERED
        assert report.units[0].status == UnitStatus.PENDING
        assert cue.queue_depth() == 1

        await clock.advance(30.0)
        assert [t for t, _ in starts] == [0.0, 11.0]
        assert failures == [("upstream 503", True)]
        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.COMPLETED
        unit = await cue.get_unit(report.units[0].unit_id)
        assert unit.attempts == 2
        assert unit.error is None

    async def test_failed_after_max_attempts(self, make_cue, clock):
        cue = make_cue(max_attempts=2, retry_base_delay=1.0)
        failures = []

        @cue.processor
        def broken(ids):
            raise RuntimeError("boom")

        @cue.on_failure
        def on_failure(unit, error, will_retry):
            failures.append(will_retry)

        await cue.start()
        request_id = await cue.submit([1], "MEDIUM")
        await clock.advance(30.0)

        assert failures == [True, False]
        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.FAILED
        unit = await cue.get_unit(report.units[0].unit_id)
        assert unit.status == UnitStatus.FAILED
        assert unit.attempts == 2
        assert unit.error == "boom"
        assert cue.queue_depth() == 0

    async def test_partial(self, make_cue, clock):
        """Some units done and some failed gives PARTIAL."""
        cue = make_cue(max_attempts=1)

        @cue.processor
        def picky(ids):
            if 4 in ids:
                raise ValueError("bad id 4")
            return [{"id": i} for i in ids]

        await cue.start()
        request_id = await cue.submit([1, 2, 3, 4, 5], "LOW")
        await clock.advance(30.0)

        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.PARTIAL
        assert [u.status for u in report.units] == [UnitStatus.DONE, UnitStatus.FAILED]

    async def test_timeout(self, make_cue, clock):
        cue = make_cue(work_timeout=2.0, max_attempts=1)

        @cue.processor
        async def hangs(ids):
            await clock.sleep(100.0)
            return [{"id": i} for i in ids]

        await cue.start()
        request_id = await cue.submit([1], "HIGH")
        await clock.advance(3.0)

        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.FAILED
        unit = await cue.get_unit(report.units[0].unit_id)
        assert "exceeded" in unit.error

    async def test_wrong_result_length_fails(self, make_cue, clock):
        cue = make_cue(max_attempts=1)

        @cue.processor
        def short(ids):
            return ids[:1]

        await cue.start()
        request_id = await cue.submit([1, 2, 3], "HIGH")
        await clock.advance(10.0)

        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.FAILED

    async def test_plain_results_wrapped(self, make_cue, clock):
        cue = make_cue()

        @cue.processor
        def echo(ids):
            return list(ids)

        await cue.start()
        request_id = await cue.submit([1, 2], "HIGH")
        await clock.advance(10.0)

        report = await cue.get_status(request_id)
        unit = await cue.get_unit(report.units[0].unit_id)
        assert unit.result == [{"value": 1}, {"value": 2}]

    async def test_callback_error_does_not_break_processing(self, make_cue, clock):
        cue = make_cue()

        @cue.on_start
        def explode(unit):
            raise RuntimeError("callback bug")

        await cue.start()
        request_id = await cue.submit([1], "HIGH")
        await clock.advance(10.0)

        assert (await cue.get_status(request_id)).overall_status == OverallStatus.COMPLETED


class TestWakeAndStop:
    """Idle wake-up and shutdown."""

    async def test_idle_loop_woken_by_submit(self, make_cue, clock):
        cue = make_cue()
        await cue.start()
        await clock.advance(50.0)
        assert cue.running

        request_id = await cue.submit([1], "LOW")
        await clock.settle()

        report = await cue.get_status(request_id)
        assert report.units[0].status == UnitStatus.IN_FLIGHT

    async def test_stop_requeues_in_flight_unit(self, make_cue, clock):
        cue = make_cue()
        await cue.start()
        request_id = await cue.submit([1, 2, 3, 4], "MEDIUM")
        await clock.settle()

        await cue.stop()
        assert not cue.running
        assert not cue.scheduler.lock.held

        report = await cue.get_status(request_id)
        assert [u.status for u in report.units] == [UnitStatus.PENDING, UnitStatus.PENDING]
        assert report.overall_status == OverallStatus.TRIGGERED
        assert cue.queue_depth() == 2
        assert {e.unit_id for e in cue.pending_units()} == {u.unit_id for u in report.units}

        await cue.start()
        await clock.advance(30.0)
        assert (await cue.get_status(request_id)).overall_status == OverallStatus.COMPLETED


class TestRunCycle:
    """Direct run_cycle calls."""

    async def _scheduler(self, clock, processor=None):
        store = MemoryStore()
        queue = UnitQueue()
        aggregator = StatusAggregator(store, clock.now)
        scheduler = Scheduler(
            store,
            queue,
            aggregator,
            processor or (lambda ids: [{"id": i} for i in ids]),
            clock=clock,
            cooldown=0.0,
        )
        request = Request(request_id="r1", priority=Priority.HIGH, created_at=0.0, updated_at=0.0)
        units = make_units("r1", [1, 2, 3, 4], Priority.HIGH, now=0.0)
        await store.save_request(request, units)
        for unit in units:
            queue.enqueue(unit)
        return scheduler, store, queue, units

    async def test_busy_when_locked(self, clock):
        scheduler, _, queue, _ = await self._scheduler(clock)
        assert scheduler.lock.try_acquire()

        assert await scheduler.run_cycle() == CycleOutcome.BUSY
        assert len(queue) == 2

    async def test_concurrent_cycles(self, clock):
        """Two overlapping cycles: one works, the other backs off."""
        scheduler, _, queue, _ = await self._scheduler(clock)

        outcomes = await asyncio.gather(scheduler.run_cycle(), scheduler.run_cycle())
        assert sorted(outcomes) == sorted([CycleOutcome.DONE, CycleOutcome.BUSY])
        assert len(queue) == 1

    async def test_idle_when_empty(self, clock):
        scheduler, _, queue, _ = await self._scheduler(clock)
        queue.clear()
        assert await scheduler.run_cycle() == CycleOutcome.IDLE
        assert not scheduler.lock.held

    async def test_skips_non_pending_unit(self, clock):
        scheduler, store, queue, units = await self._scheduler(clock)
        units[0].status = UnitStatus.DONE
        await store.update_unit(units[0], 0.0)

        assert await scheduler.run_cycle() == CycleOutcome.SKIPPED
        assert await scheduler.run_cycle() == CycleOutcome.DONE
        assert len(queue) == 0

    async def test_retry_outcome(self, clock):
        def broken(ids):
            raise RuntimeError("nope")

        scheduler, store, queue, units = await self._scheduler(clock, broken)
        assert await scheduler.run_cycle() == CycleOutcome.RETRY
        unit = await store.get_unit(units[0].unit_id)
        assert unit.status == UnitStatus.PENDING
        assert unit.attempts == 1
        assert units[0].unit_id in queue

    async def test_entry_restored_when_lookup_fails(self, clock):
        scheduler, store, queue, units = await self._scheduler(clock)
        before = queue.entries()

        async def broken_get_unit(unit_id):
            raise RuntimeError("database is locked")

        store.get_unit = broken_get_unit
        with pytest.raises(RuntimeError):
            await scheduler.run_cycle()

        assert queue.entries() == before
        assert not scheduler.lock.held

    async def test_leftover_in_flight_unit_picked_up(self, clock):
        """A queued unit whose last write left it IN_FLIGHT is worked again."""
        scheduler, store, queue, units = await self._scheduler(clock)
        units[0].status = UnitStatus.IN_FLIGHT
        await store.update_unit(units[0], 0.0)

        assert await scheduler.run_cycle() == CycleOutcome.DONE
        assert (await store.get_unit(units[0].unit_id)).status == UnitStatus.DONE


class TestStoreFaults:
    """A failing store write never strands a unit."""

    @pytest.mark.parametrize("fail_on", [UnitStatus.IN_FLIGHT, UnitStatus.DONE])
    async def test_unit_retried_after_failed_write(self, make_cue, clock, fail_on):
        store = FlakyStore(fail_on)
        cue = make_cue(store=store)
        failures = []

        @cue.on_failure
        def on_failure(unit, error, will_retry):
            failures.append(will_retry)

        await cue.start()
        request_id = await cue.submit([1], "HIGH")
        await clock.advance(200.0)

        assert store.failures == 1
        assert failures == [True]
        report = await cue.get_status(request_id)
        assert report.overall_status == OverallStatus.COMPLETED
        assert report.units[0].status == UnitStatus.DONE
        assert report.units[0].attempts == 2
        assert cue.queue_depth() == 0
        assert cue.running

    async def test_failed_status_write_retried_next_cycle(self, make_cue, clock):
        store = MemoryStore()
        cue = make_cue(store=store)
        real_set = store.set_overall_status
        calls = []

        async def set_once_broken(request_id, status, updated_at):
            calls.append(status)
            if status == OverallStatus.COMPLETED and calls.count(status) == 1:
                raise RuntimeError("disk I/O error")
            await real_set(request_id, status, updated_at)

        store.set_overall_status = set_once_broken

        await cue.start()
        request_id = await cue.submit([1], "HIGH")
        await clock.advance(2.0)
        assert (await cue.get_status(request_id)).overall_status == OverallStatus.TRIGGERED

        await clock.advance(20.0)
        report = await cue.get_status(request_id)
        assert report.units[0].status == UnitStatus.DONE
        assert report.overall_status == OverallStatus.COMPLETED


class TestStopMidWrite:
    """stop() while the scheduler is waiting on the store."""

    async def test_stop_while_marking_in_flight(self, make_cue, clock):
        store = GatedStore(OverallStatus.TRIGGERED)
        cue = make_cue(store=store)
        await cue.start()
        request_id = await cue.submit([1], "HIGH")
        await clock.settle()
        assert not store.armed

        await cue.stop()

        report = await cue.get_status(request_id)
        assert report.units[0].status == UnitStatus.PENDING
        assert report.overall_status == OverallStatus.TRIGGERED
        assert cue.queue_depth() == 1

        await cue.start()
        await clock.advance(30.0)
        assert (await cue.get_status(request_id)).overall_status == OverallStatus.COMPLETED

    async def test_stop_waits_for_outcome_write(self, make_cue, clock):
        store = GatedStore(OverallStatus.COMPLETED)
        cue = make_cue(store=store)
        await cue.start()
        request_id = await cue.submit([1], "HIGH")
        await clock.settle()
        await clock.advance(1.0)
        assert not store.armed

        stopping = asyncio.ensure_future(cue.stop())
        await clock.settle()
        assert not stopping.done()

        store.gate.set()
        await stopping

        report = await cue.get_status(request_id)
        assert report.units[0].status == UnitStatus.DONE
        assert report.units[0].attempts == 1
        assert report.overall_status == OverallStatus.COMPLETED
        assert cue.queue_depth() == 0


class TestRestart:
    """Pacing across stop() and start()."""

    async def test_restart_waits_out_cooldown(self, make_cue, clock):
        cue = make_cue(cooldown=5.0, work_duration=1.0)
        starts = record_starts(cue, clock)

        await cue.start()
        await cue.submit([1, 2, 3, 4], "MEDIUM")
        await clock.advance(2.0)
        await cue.stop()
        await cue.start()
        await clock.advance(20.0)

        assert starts == [(0.0, [1, 2, 3]), (6.0, [4])]

    async def test_restart_after_idle_starts_immediately(self, make_cue, clock):
        cue = make_cue(cooldown=5.0, work_duration=1.0)
        starts = record_starts(cue, clock)

        await cue.start()
        await cue.submit([1], "LOW")
        await clock.advance(10.0)
        await cue.stop()
        await cue.start()
        await cue.submit([2], "LOW")
        await clock.settle()

        assert starts == [(0.0, [1]), (10.0, [2])]
