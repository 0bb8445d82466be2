"""Simulation runner for ingestcue-sim.

Owns the IngestCue, installs a mock processor with latency and injected
errors, and keeps SimulationState in sync through callbacks and polling.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from ingestcue import IngestConfig, IngestCue, NotFound, Priority
from ingestcue.models import UnitStatus

from ingestcue_sim.display import RequestProgress
from ingestcue_sim.scenarios import get_scenario

if TYPE_CHECKING:
    from ingestcue_sim.display import SimulationState


@dataclass
class SimConfig:
    """Workload and pacing for one simulator run."""

    scenario: str = "mixed"
    requests: int = 5
    cooldown: float = 1.0
    work_duration: float = 0.2
    latency_jitter: float = 0.2  # fraction of work_duration
    batch_size: int = 3
    error_rate: float = 0.0
    max_attempts: int = 3
    retry_base_delay: float = 0.5
    duration: float | None = None
    db_path: str | None = None
    seed: int | None = None

    def ingest_config(self) -> IngestConfig:
        return IngestConfig(
            batch_size=self.batch_size,
            cooldown=self.cooldown,
            work_duration=self.work_duration,
            max_attempts=self.max_attempts,
            retry_base_delay=self.retry_base_delay,
            db_path=self.db_path,
        )


class SimulationRunner:
    """Feeds a scenario into an IngestCue and mirrors its progress into state.

    Usage:
        config = SimConfig(requests=10, cooldown=0.5)
        state = SimulationState()
        runner = SimulationRunner(config, state)

        # In your event loop:
        await runner.run()
    """

    def __init__(self, config: SimConfig, state: "SimulationState"):
        self.config = config
        self.state = state
        self.scenario = get_scenario(config.scenario)
        self.rng = random.Random(config.seed)

        self._cue: IngestCue | None = None
        self._running = False

    @property
    def cue(self) -> IngestCue | None:
        return self._cue

    async def run(self) -> None:
        """Start a cue, feed it the scenario, and return once every request settles."""
        self._running = True
        self.state.start_time = time.time()
        self.state.scenario_name = self.scenario.info.name
        self.state.cooldown = self.config.cooldown
        self.state.work_duration = self.config.work_duration
        self.state.batch_size = self.config.batch_size
        self.state.error_rate = self.config.error_rate

        self._cue = IngestCue(self.config.ingest_config())
        self._register_handlers(self._cue)
        await self._cue.start()

        submit_task = asyncio.create_task(self.scenario.submit_workload(self, self.config))
        try:
            await self._monitor(submit_task)
        finally:
            if not submit_task.done():
                submit_task.cancel()
                try:
                    await submit_task
                except asyncio.CancelledError:
                    pass
            await self.cleanup()

    def _register_handlers(self, cue: IngestCue) -> None:
        config = self.config
        state = self.state
        rng = self.rng

        @cue.processor
        async def mock_external_call(ids):
            base = config.work_duration
            jitter = config.latency_jitter
            if base > 0:
                await asyncio.sleep(base * rng.uniform(1 - jitter, 1 + jitter))
            if rng.random() < config.error_rate:
                raise RuntimeError("injected upstream error")
            return [{"id": i, "data": "processed"} for i in ids]

        @cue.on_start
        def on_start(unit):
            state.in_flight += 1
            state.queued = max(0, state.queued - 1)
            if unit.attempts > 1:
                state.retrying = max(0, state.retrying - 1)
            state.add_event("started", unit.unit_id, self._priority_of(unit), f"ids={unit.ids}")

        @cue.on_complete
        def on_complete(unit, result, duration):
            state.in_flight = max(0, state.in_flight - 1)
            state.done += 1
            req = state.requests.get(unit.request_id)
            if req:
                req.done_units += 1
            state.add_event("done", unit.unit_id, self._priority_of(unit), f"{int(duration * 1000)}ms")

        @cue.on_failure
        def on_failure(unit, error, will_retry):
            state.in_flight = max(0, state.in_flight - 1)
            if will_retry:
                state.retrying += 1
                state.queued += 1
                state.add_event("retrying", unit.unit_id, self._priority_of(unit), str(error))
                return
            state.failed += 1
            req = state.requests.get(unit.request_id)
            if req:
                req.failed_units += 1
            state.add_event("failed", unit.unit_id, self._priority_of(unit), str(error))

    def _priority_of(self, unit) -> str | None:
        req = self.state.requests.get(unit.request_id)
        return req.priority if req else None

    async def submit(self, ids: Sequence[int], priority: Priority | str) -> str:
        """Submit one request and record it in the state. Used by scenarios."""
        request_id = await self._cue.submit(ids, priority)
        report = await self._cue.get_status(request_id)
        self.state.requests[request_id] = RequestProgress(
            request_id=request_id,
            priority=report.priority.value,
            total_units=len(report.units),
            submitted_at=time.time(),
        )
        self.state.submitted_requests += 1
        self.state.submitted_units += len(report.units)
        self.state.queued += len(report.units)
        self.state.add_event(
            "submitted", request_id, report.priority.value, f"{len(ids)} ids, {len(report.units)} units"
        )
        return request_id

    async def _monitor(self, submit_task: asyncio.Task) -> None:
        """Monitor until every request finishes or duration is exceeded."""
        while self._running:
            await self._update_state()

            if submit_task.done():
                error = submit_task.exception()
                if error is not None:
                    raise error
                if self.state.all_finished:
                    break
            if self.config.duration and self._elapsed >= self.config.duration:
                break

            await asyncio.sleep(0.05)
        await self._update_state()

    async def _update_state(self) -> None:
        """Refresh per-request status from the cue."""
        if not self._cue:
            return
        self.state.elapsed = self._elapsed

        for request_id, req in self.state.requests.items():
            try:
                report = await self._cue.get_status(request_id)
            except NotFound:
                continue
            req.overall_status = report.overall_status.value
            req.done_units = sum(1 for u in report.units if u.status == UnitStatus.DONE)
            req.failed_units = sum(1 for u in report.units if u.status == UnitStatus.FAILED)

        self.state.queued = self._cue.queue_depth()

    @property
    def _elapsed(self) -> float:
        """Wall-clock seconds since run() began."""
        return time.time() - self.state.start_time

    def stop(self) -> None:
        """Request simulation stop."""
        self._running = False

    async def cleanup(self) -> None:
        """Close the cue. Safe to call more than once."""
        if self._cue:
            await self._cue.close()
            self._cue = None
        self._running = False
