"""Burst scenario - everything arrives at once.

Many small requests submitted concurrently. Useful for checking that the
worker stays single-flight and paced no matter how bursty intake is.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from ingestcue import Priority

from ingestcue_sim.scenarios import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from ingestcue_sim.runner import SimConfig, SimulationRunner


class BurstScenario(Scenario):
    """All requests submitted concurrently."""

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="burst",
            description="All requests submitted at once, alternating HIGH/LOW",
        )

    async def submit_workload(self, runner: SimulationRunner, config: SimConfig) -> None:
        submissions = []
        for i in range(config.requests):
            priority = Priority.HIGH if i % 2 == 0 else Priority.LOW
            ids = list(range(i * 10 + 1, i * 10 + 6))
            submissions.append(runner.submit(ids, priority))
        await asyncio.gather(*submissions)
