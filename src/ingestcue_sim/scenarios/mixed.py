"""Mixed scenario - the default workload pattern.

Requests of random size and priority arrive at a steady pace.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from ingestcue import Priority

from ingestcue_sim.scenarios import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from ingestcue_sim.runner import SimConfig, SimulationRunner


class MixedScenario(Scenario):
    """Random priorities and sizes, submitted one after another."""

    max_ids = 8
    gap = 0.5  # seconds between submissions

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="mixed",
            description="Random priorities and sizes, steady arrivals (default)",
        )

    async def submit_workload(self, runner: SimulationRunner, config: SimConfig) -> None:
        rng = runner.rng
        next_id = 1
        for _ in range(config.requests):
            size = rng.randint(1, self.max_ids)
            ids = list(range(next_id, next_id + size))
            next_id += size
            priority = rng.choice(list(Priority))
            await runner.submit(ids, priority)
            await asyncio.sleep(self.gap)
