"""Priority jump scenario.

A MEDIUM request arrives first; a HIGH request arrives while the first
is still draining and overtakes its remaining units:

    T0  {"ids": [1, 2, 3, 4, 5], "priority": MEDIUM}
    T4  {"ids": [6, 7, 8, 9], "priority": HIGH}

Expected order with cooldown 5: [1, 2, 3], [6, 7, 8], [9], [4, 5].
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from ingestcue import Priority

from ingestcue_sim.scenarios import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from ingestcue_sim.runner import SimConfig, SimulationRunner


class PriorityJumpScenario(Scenario):
    """MEDIUM request, then a HIGH one that jumps ahead."""

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="priority_jump",
            description="MEDIUM request at T0, HIGH request at 0.8x cooldown",
        )

    async def submit_workload(self, runner: SimulationRunner, config: SimConfig) -> None:
        await runner.submit([1, 2, 3, 4, 5], Priority.MEDIUM)
        await asyncio.sleep(config.cooldown * 0.8)
        await runner.submit([6, 7, 8, 9], Priority.HIGH)
