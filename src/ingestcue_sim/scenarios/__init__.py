"""Built-in scenarios for ingestcue-sim.

Scenarios define submission patterns: how many requests, which priorities,
and when they arrive.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ingestcue_sim.runner import SimConfig, SimulationRunner


@dataclass
class ScenarioInfo:
    """Name and one-line description shown by --list-scenarios."""
    name: str
    description: str


class Scenario(ABC):
    """Base class for simulation scenarios."""

    @property
    @abstractmethod
    def info(self) -> ScenarioInfo:
        """Registry metadata."""
        ...

    @abstractmethod
    async def submit_workload(self, runner: "SimulationRunner", config: "SimConfig") -> None:
        """Submit requests through ``runner.submit``.

        Args:
            runner: The runner; use ``runner.submit(ids, priority)`` and ``runner.rng``
            config: Run settings (request count, cooldown)
        """
        ...


# Import built-in scenarios
from ingestcue_sim.scenarios.burst import BurstScenario
from ingestcue_sim.scenarios.mixed import MixedScenario
from ingestcue_sim.scenarios.priority_jump import PriorityJumpScenario

# Name -> class, as accepted by --scenario
SCENARIOS: dict[str, type[Scenario]] = {
    "mixed": MixedScenario,
    "priority_jump": PriorityJumpScenario,
    "burst": BurstScenario,
}


def get_scenario(name: str) -> Scenario:
    """Instantiate a registered scenario."""
    if name not in SCENARIOS:
        available = ", ".join(SCENARIOS.keys())
        raise ValueError(f"Unknown scenario: {name}. Available: {available}")
    return SCENARIOS[name]()


def list_scenarios() -> list[ScenarioInfo]:
    """Name and description of every registered scenario."""
    return [cls().info for cls in SCENARIOS.values()]
