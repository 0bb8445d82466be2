"""Configuration for an IngestCue instance."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any

from ingestcue.batcher import DEFAULT_BATCH_SIZE

MAX_ID_VALUE = 10**9 + 7


@dataclass(frozen=True)
class IngestConfig:
    """Tunable knobs for batching, pacing, and retries."""

    batch_size: int = DEFAULT_BATCH_SIZE
    cooldown: float = 5.0  # seconds between the end of one unit and the next pick
    work_duration: float = 1.0  # simulated processor latency
    work_timeout: float | None = 30.0
    max_attempts: int = 3
    retry_backoff: str = "exponential"
    retry_base_delay: float = 2.0
    min_id: int = 1
    max_id: int = MAX_ID_VALUE
    db_path: str | None = None  # None = in-memory store, otherwise SQLite

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.cooldown < 0:
            raise ValueError(f"cooldown must be non-negative, got {self.cooldown}")
        if self.work_timeout is not None and self.work_timeout <= 0:
            raise ValueError(f"work_timeout must be positive, got {self.work_timeout}")
        if self.min_id > self.max_id:
            raise ValueError("min_id must not exceed max_id")

    def with_overrides(self, **overrides: Any) -> IngestConfig:
        """Return a copy with the given fields replaced. Unknown names raise."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
        return replace(self, **overrides)
