"""ingestcue - Prioritized, rate-limited batch ingestion with status rollup."""

from ingestcue.clock import SystemClock, VirtualClock
from ingestcue.config import IngestConfig
from ingestcue.cue import IngestCue
from ingestcue.errors import (
    IngestError,
    InvalidInput,
    InvalidPriority,
    NotFound,
    ProcessingError,
    ProcessingTimeout,
)
from ingestcue.models import OverallStatus, Priority, StatusReport, Unit, UnitStatus

__version__ = "0.1.0"
__all__ = [
    "IngestCue",
    "IngestConfig",
    "Priority",
    "UnitStatus",
    "OverallStatus",
    "StatusReport",
    "Unit",
    "SystemClock",
    "VirtualClock",
    "IngestError",
    "InvalidInput",
    "InvalidPriority",
    "NotFound",
    "ProcessingError",
    "ProcessingTimeout",
]
