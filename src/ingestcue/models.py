"""Core data models for ingestcue."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ingestcue.errors import InvalidPriority


class Priority(str, Enum):
    """Priority levels for ingestion requests."""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Queue rank. Higher ranks are dequeued first."""
        return _PRIORITY_RANKS[self]

    @classmethod
    def parse(cls, value: Any) -> Priority:
        """Accept a Priority or its exact name."""
        if isinstance(value, Priority):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                pass
        raise InvalidPriority(f"priority must be HIGH, MEDIUM, or LOW, got {value!r}")


_PRIORITY_RANKS = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}


class UnitStatus(str, Enum):
    """Possible states for a unit."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (UnitStatus.DONE, UnitStatus.FAILED)


class OverallStatus(str, Enum):
    """Request-level status derived from its units."""

    NOT_STARTED = "not_started"
    TRIGGERED = "triggered"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class Unit:
    """One chunk of a request's identifiers; the scheduling granule."""

    unit_id: str
    request_id: str
    ids: list[int]
    priority_rank: int
    enqueued_at: float
    index: int = 0
    status: UnitStatus = UnitStatus.PENDING
    attempts: int = 0
    result: list[dict[str, Any]] | None = None
    error: str | None = None
    started_at: float | None = None
    completed_at: float | None = None

    def to_row(self) -> dict[str, Any]:
        """Convert to a database row dict."""
        return {
            "unit_id": self.unit_id,
            "request_id": self.request_id,
            "ids": json.dumps(self.ids),
            "priority_rank": self.priority_rank,
            "enqueued_at": self.enqueued_at,
            "idx": self.index,
            "status": self.status.value,
            "attempts": self.attempts,
            "result": json.dumps(self.result) if self.result is not None else None,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Unit:
        """Create from a database row dict."""
        return cls(
            unit_id=row["unit_id"],
            request_id=row["request_id"],
            ids=json.loads(row["ids"]),
            priority_rank=row["priority_rank"],
            enqueued_at=row["enqueued_at"],
            index=row["idx"],
            status=UnitStatus(row["status"]),
            attempts=row["attempts"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class Request:
    """One client submission of identifiers plus a priority."""

    request_id: str
    priority: Priority
    created_at: float
    updated_at: float
    overall_status: OverallStatus = OverallStatus.NOT_STARTED
    units: list[Unit] = field(default_factory=list)

    @property
    def ids(self) -> list[int]:
        """All identifiers, in submission order."""
        return [i for unit in sorted(self.units, key=lambda u: u.index) for i in unit.ids]

    def to_row(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "priority": self.priority.value,
            "overall_status": self.overall_status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any], units: list[Unit] | None = None) -> Request:
        return cls(
            request_id=row["request_id"],
            priority=Priority(row["priority"]),
            overall_status=OverallStatus(row["overall_status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            units=units or [],
        )


@dataclass(order=True)
class QueueEntry:
    """Scheduling-queue projection of a unit.

    Ordering compares ``sort_key`` only: higher rank first, then oldest
    ``enqueued_at``, then insertion sequence.
    """

    sort_key: tuple[int, float, int] = field(init=False, repr=False)
    unit_id: str = field(compare=False)
    request_id: str = field(compare=False)
    priority_rank: int = field(compare=False)
    enqueued_at: float = field(compare=False)
    seq: int = field(compare=False)
    not_before: float | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        self.sort_key = (-self.priority_rank, self.enqueued_at, self.seq)


@dataclass
class UnitReport:
    """Public view of one unit in a status lookup."""

    unit_id: str
    ids: list[int]
    status: UnitStatus

    def to_dict(self) -> dict[str, Any]:
        return {"unit_id": self.unit_id, "ids": list(self.ids), "status": self.status.value}


@dataclass
class StatusReport:
    """Result of a status lookup."""

    request_id: str
    priority: Priority
    overall_status: OverallStatus
    units: list[UnitReport]
    created_at: float
    updated_at: float

    @classmethod
    def from_request(cls, request: Request) -> StatusReport:
        return cls(
            request_id=request.request_id,
            priority=request.priority,
            overall_status=request.overall_status,
            units=[
                UnitReport(unit_id=u.unit_id, ids=list(u.ids), status=u.status)
                for u in sorted(request.units, key=lambda u: u.index)
            ],
            created_at=request.created_at,
            updated_at=request.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "overall_status": self.overall_status.value,
            "units": [u.to_dict() for u in self.units],
        }
