"""Request and unit storage.

Two backends share one async interface: ``MemoryStore`` keeps everything in
dicts, ``SQLiteStore`` persists through ``ingestcue.db``. Both hand out copies,
so readers always see a snapshot and never observe a half-applied write.
"""

from __future__ import annotations

import copy
from typing import Protocol

import aiosqlite

from ingestcue import db
from ingestcue.models import OverallStatus, Request, Unit, UnitStatus


class Store(Protocol):
    """Persistence interface used by the scheduler, aggregator, and intake."""

    async def save_request(self, request: Request, units: list[Unit]) -> None: ...

    async def get_request(self, request_id: str) -> Request | None: ...

    async def list_requests(
        self, status: OverallStatus | None = None, limit: int = 100
    ) -> list[Request]: ...

    async def get_units(self, request_id: str) -> list[Unit]: ...

    async def get_unit(self, unit_id: str) -> Unit | None: ...

    async def units_in_status(self, status: UnitStatus) -> list[Unit]: ...

    async def update_unit(self, unit: Unit, updated_at: float) -> None: ...

    async def set_overall_status(
        self, request_id: str, status: OverallStatus, updated_at: float
    ) -> None: ...

    async def set_processing_flag(self, held: bool, updated_at: float) -> None: ...

    async def get_processing_flag(self) -> bool: ...

    async def close(self) -> None: ...


class MemoryStore:
    """In-process store. Nothing survives the process."""

    def __init__(self) -> None:
        self._requests: dict[str, Request] = {}
        self._units: dict[str, Unit] = {}
        self._by_request: dict[str, list[str]] = {}
        self._processing = False

    async def save_request(self, request: Request, units: list[Unit]) -> None:
        if request.request_id in self._requests:
            raise ValueError(f"Request already exists: {request.request_id}")
        stored = copy.deepcopy(request)
        stored.units = []
        self._requests[request.request_id] = stored
        self._by_request[request.request_id] = [u.unit_id for u in units]
        for unit in units:
            self._units[unit.unit_id] = copy.deepcopy(unit)

    async def get_request(self, request_id: str) -> Request | None:
        stored = self._requests.get(request_id)
        if stored is None:
            return None
        request = copy.deepcopy(stored)
        request.units = await self.get_units(request_id)
        return request

    async def list_requests(
        self, status: OverallStatus | None = None, limit: int = 100
    ) -> list[Request]:
        matches = [
            r for r in self._requests.values()
            if status is None or r.overall_status == status
        ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [await self.get_request(r.request_id) for r in matches[:limit]]

    async def get_units(self, request_id: str) -> list[Unit]:
        unit_ids = self._by_request.get(request_id, [])
        units = [copy.deepcopy(self._units[uid]) for uid in unit_ids]
        return sorted(units, key=lambda u: u.index)

    async def get_unit(self, unit_id: str) -> Unit | None:
        unit = self._units.get(unit_id)
        return copy.deepcopy(unit) if unit else None

    async def units_in_status(self, status: UnitStatus) -> list[Unit]:
        units = [copy.deepcopy(u) for u in self._units.values() if u.status == status]
        return sorted(units, key=lambda u: (-u.priority_rank, u.enqueued_at, u.request_id, u.index))

    async def update_unit(self, unit: Unit, updated_at: float) -> None:
        if unit.unit_id not in self._units:
            raise KeyError(unit.unit_id)
        self._units[unit.unit_id] = copy.deepcopy(unit)
        self._requests[unit.request_id].updated_at = updated_at

    async def set_overall_status(
        self, request_id: str, status: OverallStatus, updated_at: float
    ) -> None:
        request = self._requests[request_id]
        request.overall_status = status
        request.updated_at = updated_at

    async def set_processing_flag(self, held: bool, updated_at: float) -> None:
        self._processing = held

    async def get_processing_flag(self) -> bool:
        return self._processing

    async def close(self) -> None:
        pass


class SQLiteStore:
    """
    SQLite-backed store.

    Example:
        store = await SQLiteStore.open("ingest.db")
        ...
        await store.close()
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn

    @classmethod
    async def open(cls, db_path: str) -> SQLiteStore:
        return cls(await db.init_db(db_path))

    async def save_request(self, request: Request, units: list[Unit]) -> None:
        await db.insert_request(self.conn, request.to_row(), [u.to_row() for u in units])

    async def get_request(self, request_id: str) -> Request | None:
        row = await db.get_request(self.conn, request_id)
        if row is None:
            return None
        return Request.from_row(row, await self.get_units(request_id))

    async def list_requests(
        self, status: OverallStatus | None = None, limit: int = 100
    ) -> list[Request]:
        rows = await db.list_requests(
            self.conn, overall_status=status.value if status else None, limit=limit
        )
        return [Request.from_row(row, await self.get_units(row["request_id"])) for row in rows]

    async def get_units(self, request_id: str) -> list[Unit]:
        return [Unit.from_row(row) for row in await db.get_units(self.conn, request_id)]

    async def get_unit(self, unit_id: str) -> Unit | None:
        row = await db.get_unit(self.conn, unit_id)
        return Unit.from_row(row) if row else None

    async def units_in_status(self, status: UnitStatus) -> list[Unit]:
        return [Unit.from_row(row) for row in await db.get_units_by_status(self.conn, status.value)]

    async def update_unit(self, unit: Unit, updated_at: float) -> None:
        await db.update_unit(self.conn, unit.to_row(), updated_at)

    async def set_overall_status(
        self, request_id: str, status: OverallStatus, updated_at: float
    ) -> None:
        await db.update_overall_status(self.conn, request_id, status.value, updated_at)

    async def set_processing_flag(self, held: bool, updated_at: float) -> None:
        await db.set_processing_flag(self.conn, held, updated_at)

    async def get_processing_flag(self) -> bool:
        return await db.get_processing_flag(self.conn)

    async def close(self) -> None:
        await self.conn.close()
