"""Database operations for ingestcue."""

from __future__ import annotations

import aiosqlite

SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Requests: one row per submission
CREATE TABLE IF NOT EXISTS requests (
    request_id TEXT PRIMARY KEY,
    priority TEXT NOT NULL,
    overall_status TEXT NOT NULL DEFAULT 'not_started',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(overall_status);

-- Units: chunks of a request's ids
CREATE TABLE IF NOT EXISTS units (
    unit_id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL REFERENCES requests(request_id),
    idx INTEGER NOT NULL,
    ids TEXT NOT NULL,  -- JSON array
    priority_rank INTEGER NOT NULL,
    enqueued_at REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    result TEXT,  -- JSON
    error TEXT,
    started_at REAL,
    completed_at REAL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_units_request ON units(request_id, idx);
CREATE INDEX IF NOT EXISTS idx_units_status ON units(status);
CREATE INDEX IF NOT EXISTS idx_units_queue ON units(priority_rank DESC, enqueued_at ASC);

-- Single-row processing flag
CREATE TABLE IF NOT EXISTS processing_lock (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    held INTEGER NOT NULL DEFAULT 0,
    updated_at REAL
);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """
    Initialize database connection and schema.

    Args:
        db_path: Path to SQLite file or ":memory:" for in-memory.

    Returns:
        Open database connection.
    """
    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row

    # Enable WAL mode for better concurrency
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")

    # Check if schema exists
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ) as cursor:
        exists = await cursor.fetchone()

    if not exists:
        # Fresh database - create schema
        await conn.executescript(SCHEMA)
        await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        await conn.execute("INSERT INTO processing_lock (id, held) VALUES (1, 0)")
        await conn.commit()

    return conn


async def insert_request(conn: aiosqlite.Connection, request: dict, units: list[dict]) -> None:
    """Insert a request and all of its units in one transaction."""
    try:
        await conn.execute(
            """
            INSERT INTO requests (request_id, priority, overall_status, created_at, updated_at)
            VALUES (:request_id, :priority, :overall_status, :created_at, :updated_at)
            """,
            request,
        )
        await conn.executemany(
            """
            INSERT INTO units (
                unit_id, request_id, idx, ids, priority_rank, enqueued_at,
                status, attempts, result, error, started_at, completed_at
            ) VALUES (
                :unit_id, :request_id, :idx, :ids, :priority_rank, :enqueued_at,
                :status, :attempts, :result, :error, :started_at, :completed_at
            )
            """,
            units,
        )
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def get_request(conn: aiosqlite.Connection, request_id: str) -> dict | None:
    """Get a request row by ID."""
    async with conn.execute("SELECT * FROM requests WHERE request_id = ?", (request_id,)) as cursor:
        row = await cursor.fetchone()
        return dict(row) if row else None


async def list_requests(
    conn: aiosqlite.Connection,
    overall_status: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """List request rows with an optional status filter."""
    query = "SELECT * FROM requests WHERE 1=1"
    params: list = []

    if overall_status:
        query += " AND overall_status = ?"
        params.append(overall_status)

    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)

    async with conn.execute(query, params) as cursor:
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def update_overall_status(
    conn: aiosqlite.Connection, request_id: str, overall_status: str, updated_at: float
) -> None:
    """Persist a request's derived status."""
    await conn.execute(
        "UPDATE requests SET overall_status = ?, updated_at = ? WHERE request_id = ?",
        (overall_status, updated_at, request_id),
    )
    await conn.commit()


async def get_units(conn: aiosqlite.Connection, request_id: str) -> list[dict]:
    """Get all units of a request in creation order."""
    async with conn.execute(
        "SELECT * FROM units WHERE request_id = ? ORDER BY idx", (request_id,)
    ) as cursor:
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def get_unit(conn: aiosqlite.Connection, unit_id: str) -> dict | None:
    """Get a unit row by ID."""
    async with conn.execute("SELECT * FROM units WHERE unit_id = ?", (unit_id,)) as cursor:
        row = await cursor.fetchone()
        return dict(row) if row else None


async def get_units_by_status(conn: aiosqlite.Connection, status: str) -> list[dict]:
    """Get units in a given status, in queue order."""
    async with conn.execute(
        """
        SELECT * FROM units WHERE status = ?
        ORDER BY priority_rank DESC, enqueued_at ASC, request_id, idx
        """,
        (status,),
    ) as cursor:
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def update_unit(conn: aiosqlite.Connection, unit: dict, updated_at: float) -> None:
    """Persist a unit's mutable fields and touch its request."""
    await conn.execute(
        """
        UPDATE units SET
            status = :status,
            attempts = :attempts,
            result = :result,
            error = :error,
            started_at = :started_at,
            completed_at = :completed_at
        WHERE unit_id = :unit_id
        """,
        unit,
    )
    await conn.execute(
        "UPDATE requests SET updated_at = ? WHERE request_id = ?",
        (updated_at, unit["request_id"]),
    )
    await conn.commit()


async def set_processing_flag(conn: aiosqlite.Connection, held: bool, updated_at: float) -> None:
    """Write the single processing-lock row."""
    await conn.execute(
        "UPDATE processing_lock SET held = ?, updated_at = ? WHERE id = 1",
        (1 if held else 0, updated_at),
    )
    await conn.commit()


async def get_processing_flag(conn: aiosqlite.Connection) -> bool:
    """Read the processing-lock row."""
    async with conn.execute("SELECT held FROM processing_lock WHERE id = 1") as cursor:
        row = await cursor.fetchone()
        return bool(row["held"]) if row else False
