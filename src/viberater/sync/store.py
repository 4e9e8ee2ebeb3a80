"""SQLite-backed local cache and durable sync queue.

One database file holds three entity collections (``ideas``, ``projects``,
``tasks``), the ``sync_queue`` mutation log and the ``id_aliases`` identity
map written when a provisional id is replaced by a server id.

All public methods are coroutines. Blocking SQLite work runs in a worker
thread and every write goes through a single ``asyncio.Lock``, so writes to
the same key are serialized while reads proceed freely.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar

from .models import COLLECTIONS, Method, Record, Resource, SyncOperation, now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalStoreError(RuntimeError):
    """Raised when the local database cannot complete an operation."""


class QueueFullError(LocalStoreError):
    """Raised when the sync queue has reached its capacity."""


@dataclass
class QueueStats:
    """Aggregate statistics about the sync queue.

    Used by ``viberater sync status`` to display queue health.
    """

    total_queued: int = 0
    total_retried: int = 0
    total_dead: int = 0
    oldest_op_age: Optional[timedelta] = None
    by_resource: dict[str, int] = field(default_factory=dict)
    by_method: dict[str, int] = field(default_factory=dict)


def default_db_path() -> Path:
    return Path.home() / ".viberater" / "local.db"


def _check_collection(collection: str) -> str:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection!r}")
    return collection


def _record_id(record: Record) -> str:
    record_id = record.get("id")
    if record_id is None or str(record_id) == "":
        raise ValueError("Record must include a non-empty 'id'")
    return str(record_id)


def _project_ref(record: Record) -> Optional[str]:
    value = record.get("project_id")
    return str(value) if value is not None else None


def _row_to_operation(row: sqlite3.Row) -> SyncOperation:
    return SyncOperation(
        id=int(row["id"]),
        resource=Resource(row["resource"]),
        method=Method(row["method"]),
        entity_id=str(row["entity_id"]),
        data=json.loads(row["data"]),
        timestamp=int(row["timestamp"]),
        synced=bool(row["synced"]),
        retry_count=int(row["retry_count"]),
        last_error=row["last_error"],
        dead=bool(row["dead"]),
    )


class LocalStore:
    """Persistent cache for ideas, projects and tasks plus the sync queue."""

    MAX_QUEUE_SIZE = 10000

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path) if db_path is not None else default_db_path()
        self._write_lock = asyncio.Lock()

    # ── Plumbing ──────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _read(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Local store read failed: {exc}") from exc

    async def _write(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._write_lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as exc:
                raise LocalStoreError(f"Local store write failed: {exc}") from exc

    def _transaction(self, body: Callable[[sqlite3.Connection], T]) -> T:
        conn = self._connect()
        try:
            result = body(conn)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, tuple(params)).fetchall()
        finally:
            conn.close()

    # ── Schema ────────────────────────────────────────────────────

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        def body(conn: sqlite3.Connection) -> None:
            for collection in COLLECTIONS:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {collection} (
                        id TEXT PRIMARY KEY,
                        project_id TEXT,
                        payload TEXT NOT NULL,
                        stored_at TEXT NOT NULL
                    )
                    """
                )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    resource TEXT NOT NULL,
                    method TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    synced INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    dead INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_queue_synced ON sync_queue(synced, dead)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS id_aliases (
                    provisional_id TEXT PRIMARY KEY,
                    server_id TEXT NOT NULL,
                    resource TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

        self._transaction(body)

    async def init(self) -> None:
        """Create the database file and schema if needed."""
        await self._write(self._init_db)
        logger.debug("Local store ready at %s", self.db_path)

    # ── Collections ───────────────────────────────────────────────

    async def get_all(self, collection: str) -> list[Record]:
        table = _check_collection(collection)
        rows = await self._read(self._query, f"SELECT payload FROM {table} ORDER BY rowid ASC")
        return [json.loads(row["payload"]) for row in rows]

    async def get(self, collection: str, entity_id: str) -> Optional[Record]:
        table = _check_collection(collection)
        rows = await self._read(self._query, f"SELECT payload FROM {table} WHERE id = ?", (entity_id,))
        if not rows:
            return None
        return json.loads(rows[0]["payload"])

    async def get_tasks_by_project(self, project_id: str) -> list[Record]:
        rows = await self._read(
            self._query,
            "SELECT payload FROM tasks WHERE project_id = ? ORDER BY rowid ASC",
            (project_id,),
        )
        return [json.loads(row["payload"]) for row in rows]

    @staticmethod
    def _upsert(conn: sqlite3.Connection, table: str, record: Record) -> None:
        conn.execute(
            f"""
            INSERT INTO {table}(id, project_id, payload, stored_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id = excluded.project_id,
                payload = excluded.payload,
                stored_at = excluded.stored_at
            """,
            (
                _record_id(record),
                _project_ref(record),
                json.dumps(record, separators=(",", ":"), default=str),
                now_iso(),
            ),
        )

    async def put(self, collection: str, record: Record) -> None:
        """Insert or replace one record (idempotent upsert keyed by ``id``)."""
        table = _check_collection(collection)
        _record_id(record)
        await self._write(self._transaction, lambda conn: self._upsert(conn, table, record))

    async def put_many(self, collection: str, records: Iterable[Record]) -> None:
        """Upsert several records in a single transaction."""
        table = _check_collection(collection)
        batch = list(records)
        for record in batch:
            _record_id(record)

        def body(conn: sqlite3.Connection) -> None:
            for record in batch:
                self._upsert(conn, table, record)

        await self._write(self._transaction, body)

    async def delete(self, collection: str, entity_id: str) -> None:
        table = _check_collection(collection)
        await self._write(
            self._transaction,
            lambda conn: conn.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,)),
        )

    async def replace_collection(
        self,
        collection: str,
        records: Iterable[Record],
        *,
        project_id: Optional[str] = None,
    ) -> None:
        """Make the cache match a fresh server listing.

        Entries missing from *records* are removed unless a pending queue
        operation still targets them (offline work that has not been
        replayed yet). With *project_id* only that project's tasks are
        considered.
        """
        table = _check_collection(collection)
        resource = table[:-1]
        batch = list(records)
        keep_ids = [_record_id(record) for record in batch]

        def body(conn: sqlite3.Connection) -> None:
            clauses = [
                """id NOT IN (
                    SELECT entity_id FROM sync_queue
                    WHERE synced = 0 AND dead = 0 AND resource = ?
                )"""
            ]
            params: list[Any] = [resource]
            if keep_ids:
                clauses.append(f"id NOT IN ({','.join('?' * len(keep_ids))})")
                params.extend(keep_ids)
            if project_id is not None:
                clauses.append("project_id = ?")
                params.append(project_id)
            conn.execute(f"DELETE FROM {table} WHERE {' AND '.join(clauses)}", params)
            for record in batch:
                self._upsert(conn, table, record)

        await self._write(self._transaction, body)

    async def clear(self, collection: str) -> None:
        table = _check_collection(collection)
        await self._write(self._transaction, lambda conn: conn.execute(f"DELETE FROM {table}"))

    async def clear_all(self) -> None:
        def body(conn: sqlite3.Connection) -> None:
            for table in (*COLLECTIONS, "sync_queue", "id_aliases"):
                conn.execute(f"DELETE FROM {table}")

        await self._write(self._transaction, body)

    # ── Sync queue ────────────────────────────────────────────────

    async def enqueue(self, op: SyncOperation) -> SyncOperation:
        """Append *op* to the queue and return it with its assigned id."""

        def body(conn: sqlite3.Connection) -> SyncOperation:
            row = conn.execute("SELECT COUNT(*) FROM sync_queue WHERE synced = 0").fetchone()
            if row is not None and int(row[0]) >= self.MAX_QUEUE_SIZE:
                raise QueueFullError(
                    f"Sync queue full ({self.MAX_QUEUE_SIZE:,} operations). Reconnect to drain it."
                )
            cursor = conn.execute(
                """
                INSERT INTO sync_queue(resource, method, entity_id, data, timestamp, synced)
                VALUES(?, ?, ?, ?, ?, 0)
                """,
                (
                    op.resource.value,
                    op.method.value,
                    op.entity_id,
                    json.dumps(op.data, separators=(",", ":"), default=str),
                    op.timestamp,
                ),
            )
            return SyncOperation(
                id=int(cursor.lastrowid),
                resource=op.resource,
                method=op.method,
                entity_id=op.entity_id,
                data=dict(op.data),
                timestamp=op.timestamp,
            )

        queued = await self._write(self._transaction, body)
        logger.debug(
            "Queued %s %s %s (op #%s)", queued.method.value, queued.resource.value, queued.entity_id, queued.id
        )
        return queued

    async def pending_ops(self) -> list[SyncOperation]:
        """Unsynced, non-dead-lettered operations in FIFO (enqueue) order."""
        rows = await self._read(
            self._query,
            "SELECT * FROM sync_queue WHERE synced = 0 AND dead = 0 ORDER BY id ASC",
        )
        return [_row_to_operation(row) for row in rows]

    async def dead_ops(self) -> list[SyncOperation]:
        rows = await self._read(
            self._query,
            "SELECT * FROM sync_queue WHERE synced = 0 AND dead = 1 ORDER BY id ASC",
        )
        return [_row_to_operation(row) for row in rows]

    async def get_op(self, op_id: int) -> Optional[SyncOperation]:
        rows = await self._read(self._query, "SELECT * FROM sync_queue WHERE id = ?", (op_id,))
        return _row_to_operation(rows[0]) if rows else None

    async def mark_synced(self, op_id: int) -> None:
        await self._write(
            self._transaction,
            lambda conn: conn.execute("UPDATE sync_queue SET synced = 1 WHERE id = ?", (op_id,)),
        )

    async def purge_synced(self) -> int:
        """Physically remove synced operations. Returns how many were removed."""
        return await self._write(
            self._transaction,
            lambda conn: conn.execute("DELETE FROM sync_queue WHERE synced = 1").rowcount,
        )

    async def purge_dead(self) -> int:
        """Discard dead-lettered operations. Returns how many were removed."""
        return await self._write(
            self._transaction,
            lambda conn: conn.execute("DELETE FROM sync_queue WHERE dead = 1 AND synced = 0").rowcount,
        )

    async def record_failure(self, op_id: int, error: str) -> int:
        """Bump the retry counter of a failed operation. Returns the new count."""

        def body(conn: sqlite3.Connection) -> int:
            conn.execute(
                "UPDATE sync_queue SET retry_count = retry_count + 1, last_error = ? WHERE id = ?",
                (error, op_id),
            )
            row = conn.execute("SELECT retry_count FROM sync_queue WHERE id = ?", (op_id,)).fetchone()
            return int(row[0]) if row is not None else 0

        return await self._write(self._transaction, body)

    async def dead_letter(self, op_id: int, error: str) -> None:
        """Exclude an operation from future drains without discarding it."""
        await self._write(
            self._transaction,
            lambda conn: conn.execute(
                "UPDATE sync_queue SET dead = 1, last_error = ? WHERE id = ?", (error, op_id)
            ),
        )

    async def requeue(self, op_id: int) -> bool:
        """Return a dead-lettered operation to the pending set."""
        return await self._write(
            self._transaction,
            lambda conn: conn.execute(
                "UPDATE sync_queue SET dead = 0, retry_count = 0 WHERE id = ? AND dead = 1 AND synced = 0",
                (op_id,),
            ).rowcount
            > 0,
        )

    async def queue_size(self) -> int:
        rows = await self._read(
            self._query, "SELECT COUNT(*) AS n FROM sync_queue WHERE synced = 0 AND dead = 0"
        )
        return int(rows[0]["n"]) if rows else 0

    async def get_queue_stats(self) -> QueueStats:
        """Compute aggregate statistics about unsynced operations."""

        def body() -> QueueStats:
            conn = self._connect()
            try:
                total_queued = int(
                    conn.execute("SELECT COUNT(*) FROM sync_queue WHERE synced = 0 AND dead = 0").fetchone()[0]
                )
                total_dead = int(
                    conn.execute("SELECT COUNT(*) FROM sync_queue WHERE synced = 0 AND dead = 1").fetchone()[0]
                )
                if total_queued == 0 and total_dead == 0:
                    return QueueStats()

                total_retried = int(
                    conn.execute(
                        "SELECT COUNT(*) FROM sync_queue WHERE synced = 0 AND retry_count > 0"
                    ).fetchone()[0]
                )

                oldest_ms = conn.execute("SELECT MIN(timestamp) FROM sync_queue WHERE synced = 0").fetchone()[0]
                oldest_age: Optional[timedelta] = None
                if oldest_ms is not None:
                    oldest = datetime.fromtimestamp(int(oldest_ms) / 1000, tz=timezone.utc)
                    oldest_age = datetime.now(tz=timezone.utc) - oldest

                by_resource = {
                    str(resource): int(count)
                    for resource, count in conn.execute(
                        "SELECT resource, COUNT(*) FROM sync_queue WHERE synced = 0 GROUP BY resource"
                    )
                }
                by_method = {
                    str(method): int(count)
                    for method, count in conn.execute(
                        "SELECT method, COUNT(*) FROM sync_queue WHERE synced = 0 GROUP BY method"
                    )
                }
                return QueueStats(
                    total_queued=total_queued,
                    total_retried=total_retried,
                    total_dead=total_dead,
                    oldest_op_age=oldest_age,
                    by_resource=by_resource,
                    by_method=by_method,
                )
            finally:
                conn.close()

        return await self._read(body)

    # ── Identity map ──────────────────────────────────────────────

    async def reconcile(self, resource: Resource, provisional_id: str, record: Record) -> list[Record]:
        """Swap a provisional record for the server's copy in one transaction.

        Deletes the provisional row, stores *record*, remembers the
        provisional -> server alias and, for projects, re-points cached
        tasks. Returns any task records that were re-pointed.
        """
        table = resource.collection
        server_id = _record_id(record)

        def body(conn: sqlite3.Connection) -> list[Record]:
            moved: list[Record] = []
            if provisional_id != server_id:
                conn.execute(f"DELETE FROM {table} WHERE id = ?", (provisional_id,))
                conn.execute(
                    """
                    INSERT INTO id_aliases(provisional_id, server_id, resource, created_at)
                    VALUES(?, ?, ?, ?)
                    ON CONFLICT(provisional_id) DO UPDATE SET server_id = excluded.server_id
                    """,
                    (provisional_id, server_id, resource.value, now_iso()),
                )
                if resource is Resource.PROJECT:
                    rows = conn.execute(
                        "SELECT payload FROM tasks WHERE project_id = ?", (provisional_id,)
                    ).fetchall()
                    for row in rows:
                        task = json.loads(row["payload"])
                        task["project_id"] = server_id
                        self._upsert(conn, "tasks", task)
                        moved.append(task)
            self._upsert(conn, table, record)
            return moved

        return await self._write(self._transaction, body)

    async def resolve_id(self, entity_id: str) -> str:
        """Follow the alias table from a provisional id to its server id.

        Ids without an alias resolve to themselves.
        """

        def body() -> str:
            conn = self._connect()
            try:
                current = entity_id
                seen = {current}
                while True:
                    row = conn.execute(
                        "SELECT server_id FROM id_aliases WHERE provisional_id = ?", (current,)
                    ).fetchone()
                    if row is None or row[0] in seen:
                        return current
                    current = str(row[0])
                    seen.add(current)
            finally:
                conn.close()

        return await self._read(body)
