"""SQLite store adapters.

Implements EpisodeStorePort, EventLogPort and RecordStorePort on one
SQLite database using aiosqlite for async access. State transitions
update the episode and append the log entry in a single transaction.
"""

import asyncio
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from careflow.core.exceptions import EpisodeNotFound
from careflow.core.models import DomainEvent, Episode, EpisodeState, EventSubject, SubjectKind
from careflow.core.ports import EpisodeStorePort, EventLogPort, RecordStorePort

logger = logging.getLogger(__name__)

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Episode attributes update_fields may touch, mapped to their column encoder.
_EPISODE_FIELDS = {
    "owner_user_id": lambda v: v,
    "reason": lambda v: v,
    "tags": lambda v: json.dumps(list(v)),
    "risk_flags": lambda v: json.dumps(list(v)),
    "closed_at": lambda v: v.isoformat() if v is not None else None,
    "discharge_reason": lambda v: v,
    "recall_at": lambda v: v.isoformat() if v is not None else None,
}


def _json_path(field: str) -> str:
    if not _FIELD_NAME.match(field):
        raise ValueError(f"Invalid record field name: {field!r}")
    return f"$.{field}"


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteDocumentStore:
    """SQLite database shared by the episode, event and record stores.

    Owns the connection pool and schema. The port implementations are
    exposed as `episodes`, `events` and `records`.

    Connections run in autocommit mode; multi-statement writes open
    explicit IMMEDIATE transactions.
    """

    def __init__(self, db_path: str, pool_size: int = 5):
        """Initialize SQLite store with connection pooling.

        Args:
            db_path: Path to SQLite database file.
            pool_size: Number of connections to maintain in the pool.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._pool_size = pool_size
        self._schema_initialized = False
        self.episodes = SQLiteEpisodeStore(self)
        self.events = SQLiteEventLog(self)
        self.records = SQLiteRecordStore(self)

    async def get_connection(self) -> aiosqlite.Connection:
        """Get a connection from the pool or create a new one."""
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()
        conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
        await conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    async def return_connection(self, conn: aiosqlite.Connection) -> None:
        """Return a connection to the pool."""
        async with self._pool_lock:
            if len(self._pool) < self._pool_size:
                self._pool.append(conn)
                return
        await conn.close()

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            self._pool.clear()

    async def init_schema(self) -> None:
        """Initialize database schema on first use.

        Only runs once per instance. Subsequent calls are no-ops.
        """
        if self._schema_initialized:
            return
        async with self._schema_lock:
            if self._schema_initialized:
                return

            conn = await self.get_connection()
            try:
                await conn.execute("PRAGMA journal_mode = WAL")
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS episodes (
                        id TEXT PRIMARY KEY,
                        patient_id TEXT NOT NULL,
                        state TEXT NOT NULL,
                        started_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        owner_user_id TEXT,
                        reason TEXT,
                        tags TEXT NOT NULL DEFAULT '[]',
                        risk_flags TEXT NOT NULL DEFAULT '[]',
                        closed_at TEXT,
                        discharge_reason TEXT,
                        recall_at TEXT
                    )
                    """
                )
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS events (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT UNIQUE NOT NULL,
                        type TEXT NOT NULL,
                        subject_kind TEXT NOT NULL,
                        subject_id TEXT NOT NULL,
                        actor_user_id TEXT,
                        timestamp TEXT NOT NULL,
                        meta TEXT NOT NULL DEFAULT '{}'
                    )
                    """
                )
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                        collection TEXT NOT NULL,
                        id TEXT NOT NULL,
                        data TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (collection, id)
                    )
                    """
                )
                await conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_episodes_state "
                    "ON episodes(state, updated_at)"
                )
                await conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_episodes_updated ON episodes(updated_at)"
                )
                await conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_events_subject "
                    "ON events(subject_id, timestamp)"
                )
                self._schema_initialized = True
            finally:
                await self.return_connection(conn)


async def _insert_event(conn: aiosqlite.Connection, event: DomainEvent) -> DomainEvent:
    cursor = await conn.execute(
        """
        INSERT INTO events
        (id, type, subject_kind, subject_id, actor_user_id, timestamp, meta)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.id,
            event.type,
            event.subject.kind.value,
            event.subject.id,
            event.actor_user_id,
            event.timestamp.isoformat(),
            json.dumps(dict(event.meta), default=str),
        ),
    )
    return event.with_sequence(cursor.lastrowid)


def _row_to_event(row: tuple[Any, ...]) -> DomainEvent:
    seq, event_id, event_type, subject_kind, subject_id, actor, timestamp, meta = row
    return DomainEvent(
        id=event_id,
        type=event_type,
        subject=EventSubject(SubjectKind(subject_kind), subject_id),
        timestamp=datetime.fromisoformat(timestamp),
        actor_user_id=actor,
        meta=json.loads(meta),
        sequence=seq,
    )


class SQLiteEpisodeStore(EpisodeStorePort):
    """Episode table access; commit_transition also writes the events table."""

    def __init__(self, db: SQLiteDocumentStore):
        self.db = db

    async def create(self, episode: Episode) -> str:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            await conn.execute(
                """
                INSERT INTO episodes
                (id, patient_id, state, started_at, updated_at, owner_user_id,
                 reason, tags, risk_flags, closed_at, discharge_reason, recall_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    episode.id,
                    episode.patient_id,
                    episode.state.value,
                    episode.started_at.isoformat(),
                    episode.updated_at.isoformat(),
                    episode.owner_user_id,
                    episode.reason,
                    json.dumps(list(episode.tags)),
                    json.dumps(list(episode.risk_flags)),
                    episode.closed_at.isoformat() if episode.closed_at else None,
                    episode.discharge_reason,
                    episode.recall_at.isoformat() if episode.recall_at else None,
                ),
            )
            return episode.id
        finally:
            await self.db.return_connection(conn)

    async def get(self, episode_id: str) -> Episode | None:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            return await self._fetch_episode(conn, episode_id)
        finally:
            await self.db.return_connection(conn)

    async def get_many(self, episode_ids: list[str]) -> list[Episode]:
        if not episode_ids:
            return []
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            placeholders = ", ".join("?" for _ in episode_ids)
            cursor = await conn.execute(
                f"SELECT * FROM episodes WHERE id IN ({placeholders})",
                tuple(episode_ids),
            )
            found = {row[0]: self._row_to_episode(row) for row in await cursor.fetchall()}
            return [found[i] for i in dict.fromkeys(episode_ids) if i in found]
        finally:
            await self.db.return_connection(conn)

    async def list(
        self, state: EpisodeState | None = None, limit: int = 60
    ) -> list[Episode]:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            if state is None:
                cursor = await conn.execute(
                    "SELECT * FROM episodes ORDER BY updated_at DESC LIMIT ?", (limit,)
                )
            else:
                cursor = await conn.execute(
                    """
                    SELECT * FROM episodes WHERE state = ?
                    ORDER BY updated_at DESC LIMIT ?
                    """,
                    (state.value, limit),
                )
            return [self._row_to_episode(row) for row in await cursor.fetchall()]
        finally:
            await self.db.return_connection(conn)

    async def update_fields(
        self, episode_id: str, fields: dict[str, Any], at: datetime
    ) -> Episode:
        unknown = set(fields) - set(_EPISODE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update episode fields: {sorted(unknown)}")
        await self.db.init_schema()

        assignments = [f"{name} = ?" for name in fields] + ["updated_at = ?"]
        params = [_EPISODE_FIELDS[name](value) for name, value in fields.items()]
        params += [at.isoformat(), episode_id]

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute(
                f"UPDATE episodes SET {', '.join(assignments)} WHERE id = ?",
                tuple(params),
            )
            if cursor.rowcount == 0:
                raise EpisodeNotFound(episode_id)
            episode = await self._fetch_episode(conn, episode_id)
            assert episode is not None
            return episode
        finally:
            await self.db.return_connection(conn)

    async def count_by_state(self) -> dict[EpisodeState, int]:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute(
                "SELECT state, COUNT(*) FROM episodes GROUP BY state"
            )
            counts = {}
            for state, total in await cursor.fetchall():
                try:
                    counts[EpisodeState(state)] = total
                except ValueError:
                    logger.warning(f"Ignoring {total} episodes in unknown state {state!r}")
            return counts
        finally:
            await self.db.return_connection(conn)

    async def commit_transition(
        self,
        episode_id: str,
        expected_state: EpisodeState,
        next_state: EpisodeState,
        at: datetime,
        event: DomainEvent,
    ) -> DomainEvent | None:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = await conn.execute(
                    """
                    UPDATE episodes SET state = ?, updated_at = ?
                    WHERE id = ? AND state = ?
                    """,
                    (next_state.value, at.isoformat(), episode_id, expected_state.value),
                )
                if cursor.rowcount == 0:
                    cursor = await conn.execute(
                        "SELECT 1 FROM episodes WHERE id = ?", (episode_id,)
                    )
                    exists = await cursor.fetchone()
                    await conn.execute("ROLLBACK")
                    if exists is None:
                        raise EpisodeNotFound(episode_id)
                    return None

                stored = await _insert_event(conn, event)
                await conn.execute("COMMIT")
                return stored
            except Exception:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise
        finally:
            await self.db.return_connection(conn)

    async def _fetch_episode(
        self, conn: aiosqlite.Connection, episode_id: str
    ) -> Episode | None:
        cursor = await conn.execute("SELECT * FROM episodes WHERE id = ?", (episode_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_episode(row)

    def _row_to_episode(self, row: tuple[Any, ...]) -> Episode:
        """Convert a database row to an Episode.

        Raises:
            ValueError: If row is malformed or contains invalid data.
        """
        try:
            (
                episode_id,
                patient_id,
                state,
                started_at,
                updated_at,
                owner_user_id,
                reason,
                tags_json,
                risk_flags_json,
                closed_at,
                discharge_reason,
                recall_at,
            ) = row
            return Episode(
                id=episode_id,
                patient_id=patient_id,
                state=EpisodeState(state),
                started_at=datetime.fromisoformat(started_at),
                updated_at=datetime.fromisoformat(updated_at),
                owner_user_id=owner_user_id,
                reason=reason,
                tags=tuple(json.loads(tags_json)),
                risk_flags=tuple(json.loads(risk_flags_json)),
                closed_at=_parse_dt(closed_at),
                discharge_reason=discharge_reason,
                recall_at=_parse_dt(recall_at),
            )
        except (ValueError, TypeError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse episode row: {e}")
            raise ValueError(f"Episode row parsing failed: {e}") from e


class SQLiteEventLog(EventLogPort):
    """Append-only events table."""

    def __init__(self, db: SQLiteDocumentStore):
        self.db = db

    async def append(self, event: DomainEvent) -> DomainEvent:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            return await _insert_event(conn, event)
        finally:
            await self.db.return_connection(conn)

    async def list_for_subject(
        self, subject_id: str, limit: int = 200
    ) -> list[DomainEvent]:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute(
                """
                SELECT * FROM events WHERE subject_id = ?
                ORDER BY timestamp ASC, seq ASC LIMIT ?
                """,
                (subject_id, limit),
            )
            return [_row_to_event(row) for row in await cursor.fetchall()]
        finally:
            await self.db.return_connection(conn)

    async def list_since(self, sequence: int, limit: int = 100) -> list[DomainEvent]:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute(
                "SELECT * FROM events WHERE seq > ? ORDER BY seq ASC LIMIT ?",
                (sequence, limit),
            )
            return [_row_to_event(row) for row in await cursor.fetchall()]
        finally:
            await self.db.return_connection(conn)

    async def get(self, event_id: str) -> DomainEvent | None:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute("SELECT * FROM events WHERE id = ?", (event_id,))
            row = await cursor.fetchone()
            return _row_to_event(row) if row else None
        finally:
            await self.db.return_connection(conn)


class SQLiteRecordStore(RecordStorePort):
    """JSON documents keyed by (collection, id)."""

    def __init__(self, db: SQLiteDocumentStore):
        self.db = db

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        record_id = str(uuid.uuid4())
        await self.set(collection, record_id, data)
        return record_id

    async def set(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> None:
        await self.db.init_schema()
        now = datetime.now(timezone.utc).isoformat()
        data = {k: v for k, v in data.items() if k != "id"}

        conn = await self.db.get_connection()
        try:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                if merge:
                    cursor = await conn.execute(
                        "SELECT data FROM documents WHERE collection = ? AND id = ?",
                        (collection, record_id),
                    )
                    row = await cursor.fetchone()
                    if row is not None:
                        data = {**json.loads(row[0]), **data}
                await conn.execute(
                    """
                    INSERT INTO documents (collection, id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(collection, id)
                    DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
                    """,
                    (collection, record_id, json.dumps(data), now, now),
                )
                await conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise
        finally:
            await self.db.return_connection(conn)

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
                (collection, record_id),
            )
            row = await cursor.fetchone()
            return self._row_to_record(row) if row else None
        finally:
            await self.db.return_connection(conn)

    async def find(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        await self.db.init_schema()

        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for field, value in (filters or {}).items():
            if value is None:
                clauses.append("json_extract(data, ?) IS NULL")
                params.append(_json_path(field))
            else:
                clauses.append("json_extract(data, ?) = ?")
                params.extend([_json_path(field), int(value) if isinstance(value, bool) else value])

        sql = f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)}"
        if order_by is not None:
            sql += f" ORDER BY json_extract(data, ?) {'DESC' if descending else 'ASC'}"
            params.append(_json_path(order_by))
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute(sql, tuple(params))
            return [self._row_to_record(row) for row in await cursor.fetchall()]
        finally:
            await self.db.return_connection(conn)

    async def delete(self, collection: str, record_id: str) -> bool:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, record_id),
            )
            return cursor.rowcount > 0
        finally:
            await self.db.return_connection(conn)

    async def delete_older_than(
        self, collection: str, field: str, cutoff: int, limit: int
    ) -> int:
        await self.db.init_schema()

        conn = await self.db.get_connection()
        try:
            cursor = await conn.execute(
                """
                DELETE FROM documents WHERE rowid IN (
                    SELECT rowid FROM documents
                    WHERE collection = ? AND json_extract(data, ?) < ?
                    LIMIT ?
                )
                """,
                (collection, _json_path(field), cutoff, limit),
            )
            return cursor.rowcount
        finally:
            await self.db.return_connection(conn)

    @staticmethod
    def _row_to_record(row: tuple[Any, ...]) -> dict[str, Any]:
        record_id, data = row
        return {**json.loads(data), "id": record_id}
