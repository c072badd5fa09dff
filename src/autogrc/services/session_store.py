import asyncio
import json
import logging
import sqlite3
import weakref
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import Message, SessionRecord
from ..settings import Settings
from .database import Database

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20
HISTORY_KEY_PREFIX = "chat_session:"

CHAT_SESSIONS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS chat_sessions (
      session_id TEXT PRIMARY KEY,
      history TEXT NOT NULL DEFAULT '[]',
      ui_messages TEXT NOT NULL DEFAULT '[]',
      created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
      updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
"""


def trim_history(messages: Sequence[Message], limit: int = HISTORY_LIMIT) -> List[Message]:
    """Keep the last ``limit`` messages without starting on an orphaned tool result."""
    trimmed = list(messages[-limit:]) if limit > 0 else []
    while trimmed and trimmed[0].get("role") == "tool":
        trimmed.pop(0)
    return trimmed


class HistoryBackend(Protocol):
    async def get(self, session_id: str) -> Optional[SessionRecord]: ...

    async def put(self, record: SessionRecord) -> bool: ...

    async def close(self) -> None: ...


class RedisHistoryStore:
    """Session records as JSON strings in Redis with a TTL."""

    def __init__(self, url: str, ttl_seconds: int) -> None:
        """Create a store for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._ttl = ttl_seconds
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    def _key(self, session_id: str) -> str:
        return f"{HISTORY_KEY_PREFIX}{session_id}"

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """Load the record for session_id. Returns None if missing or on error."""
        if self._client is None:
            return None
        try:
            raw = await self._client.get(self._key(session_id))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", session_id, e)
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            record = SessionRecord.from_dict(data)
        except (json.JSONDecodeError, AttributeError, TypeError) as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            return None
        record.session_id = session_id
        return record

    async def put(self, record: SessionRecord) -> bool:
        """Store the record with TTL. Returns True on success."""
        if self._client is None:
            return False
        try:
            payload = json.dumps(record.to_dict(), default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Session serialization failed for %s: %s", record.session_id, e)
            return False
        try:
            key = self._key(record.session_id)
            if self._ttl > 0:
                await self._client.setex(key, self._ttl, payload)
            else:
                await self._client.set(key, payload)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", record.session_id, e)
            return False


def _load_list(raw: Any) -> List[Any]:
    if not raw:
        return []
    value = json.loads(raw)
    return value if isinstance(value, list) else []


class SqliteHistoryStore:
    """Session records in the ``chat_sessions`` table of the application database."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._table_ready = False

    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        if not self._table_ready:
            conn.execute(CHAT_SESSIONS_SCHEMA)
            self._table_ready = True

    def _get_sync(self, session_id: str) -> Optional[SessionRecord]:
        with self._db.connect() as conn:
            self._ensure_table(conn)
            row = conn.execute(
                "SELECT history, ui_messages FROM chat_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return SessionRecord(
            session_id=session_id,
            history=_load_list(row["history"]),
            ui_messages=_load_list(row["ui_messages"]),
        )

    def _put_sync(self, record: SessionRecord) -> None:
        with self._db.connect() as conn:
            self._ensure_table(conn)
            conn.execute(
                """
                INSERT INTO chat_sessions (session_id, history, ui_messages, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT (session_id) DO UPDATE
                  SET history = excluded.history,
                      ui_messages = excluded.ui_messages,
                      updated_at = CURRENT_TIMESTAMP
                """,
                (
                    record.session_id,
                    json.dumps(record.history, default=str),
                    json.dumps(record.ui_messages, default=str),
                ),
            )

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """Load the record for session_id. Returns None if missing or on error."""
        try:
            return await asyncio.to_thread(self._get_sync, session_id)
        except (sqlite3.Error, json.JSONDecodeError) as e:
            logger.warning("chat_sessions read for %s failed: %s", session_id, e)
            return None

    async def put(self, record: SessionRecord) -> bool:
        """Upsert the record. Returns True on success."""
        try:
            await asyncio.to_thread(self._put_sync, record)
            return True
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning("chat_sessions write for %s failed: %s", record.session_id, e)
            return False

    async def close(self) -> None:
        return None


class SessionStore:
    """Bounded in-memory session cache in front of an optional durable backend.

    Reads go to memory first and fall back to the backend on a cold start.
    Writes update memory synchronously and reach the backend from a tracked
    background task; a failed durable write is logged and never fails a turn.
    """

    def __init__(
        self,
        backend: Optional[HistoryBackend] = None,
        max_sessions: int = 1000,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        self._backend = backend
        self._max_sessions = max(1, max_sessions)
        self._history_limit = history_limit
        self._records: "OrderedDict[str, SessionRecord]" = OrderedDict()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._pending: Set[asyncio.Task] = set()
        self._tails: Dict[str, asyncio.Task] = {}

    @property
    def backend(self) -> Optional[HistoryBackend]:
        return self._backend

    def lock(self, session_id: str) -> asyncio.Lock:
        """Return the lock serializing turns for session_id."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _remember(self, record: SessionRecord) -> None:
        self._records[record.session_id] = record
        self._records.move_to_end(record.session_id)
        while len(self._records) > self._max_sessions:
            evicted, _ = self._records.popitem(last=False)
            logger.debug("Evicted session %s from memory", evicted)

    async def get_record(self, session_id: str) -> Optional[SessionRecord]:
        """Return the session record from memory, or from the backend on a cold start."""
        record = self._records.get(session_id)
        if record is not None:
            self._records.move_to_end(session_id)
            return record
        if self._backend is None:
            return None
        record = await self._backend.get(session_id)
        if record is not None:
            self._remember(record)
        return record

    async def hydrate(self, session_id: str) -> List[Message]:
        """Return a copy of the session's history; empty when unknown or unreadable."""
        try:
            record = await self.get_record(session_id)
        except Exception as e:
            logger.warning("Session hydrate for %s failed: %s", session_id, e)
            return []
        if record is None:
            return []
        return [dict(m) for m in record.history]

    def persist(self, session_id: str, history: Sequence[Message]) -> List[Message]:
        """Trim and store a completed turn's history; the durable write runs in the background."""
        trimmed = trim_history(history, self._history_limit)
        current = self._records.get(session_id)
        record = SessionRecord(
            session_id=session_id,
            history=trimmed,
            ui_messages=list(current.ui_messages) if current else [],
        )
        self._remember(record)
        if self._backend is not None:
            self._schedule(record)
        return trimmed

    async def save_record(self, record: SessionRecord) -> bool:
        """Replace a session's record (chat-history API) and write it through."""
        record.history = trim_history(record.history, self._history_limit)
        self._remember(record)
        if self._backend is None:
            return True
        previous = self._tails.get(record.session_id)
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        return await self._backend.put(record)

    def _schedule(self, record: SessionRecord) -> None:
        snapshot = SessionRecord(
            session_id=record.session_id,
            history=list(record.history),
            ui_messages=list(record.ui_messages),
        )
        previous = self._tails.get(record.session_id)
        task = asyncio.create_task(self._write_after(previous, snapshot))
        self._tails[record.session_id] = task
        task.add_done_callback(self._on_persisted(record.session_id))
        self._pending.add(task)

    async def _write_after(self, previous: Optional[asyncio.Task], record: SessionRecord) -> bool:
        # Writes for one session land in persist order.
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        return await self._backend.put(record)

    def _on_persisted(self, session_id: str):
        def callback(task: asyncio.Task) -> None:
            self._pending.discard(task)
            if self._tails.get(session_id) is task:
                del self._tails[session_id]
            if task.cancelled():
                logger.warning("Session write for %s was cancelled", session_id)
            elif task.exception() is not None:
                logger.error("Session write for %s failed: %s", session_id, task.exception())
            elif not task.result():
                logger.warning("Session write for %s was not stored", session_id)
            else:
                logger.debug("Session %s persisted", session_id)

        return callback

    async def drain(self) -> None:
        """Wait for outstanding background writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._backend is not None:
            await self._backend.close()


async def build_session_store(settings: Settings, database: Database) -> SessionStore:
    """Build the SessionStore: Redis when redis_url is set and reachable, else SQLite."""
    backend: Optional[HistoryBackend] = None
    if settings.redis_url and settings.redis_url.strip():
        redis_store = RedisHistoryStore(settings.redis_url.strip(), settings.context_ttl_seconds)
        try:
            await redis_store.connect()
            backend = redis_store
        except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
            logger.warning("Redis session store unavailable, using SQLite: %s", e)
    if backend is None:
        backend = SqliteHistoryStore(database)
    logger.info("Session store backend: %s", type(backend).__name__)
    return SessionStore(backend=backend, max_sessions=settings.session_cache_size)
