"""DuckDB-backed conversation store.

Threads and messages live in a local DuckDB database file, the same embedded
database the rest of the backend uses for persistent records.

Database Schema:
    threads table:
        - id: Thread identifier (UUID)
        - thread_key: Unique key ("room:<id>" or "direct:" + JSON of the sorted pair)
        - kind: 'room' or 'direct'
        - room_id / user_a / user_b: Key components
        - created_at: Seconds since epoch

    messages table:
        - id: Message identifier (UUID)
        - thread_id, seq: Position in the thread, primary key
        - username, text, audio_url, video_url, seen
        - created_at: Server receipt time, seconds since epoch

Concurrency:
    Every call runs in a worker thread on its own DuckDB cursor, so a slow
    store call suspends only the calling task. Appends to one thread are
    serialized by a per-thread asyncio.Lock and performed as a single
    ``INSERT ... SELECT max(seq) + 1`` inside a transaction, so concurrent
    sends never lose updates and a failed append leaves the thread unchanged.
    A timed-out append is rolled back before the StorageError is raised, and
    the thread's lock is held until its worker has finished. Appends to
    different threads proceed independently.

Usage:
    store = DuckDBConversationStore(db_path="chat_relay.duckdb")
    thread = await store.get_or_create_thread(ThreadKey.room("general"))
    stored = await store.append_and_save(thread, Message(username="alice", text="hi"))
"""
import asyncio
import logging
import threading
import time
import uuid
import weakref
from typing import Any, Callable, List, Optional

import duckdb

from chatrelay.chat.schemas import ConversationThread, Message, ThreadKey, ThreadKind
from chatrelay.errors import StorageError

from .base import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0

_THREAD_COLUMNS = "id, kind, room_id, user_a, user_b, created_at"
_MESSAGE_COLUMNS = "id, seq, username, text, audio_url, video_url, seen, created_at"


class DuckDBConversationStore(ConversationStore):
    """Conversation store persisting threads and messages in DuckDB.

    Attributes:
        _db_path: Path to the DuckDB database file (or ":memory:").
        _timeout: Upper bound in seconds on each store call; <= 0 disables it.
    """

    _db_path: str = "chat_relay.duckdb"

    def __init__(
        self,
        db_path: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file. Defaults to "chat_relay.duckdb".
            timeout_seconds: Bound on each store call.
        """
        if db_path:
            self._db_path = db_path
        self._timeout = timeout_seconds
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._connection_lock = threading.Lock()
        # thread id / thread key -> lock; entries vanish once no task holds them
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._initialize_db()

    # =========================================================================
    # Connection handling
    # =========================================================================

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        """Open a cursor for use from a worker thread."""
        with self._connection_lock:
            return self._get_connection().cursor()

    def _initialize_db(self) -> None:
        """Create tables and indexes if they don't exist (idempotent)."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS threads (
                id VARCHAR PRIMARY KEY,
                thread_key VARCHAR NOT NULL UNIQUE,
                kind VARCHAR NOT NULL,
                room_id VARCHAR,
                user_a VARCHAR,
                user_b VARCHAR,
                created_at DOUBLE NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR NOT NULL,
                thread_id VARCHAR NOT NULL,
                seq INTEGER NOT NULL,
                username VARCHAR NOT NULL,
                text VARCHAR NOT NULL,
                audio_url VARCHAR,
                video_url VARCHAR,
                seen BOOLEAN NOT NULL,
                created_at DOUBLE NOT NULL,
                PRIMARY KEY (thread_id, seq)
            )
        """)

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    async def _run(
        self,
        fn: Callable[..., Any],
        *args: Any,
        abandon: Optional[threading.Event] = None,
    ) -> Any:
        """Run a blocking store call in a worker thread, bounded by the timeout.

        Worker threads cannot be cancelled. For writes, pass ``abandon``: on
        timeout it is set, and this waits for the worker to either roll back
        (StorageError) or report the commit it already made (success). The
        caller's result then always matches what was stored.

        Raises:
            StorageError: On any DuckDB error or when the call exceeds the timeout.
        """
        worker = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            if self._timeout and self._timeout > 0:
                waiter = asyncio.shield(worker) if abandon is not None else worker
                return await asyncio.wait_for(waiter, timeout=self._timeout)
            return await worker
        except asyncio.TimeoutError as exc:
            if abandon is None:
                logger.error("[Store] %s exceeded %.2fs", fn.__name__, self._timeout)
                raise StorageError(f"Store call timed out after {self._timeout}s") from exc
            abandon.set()
            try:
                result = await worker
            except (StorageError, duckdb.Error):
                logger.error("[Store] %s exceeded %.2fs and was rolled back", fn.__name__, self._timeout)
                raise StorageError(f"Store call timed out after {self._timeout}s") from exc
            logger.warning("[Store] %s committed after exceeding %.2fs", fn.__name__, self._timeout)
            return result
        except duckdb.Error as exc:
            logger.error("[Store] %s failed: %s", fn.__name__, exc)
            raise StorageError(f"Store call failed: {exc}") from exc

    # =========================================================================
    # Threads
    # =========================================================================

    @staticmethod
    def _row_to_thread(row: tuple) -> ConversationThread:
        thread_id, kind, room_id, user_a, user_b, created_at = row
        return ConversationThread(
            id=thread_id,
            kind=ThreadKind(kind),
            roomId=room_id,
            users=[user_a, user_b] if kind == ThreadKind.DIRECT.value else None,
            createdAt=created_at,
        )

    def _find_sync(self, thread_key: str) -> Optional[ConversationThread]:
        cur = self._cursor()
        try:
            row = cur.execute(
                f"SELECT {_THREAD_COLUMNS} FROM threads WHERE thread_key = ?",
                [thread_key],
            ).fetchone()
        finally:
            cur.close()
        return self._row_to_thread(row) if row else None

    def _create_sync(self, key: ThreadKey) -> ConversationThread:
        user_a, user_b = key.users if key.users else (None, None)
        cur = self._cursor()
        try:
            cur.execute(
                """
                INSERT INTO threads (id, thread_key, kind, room_id, user_a, user_b, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                [str(uuid.uuid4()), key.value, key.kind.value, key.roomId, user_a, user_b, time.time()],
            )
            row = cur.execute(
                f"SELECT {_THREAD_COLUMNS} FROM threads WHERE thread_key = ?",
                [key.value],
            ).fetchone()
        finally:
            cur.close()
        return self._row_to_thread(row)

    async def find_thread_by_room(self, room_id: str) -> Optional[ConversationThread]:
        return await self._run(self._find_sync, ThreadKey.room(room_id).value)

    async def find_thread_by_user_pair(
        self, user_a: str, user_b: str
    ) -> Optional[ConversationThread]:
        return await self._run(self._find_sync, ThreadKey.direct(user_a, user_b).value)

    async def create_thread(self, key: ThreadKey) -> ConversationThread:
        async with self._lock_for(key.value):
            thread = await self._run(self._create_sync, key)
        logger.info("[Store] Thread %s ready for %s", thread.id, key.value)
        return thread

    # =========================================================================
    # Messages
    # =========================================================================

    def _append_sync(
        self,
        thread_id: str,
        message: Message,
        abandon: Optional[threading.Event] = None,
    ) -> int:
        cur = self._cursor()
        try:
            cur.begin()
            try:
                if cur.execute("SELECT 1 FROM threads WHERE id = ?", [thread_id]).fetchone() is None:
                    raise StorageError(f"Unknown thread: {thread_id}")
                row = cur.execute(
                    """
                    INSERT INTO messages
                        (id, thread_id, seq, username, text, audio_url, video_url, seen, created_at)
                    SELECT ?, ?,
                        COALESCE((SELECT MAX(seq) FROM messages WHERE thread_id = ?), 0) + 1,
                        ?, ?, ?, ?, ?, ?
                    RETURNING seq
                    """,
                    [
                        message.id,
                        thread_id,
                        thread_id,
                        message.username,
                        message.text,
                        message.audioUrl,
                        message.videoUrl,
                        message.seen,
                        message.timestamp,
                    ],
                ).fetchone()
                # The caller stopped waiting; its StorageError must stay true
                if abandon is not None and abandon.is_set():
                    raise StorageError(f"Append to {thread_id} abandoned after timeout")
                cur.commit()
            except Exception:
                cur.rollback()
                raise
        finally:
            cur.close()
        return row[0]

    async def append_and_save(
        self, thread: ConversationThread, message: Message
    ) -> Message:
        abandon = threading.Event()
        # _run returns only once the worker is done, so the lock covers the whole write
        async with self._lock_for(thread.id):
            seq = await self._run(self._append_sync, thread.id, message, abandon, abandon=abandon)
        logger.debug("[Store] Appended message %s to thread %s at seq %d", message.id, thread.id, seq)
        return message.model_copy(update={"seq": seq})

    def _messages_sync(
        self, thread_id: str, before_seq: Optional[int], limit: int
    ) -> List[Message]:
        query = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_id = ?"
        params: List[Any] = [thread_id]
        if before_seq is not None:
            query += " AND seq < ?"
            params.append(before_seq)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)

        cur = self._cursor()
        try:
            rows = cur.execute(query, params).fetchall()
        finally:
            cur.close()

        return [
            Message(
                id=row[0],
                seq=row[1],
                username=row[2],
                text=row[3],
                audioUrl=row[4],
                videoUrl=row[5],
                seen=row[6],
                timestamp=row[7],
            )
            for row in reversed(rows)
        ]

    def _count_sync(self, thread_id: str) -> int:
        cur = self._cursor()
        try:
            row = cur.execute(
                "SELECT COUNT(*) FROM messages WHERE thread_id = ?", [thread_id]
            ).fetchone()
        finally:
            cur.close()
        return row[0]

    async def get_messages(
        self,
        thread_id: str,
        before_seq: Optional[int] = None,
        limit: int = 50,
    ) -> List[Message]:
        return await self._run(self._messages_sync, thread_id, before_seq, limit)

    async def count_messages(self, thread_id: str) -> int:
        return await self._run(self._count_sync, thread_id)

    def close(self) -> None:
        """Close the database connection."""
        with self._connection_lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
