"""
RelationalStore: SQLite + WAL mode backing store for conversations, interactions,
feedback, memories, profiles and knowledge sources.

Every public method is a coroutine; the blocking sqlite work runs in a worker
thread with its own connection.
"""

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable

from study_buddy.shared.config import settings
from study_buddy.shared.exceptions import StorageError
from study_buddy.shared.logging import get_logger

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    chat_type TEXT NOT NULL DEFAULT 'general',
    is_archived INTEGER NOT NULL DEFAULT 0,
    is_pinned INTEGER NOT NULL DEFAULT 0,
    message_count INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    model_used TEXT,
    provider_used TEXT,
    tokens_used TEXT,
    latency_ms REAL,
    context_included INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE TABLE IF NOT EXISTS interactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    session_id TEXT,
    conversation_id TEXT,
    query TEXT NOT NULL,
    response TEXT NOT NULL,
    subject TEXT,
    performance TEXT,
    timestamp TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS feedback (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    session_id TEXT,
    interaction_id TEXT NOT NULL,
    source TEXT NOT NULL,
    explicit TEXT,
    implicit TEXT,
    quality_score REAL NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    FOREIGN KEY (interaction_id) REFERENCES interactions(id)
);

CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    conversation_id TEXT,
    memory_type TEXT NOT NULL,
    content TEXT NOT NULL,
    quality_score REAL NOT NULL,
    relevance_score REAL NOT NULL,
    retention TEXT NOT NULL,
    tags TEXT,
    linked_memory_ids TEXT,
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed TEXT,
    embedding TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS personalization_profiles (
    id TEXT PRIMARY KEY,
    profile TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS knowledge_sources (
    id TEXT PRIMARY KEY,
    title TEXT,
    subjects TEXT,
    reliability_score REAL NOT NULL,
    educational_value REAL NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS consents (
    id TEXT PRIMARY KEY,
    consent_granted INTEGER NOT NULL DEFAULT 0,
    consent_timestamp TEXT,
    consent_text TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_interactions_user ON interactions(user_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_feedback_user ON feedback(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_feedback_interaction ON feedback(interaction_id, source);
CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id, created_at);
"""

# Columns holding JSON documents; encoded on write and decoded on read
JSON_COLUMNS: Dict[str, set] = {
    "messages": {"tokens_used"},
    "interactions": {"performance"},
    "feedback": {"explicit", "implicit"},
    "memories": {"tags", "linked_memory_ids", "embedding"},
    "personalization_profiles": {"profile"},
    "knowledge_sources": {"subjects"},
}


class RelationalStore:
    """Key/relation store offering insert, select-by-id, update and delete."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or settings.storage.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._columns: Dict[str, set] = {}
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            tables = [
                row["name"] for row in
                conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
            ]
            for table in tables:
                info = conn.execute(f"PRAGMA table_info({table})").fetchall()
                self._columns[table] = {row["name"] for row in info}

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _check(self, table: str, columns: Iterable[str]):
        """Reject unknown tables and columns before they reach SQL text."""
        known = self._columns.get(table)
        if known is None:
            raise StorageError(f"Unknown table: {table}")
        unknown = set(columns) - known
        if unknown:
            raise StorageError(f"Unknown columns for {table}: {sorted(unknown)}")

    def _encode(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        json_cols = JSON_COLUMNS.get(table, set())
        encoded = {}
        for key, value in row.items():
            if key in json_cols and value is not None:
                encoded[key] = json.dumps(value)
            elif isinstance(value, bool):
                encoded[key] = int(value)
            else:
                encoded[key] = value
        return encoded

    def _decode(self, table: str, row: sqlite3.Row) -> Dict[str, Any]:
        json_cols = JSON_COLUMNS.get(table, set())
        decoded = dict(row)
        for key in json_cols:
            if decoded.get(key) is not None:
                decoded[key] = json.loads(decoded[key])
        return decoded

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageError:
            raise
        except sqlite3.Error as e:
            logger.error(f"Store operation {fn.__name__} failed: {str(e)}")
            raise StorageError(f"Datastore operation failed: {str(e)}", retry_after=5) from e

    # --- writes -----------------------------------------------------------

    async def insert(self, table: str, row: Dict[str, Any]) -> str:
        """Insert a row and return its id."""
        return await self._run(self._insert, table, row)

    def _insert(self, table: str, row: Dict[str, Any]) -> str:
        self._check(table, row)
        encoded = self._encode(table, row)
        cols = ", ".join(encoded)
        placeholders = ", ".join("?" for _ in encoded)
        with self._get_connection() as conn:
            conn.execute(
                f"INSERT INTO {table} ({cols}) VALUES ({placeholders})",
                tuple(encoded.values())
            )
        return row["id"]

    async def upsert(self, table: str, row: Dict[str, Any]) -> str:
        """Insert a row, replacing the non-key columns if the id already exists."""
        return await self._run(self._upsert, table, row)

    def _upsert(self, table: str, row: Dict[str, Any]) -> str:
        self._check(table, row)
        encoded = self._encode(table, row)
        cols = ", ".join(encoded)
        placeholders = ", ".join("?" for _ in encoded)
        updates = ", ".join(f"{c} = excluded.{c}" for c in encoded if c != "id")
        with self._get_connection() as conn:
            conn.execute(
                f"INSERT INTO {table} ({cols}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                tuple(encoded.values())
            )
        return row["id"]

    async def update(self, table: str, row_id: str, fields: Dict[str, Any]) -> bool:
        """Update columns of one row. Returns False when the id does not exist."""
        return await self._run(self._update, table, row_id, fields)

    def _update(self, table: str, row_id: str, fields: Dict[str, Any]) -> bool:
        if not fields:
            return False
        self._check(table, fields)
        encoded = self._encode(table, fields)
        assignments = ", ".join(f"{c} = ?" for c in encoded)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*encoded.values(), row_id)
            )
            return cursor.rowcount > 0

    async def increment(self, table: str, row_id: str, column: str, amount: int = 1) -> bool:
        """Atomically add to an integer column."""
        return await self._run(self._increment, table, row_id, column, amount)

    def _increment(self, table: str, row_id: str, column: str, amount: int) -> bool:
        self._check(table, [column])
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {column} = {column} + ? WHERE id = ?",
                (amount, row_id)
            )
            return cursor.rowcount > 0

    async def delete(self, table: str, row_id: str) -> bool:
        return await self._run(self._delete_where, table, {"id": row_id}) > 0

    async def delete_where(self, table: str, where: Dict[str, Any]) -> int:
        """Delete rows matching every equality in `where`. Returns the count."""
        return await self._run(self._delete_where, table, where)

    def _delete_where(self, table: str, where: Dict[str, Any]) -> int:
        if not where:
            raise StorageError("Refusing to delete without a filter")
        self._check(table, where)
        clause = " AND ".join(f"{c} = ?" for c in where)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE {clause}",
                tuple(self._encode(table, where).values())
            )
            return cursor.rowcount

    async def delete_older_than(self, table: str, column: str, cutoff: str) -> int:
        """Delete rows whose ISO timestamp column sorts before `cutoff`."""
        return await self._run(self._delete_older_than, table, column, cutoff)

    def _delete_older_than(self, table: str, column: str, cutoff: str) -> int:
        self._check(table, [column])
        with self._get_connection() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE {column} < ?", (cutoff,))
            return cursor.rowcount

    # --- reads ------------------------------------------------------------

    async def select_by_id(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.select_where(table, {"id": row_id}, limit=1)
        return rows[0] if rows else None

    async def select_where(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        since: Optional[tuple[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Select rows by column equality.

        Args:
            table: Table name
            where: Column -> value equality filters
            order_by: Optional column to sort on
            descending: Sort direction
            limit: Optional row limit
            since: Optional (column, iso_timestamp) lower bound, inclusive
        """
        return await self._run(self._select_where, table, where or {}, order_by, descending, limit, since)

    def _select_where(self, table, where, order_by, descending, limit, since) -> List[Dict[str, Any]]:
        columns = list(where)
        if order_by:
            columns.append(order_by)
        if since:
            columns.append(since[0])
        self._check(table, columns)

        sql = f"SELECT * FROM {table}"
        params: List[Any] = list(self._encode(table, where).values())
        clauses = [f"{c} = ?" for c in where]
        if since:
            clauses.append(f"{since[0]} >= ?")
            params.append(since[1])
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if order_by:
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [self._decode(table, row) for row in rows]

    async def count(self, table: str, where: Optional[Dict[str, Any]] = None) -> int:
        return await self._run(self._count, table, where or {})

    def _count(self, table: str, where: Dict[str, Any]) -> int:
        self._check(table, where)
        sql = f"SELECT COUNT(*) FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(f"{c} = ?" for c in where)
        with self._get_connection() as conn:
            return conn.execute(sql, tuple(self._encode(table, where).values())).fetchone()[0]

    async def ping(self) -> bool:
        """Health probe: a trivial query round trip."""
        try:
            await self._run(self._ping)
            return True
        except StorageError:
            return False

    def _ping(self):
        with self._get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
