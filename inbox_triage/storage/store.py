"""
Per-user document store for triaged messages.

Layout: one collection per user, one document per message, keyed by the
mail source's external id. Every document read back is re-validated as a
StoredMessage; anything that does not fit the schema surfaces as a
StoreError instead of leaking into the pipeline.

Two backends share the DocumentStore contract:
- InMemoryDocumentStore: process-local, used for development and tests.
- SqliteDocumentStore: JSON documents in a single SQLite table.

Usage:
    store = SqliteDocumentStore(Path("data/inbox_triage.db"))
    await store.set("user@example.com", message)
    msg = await store.get("user@example.com", "18c2a...")
"""

import asyncio
import copy
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from pydantic import ValidationError

from inbox_triage.agent.schemas import StoredMessage
from inbox_triage.config import settings

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the document store cannot complete a read or write."""
    pass


class DocumentStore(Protocol):
    async def get(self, user_id: str, external_id: str) -> Optional[StoredMessage]: ...

    async def set(self, user_id: str, message: StoredMessage) -> None: ...

    async def update(self, user_id: str, external_id: str, fields: dict[str, Any]) -> None: ...

    async def query(self, user_id: str, field: str, value: bool, limit: Optional[int] = None) -> list[StoredMessage]: ...

    async def list_recent(self, user_id: str, limit: int = 50) -> list[StoredMessage]: ...

    async def delete_where(self, user_id: str, field: str, value: bool, batch_size: Optional[int] = None) -> int: ...

    async def close(self) -> None: ...


def _to_message(document: dict[str, Any]) -> StoredMessage:
    try:
        return StoredMessage.model_validate(document)
    except ValidationError as e:
        raise StoreError(f"Stored document failed validation: {e.error_count()} error(s)") from e


def _merge(document: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    """Apply a field-level update and return the validated document."""
    merged = {**document, **fields}
    return _to_message(merged).to_document()


def _batch_size(batch_size: Optional[int]) -> int:
    size = batch_size or settings.store_delete_batch_size
    if size < 1:
        raise ValueError("batch_size must be positive")
    return size


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class InMemoryDocumentStore:
    """
    Dict-backed store. Documents are kept as JSON-shaped dicts so reads go
    through the same validation path as the SQLite backend.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def _collection(self, user_id: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(user_id, {})

    async def get(self, user_id: str, external_id: str) -> Optional[StoredMessage]:
        document = self._collection(user_id).get(external_id)
        return _to_message(copy.deepcopy(document)) if document is not None else None

    async def set(self, user_id: str, message: StoredMessage) -> None:
        self._collection(user_id)[message.external_id] = message.to_document()

    async def update(self, user_id: str, external_id: str, fields: dict[str, Any]) -> None:
        collection = self._collection(user_id)
        if external_id not in collection:
            raise StoreError(f"Cannot update missing document {external_id}")
        collection[external_id] = _merge(collection[external_id], fields)

    async def query(self, user_id: str, field: str, value: bool, limit: Optional[int] = None) -> list[StoredMessage]:
        matches = [
            _to_message(copy.deepcopy(doc))
            for doc in self._collection(user_id).values()
            if doc.get(field) is value
        ]
        matches.sort(key=lambda m: m.created_at, reverse=True)
        return matches[:limit] if limit is not None else matches

    async def list_recent(self, user_id: str, limit: int = 50) -> list[StoredMessage]:
        messages = [_to_message(copy.deepcopy(doc)) for doc in self._collection(user_id).values()]
        messages.sort(key=lambda m: m.created_at, reverse=True)
        return messages[:limit]

    async def delete_where(self, user_id: str, field: str, value: bool, batch_size: Optional[int] = None) -> int:
        size = _batch_size(batch_size)
        collection = self._collection(user_id)
        deleted = 0
        while True:
            batch = [key for key, doc in collection.items() if doc.get(field) is value][:size]
            if not batch:
                return deleted
            for key in batch:
                del collection[key]
            deleted += len(batch)

    async def close(self) -> None:
        return None


# =============================================================================
# SQLITE BACKEND
# =============================================================================

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA busy_timeout=5000;",
)


class SqliteDocumentStore:
    """
    JSON documents in SQLite, primary key (user_id, external_id).

    Blocking sqlite3 calls run in a worker thread so the event loop is never
    held by disk I/O.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            for pragma in _SQLITE_PRAGMAS:
                conn.execute(pragma)
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    user_id TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    document TEXT NOT NULL,
                    PRIMARY KEY (user_id, external_id)
                );
                CREATE INDEX IF NOT EXISTS idx_messages_user_created
                    ON messages (user_id, created_at DESC);
                """
            )

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.error(
                "store.sqlite.error",
                extra={"action": "store.sqlite.error", "operation": fn.__name__, "error": str(e)},
            )
            raise StoreError(f"SQLite {fn.__name__} failed: {e}") from e

    # --- blocking implementations ---

    def _get(self, user_id: str, external_id: str) -> Optional[dict[str, Any]]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT document FROM messages WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            ).fetchone()
        return json.loads(row["document"]) if row else None

    def _set(self, user_id: str, document: dict[str, Any]) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO messages (user_id, external_id, created_at, document)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, external_id) DO UPDATE SET
                    created_at=excluded.created_at,
                    document=excluded.document
                """,
                (user_id, document["external_id"], document["created_at"], json.dumps(document)),
            )

    def _update(self, user_id: str, external_id: str, fields: dict[str, Any]) -> bool:
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT document FROM messages WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            ).fetchone()
            if row is None:
                return False
            merged = _merge(json.loads(row["document"]), fields)
            conn.execute(
                "UPDATE messages SET document = ? WHERE user_id = ? AND external_id = ?",
                (json.dumps(merged), user_id, external_id),
            )
        return True

    def _query(self, user_id: str, field: str, value: bool, limit: Optional[int]) -> list[dict[str, Any]]:
        sql = (
            "SELECT document FROM messages WHERE user_id = ? "
            "AND json_extract(document, ?) = ? ORDER BY created_at DESC"
        )
        params: list[Any] = [user_id, f"$.{field}", 1 if value else 0]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [json.loads(r["document"]) for r in rows]

    def _list_recent(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT document FROM messages WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [json.loads(r["document"]) for r in rows]

    def _delete_batch(self, user_id: str, field: str, value: bool, size: int) -> int:
        with self.connect() as conn:
            keys = [
                r["external_id"]
                for r in conn.execute(
                    "SELECT external_id FROM messages WHERE user_id = ? AND json_extract(document, ?) = ? LIMIT ?",
                    (user_id, f"$.{field}", 1 if value else 0, size),
                ).fetchall()
            ]
            conn.executemany(
                "DELETE FROM messages WHERE user_id = ? AND external_id = ?",
                [(user_id, key) for key in keys],
            )
        return len(keys)

    # --- async contract ---

    async def get(self, user_id: str, external_id: str) -> Optional[StoredMessage]:
        document = await self._run(self._get, user_id, external_id)
        return _to_message(document) if document is not None else None

    async def set(self, user_id: str, message: StoredMessage) -> None:
        await self._run(self._set, user_id, message.to_document())

    async def update(self, user_id: str, external_id: str, fields: dict[str, Any]) -> None:
        if not await self._run(self._update, user_id, external_id, fields):
            raise StoreError(f"Cannot update missing document {external_id}")

    async def query(self, user_id: str, field: str, value: bool, limit: Optional[int] = None) -> list[StoredMessage]:
        return [_to_message(d) for d in await self._run(self._query, user_id, field, value, limit)]

    async def list_recent(self, user_id: str, limit: int = 50) -> list[StoredMessage]:
        return [_to_message(d) for d in await self._run(self._list_recent, user_id, limit)]

    async def delete_where(self, user_id: str, field: str, value: bool, batch_size: Optional[int] = None) -> int:
        size = _batch_size(batch_size)
        deleted = 0
        while True:
            count = await self._run(self._delete_batch, user_id, field, value, size)
            deleted += count
            if count < size:
                return deleted

    async def close(self) -> None:
        return None


def build_document_store() -> DocumentStore:
    """Construct the backend selected by `settings.store_backend`."""
    if settings.store_backend == "memory":
        return InMemoryDocumentStore()
    return SqliteDocumentStore(Path(settings.store_path))
