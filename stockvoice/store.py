"""SQLite-backed inventory store with vector search (sqlite-vec) and full-text search (FTS5).

Besides the catalog it keeps the pipeline's own persistence: undo records,
recent commands per session and per-user confirmation statistics.
"""

from __future__ import annotations

import json
import math
import sqlite3
import struct
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator

import sqlite_vec
from sentence_transformers import SentenceTransformer

from .models import CatalogItem, ConfirmationHistory, RecentCommand, UndoRecord
from .text import normalize


def _serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


class InventoryStore:
    """Persistent catalog + pipeline state backed by SQLite + sqlite-vec + FTS5."""

    EMBEDDING_MODEL = "all-MiniLM-L6-v2"
    EMBEDDING_DIM = 384
    RECENT_MISTAKES_KEPT = 10

    def __init__(
        self,
        db_path: str = "inventory.db",
        embedder: Any = None,
        embedding_model: str | None = None,
    ):
        self.db_path = db_path
        # Timer callbacks from transcription buffers run on other threads
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0

        # Load sqlite-vec extension
        self.db.enable_load_extension(True)
        sqlite_vec.load(self.db)
        self.db.enable_load_extension(False)

        self._init_tables()

        self.embedding_model = embedding_model or self.EMBEDDING_MODEL
        self._embedder = embedder  # lazy load when not injected

    @property
    def embedder(self) -> Any:
        if self._embedder is None:
            self._embedder = SentenceTransformer(self.embedding_model)
        return self._embedder

    def _init_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS items (
                id           TEXT PRIMARY KEY,
                name         TEXT NOT NULL,
                quantity     REAL NOT NULL DEFAULT 0 CHECK (quantity >= 0),
                unit         TEXT NOT NULL,
                category     TEXT NOT NULL DEFAULT 'general',
                threshold    REAL,
                description  TEXT DEFAULT '',
                last_updated REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS undo_records (
                id             TEXT PRIMARY KEY,
                user_id        TEXT NOT NULL,
                action_type    TEXT NOT NULL,
                item_id        TEXT NOT NULL,
                item_name      TEXT NOT NULL,
                description    TEXT NOT NULL,
                previous_state TEXT NOT NULL,
                current_state  TEXT NOT NULL,
                method         TEXT NOT NULL,
                created_at     REAL NOT NULL,
                expires_at     REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS undo_records_key_idx
                ON undo_records (user_id, item_id, action_type);

            CREATE TABLE IF NOT EXISTS recent_commands (
                rowid_     INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                action     TEXT NOT NULL,
                item       TEXT NOT NULL,
                quantity   REAL,
                unit       TEXT NOT NULL DEFAULT '',
                timestamp  REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS recent_commands_session_idx
                ON recent_commands (session_id);

            CREATE TABLE IF NOT EXISTS confirmation_stats (
                user_id         TEXT PRIMARY KEY,
                correct         INTEGER NOT NULL DEFAULT 0,
                total           INTEGER NOT NULL DEFAULT 0,
                recent_mistakes TEXT NOT NULL DEFAULT '[]'
            );

            CREATE VIRTUAL TABLE IF NOT EXISTS items_fts USING fts5(
                item_id UNINDEXED, name, category, description
            );
        """)

        # sqlite-vec virtual table
        try:
            self.db.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS items_vec USING vec0(
                    id TEXT PRIMARY KEY,
                    embedding float[{self.EMBEDDING_DIM}]
                );
            """)
        except sqlite3.OperationalError:
            pass  # already exists

        self.db.commit()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["InventoryStore"]:
        """Group writes; the outermost block commits, any error rolls back."""
        with self._lock:
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.db.rollback()
                raise
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.db.commit()

    def close(self):
        with self._lock:
            self.db.close()

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def embed(self, text: str) -> list[float]:
        """Generate a unit-length embedding for text."""
        vector = [float(x) for x in self.embedder.encode(normalize(text))]
        if len(vector) != self.EMBEDDING_DIM:
            raise ValueError(
                f"Embedding has {len(vector)} dimensions, expected {self.EMBEDDING_DIM}"
            )
        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0.0:
            return vector
        return [x / norm for x in vector]

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def create(self, item: CatalogItem) -> CatalogItem:
        """Insert a catalog item into all three indexes. Returns the stored item."""
        if item.quantity < 0:
            raise ValueError("quantity must be non-negative")
        embedding = self.embed(item.name)
        now = time.time()
        with self.transaction():
            self.db.execute("""
                INSERT INTO items (id, name, quantity, unit, category, threshold,
                                   description, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (item.id, item.name, item.quantity, item.unit, item.category,
                  item.threshold, item.description, now))
            self.db.execute(
                "INSERT INTO items_fts(item_id, name, category, description) VALUES (?, ?, ?, ?)",
                (item.id, item.name, item.category, item.description or ""),
            )
            self.db.execute(
                "INSERT INTO items_vec(id, embedding) VALUES (?, ?)",
                (item.id, _serialize_f32(embedding)),
            )
        return self.find_by_id(item.id)

    def delete(self, item_id: str) -> bool:
        with self.transaction():
            cur = self.db.execute("DELETE FROM items WHERE id = ?", (item_id,))
            self.db.execute("DELETE FROM items_fts WHERE item_id = ?", (item_id,))
            self.db.execute("DELETE FROM items_vec WHERE id = ?", (item_id,))
        return cur.rowcount > 0

    def find_by_id(self, item_id: str) -> CatalogItem | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def find_by_name(self, name: str) -> CatalogItem | None:
        """Exact (case-insensitive) name lookup."""
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM items WHERE lower(name) = lower(?)", (name.strip(),)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def list_items(self, limit: int = 100, offset: int = 0) -> list[CatalogItem]:
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM items ORDER BY last_updated DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [self._row_to_item(r) for r in rows]

    def item_count(self) -> int:
        with self._lock:
            return self.db.execute("SELECT COUNT(*) FROM items").fetchone()[0]

    def find_similar(self, vector: list[float], k: int = 5) -> list[tuple[CatalogItem, float]]:
        """Nearest catalog items to *vector*. Returns (item, cosine similarity), best first."""
        with self._lock:
            rows = self.db.execute(
                "SELECT id, distance FROM items_vec WHERE embedding MATCH ? AND k = ? ORDER BY distance",
                (_serialize_f32(vector), k),
            ).fetchall()
        results = []
        for item_id, distance in rows:
            item = self.find_by_id(item_id)
            if item is None:
                continue
            # L2 distance between unit vectors -> cosine similarity
            similarity = max(0.0, min(1.0, 1.0 - (distance * distance) / 2.0))
            results.append((item, similarity))
        return results

    def search_text(self, query: str, k: int = 5) -> list[CatalogItem]:
        """Full-text search over name/category/description, best rank first."""
        words = [w for w in normalize(query).split() if len(w) > 1]
        if not words:
            return []
        fts_query = " OR ".join(f'"{w}"' for w in words[:10])
        try:
            with self._lock:
                rows = self.db.execute(
                    "SELECT item_id FROM items_fts WHERE items_fts MATCH ? ORDER BY rank LIMIT ?",
                    (fts_query, k),
                ).fetchall()
        except sqlite3.OperationalError:
            return []
        items = [self.find_by_id(r[0]) for r in rows]
        return [item for item in items if item is not None]

    def update_quantity(
        self,
        item_id: str,
        new_quantity: float,
        expected_quantity: float | None = None,
    ) -> bool:
        """
        Write a new quantity. When *expected_quantity* is given the write only
        happens if the stored quantity still equals it (compare-and-set).
        """
        if new_quantity < 0:
            raise ValueError("quantity must be non-negative")
        now = time.time()
        with self.transaction():
            if expected_quantity is None:
                cur = self.db.execute(
                    "UPDATE items SET quantity = ?, last_updated = ? WHERE id = ?",
                    (new_quantity, now, item_id),
                )
            else:
                cur = self.db.execute(
                    "UPDATE items SET quantity = ?, last_updated = ? "
                    "WHERE id = ? AND abs(quantity - ?) < 1e-9",
                    (new_quantity, now, item_id, expected_quantity),
                )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Undo records
    # ------------------------------------------------------------------

    def insert_undo_record(self, record: UndoRecord):
        with self.transaction():
            self.db.execute("""
                INSERT INTO undo_records (id, user_id, action_type, item_id, item_name,
                                          description, previous_state, current_state,
                                          method, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (record.id, record.user_id, record.action_type, record.item_id,
                  record.item_name, record.description,
                  json.dumps(record.previous_state), json.dumps(record.current_state),
                  record.method, record.created_at, record.expires_at))

    def delete_undo_records_for(self, user_id: str, item_id: str, action_type: str) -> int:
        """Drop every record for (user, item, action type). Returns how many went."""
        with self.transaction():
            cur = self.db.execute(
                "DELETE FROM undo_records WHERE user_id = ? AND item_id = ? AND action_type = ?",
                (user_id, item_id, action_type),
            )
        return cur.rowcount

    def delete_undo_record(self, record_id: str) -> bool:
        with self.transaction():
            cur = self.db.execute("DELETE FROM undo_records WHERE id = ?", (record_id,))
        return cur.rowcount > 0

    def get_undo_record(self, record_id: str, user_id: str, now: float | None = None) -> UndoRecord | None:
        """Live (unexpired) record owned by *user_id*, else None."""
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM undo_records WHERE id = ? AND user_id = ? AND expires_at > ?",
                (record_id, user_id, now if now is not None else time.time()),
            ).fetchone()
        return self._row_to_undo(row) if row else None

    def list_undo_records(self, user_id: str, limit: int = 20, now: float | None = None) -> list[UndoRecord]:
        """Live records for a user, newest first."""
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM undo_records WHERE user_id = ? AND expires_at > ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, now if now is not None else time.time(), limit),
            ).fetchall()
        return [self._row_to_undo(r) for r in rows]

    def delete_expired_undo_records(self, now: float | None = None) -> int:
        with self.transaction():
            cur = self.db.execute(
                "DELETE FROM undo_records WHERE expires_at <= ?",
                (now if now is not None else time.time(),),
            )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Recent commands (per session)
    # ------------------------------------------------------------------

    def add_recent_command(self, session_id: str, command: RecentCommand, keep: int = 5):
        with self.transaction():
            self.db.execute(
                "INSERT INTO recent_commands (session_id, action, item, quantity, unit, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (session_id, command.action, command.item, command.quantity,
                 command.unit, command.timestamp),
            )
            self.db.execute("""
                DELETE FROM recent_commands
                WHERE session_id = ? AND rowid_ NOT IN (
                    SELECT rowid_ FROM recent_commands WHERE session_id = ?
                    ORDER BY rowid_ DESC LIMIT ?
                )
            """, (session_id, session_id, keep))

    def get_recent_commands(self, session_id: str, limit: int = 5) -> list[RecentCommand]:
        """Recent commands for a session, newest first."""
        with self._lock:
            rows = self.db.execute(
                "SELECT action, item, quantity, unit, timestamp FROM recent_commands "
                "WHERE session_id = ? ORDER BY rowid_ DESC LIMIT ?",
                (session_id, limit),
            ).fetchall()
        return [
            RecentCommand(
                action=r["action"], item=r["item"], quantity=r["quantity"],
                unit=r["unit"], timestamp=r["timestamp"],
            )
            for r in rows
        ]

    def clear_recent_commands(self, session_id: str) -> int:
        with self.transaction():
            cur = self.db.execute("DELETE FROM recent_commands WHERE session_id = ?", (session_id,))
        return cur.rowcount

    # ------------------------------------------------------------------
    # Confirmation statistics
    # ------------------------------------------------------------------

    def get_confirmation_stats(self, user_id: str) -> ConfirmationHistory:
        with self._lock:
            row = self.db.execute(
                "SELECT correct, total, recent_mistakes FROM confirmation_stats WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return ConfirmationHistory()
        return ConfirmationHistory(
            correct=row["correct"],
            total=row["total"],
            recent_mistakes=json.loads(row["recent_mistakes"]),
        )

    def save_confirmation_stats(self, user_id: str, stats: ConfirmationHistory):
        mistakes = stats.recent_mistakes[-self.RECENT_MISTAKES_KEPT:]
        with self.transaction():
            self.db.execute(
                "INSERT OR REPLACE INTO confirmation_stats (user_id, correct, total, recent_mistakes) "
                "VALUES (?, ?, ?, ?)",
                (user_id, stats.correct, stats.total, json.dumps(mistakes)),
            )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> CatalogItem:
        return CatalogItem(
            id=row["id"],
            name=row["name"],
            quantity=row["quantity"],
            unit=row["unit"],
            category=row["category"],
            threshold=row["threshold"],
            description=row["description"] or "",
            last_updated=row["last_updated"],
        )

    @staticmethod
    def _row_to_undo(row: sqlite3.Row) -> UndoRecord:
        return UndoRecord(
            id=row["id"],
            user_id=row["user_id"],
            action_type=row["action_type"],
            item_id=row["item_id"],
            item_name=row["item_name"],
            description=row["description"],
            previous_state=json.loads(row["previous_state"]),
            current_state=json.loads(row["current_state"]),
            method=row["method"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )
