"""
Local Cache for the CRM sync layer.

Key-indexed SQLite store of entity snapshots, one row per (kind, id). Lets the
client keep working on its last known data when the CRM API is unreachable.
The pending-operation queue lives in the same database file.
"""
import json
import logging
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

from config.settings import settings
from config.sync_config import SyncConfig
from crmsync.services.entities import EntitySnapshot, replace_reference

logger = logging.getLogger(__name__)


def get_sync_db_path() -> str:
    """Get the path to the sync database (cache + pending queue)."""
    db_path = Path(settings.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return str(db_path)


class LocalCache:
    """
    SQLite-backed snapshot storage.

    put() overwrites unconditionally; callers only put data they consider
    authoritative or optimistically correct. Nothing expires; rows go away
    only through delete().
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the local cache.

        Args:
            db_path: Path to SQLite database (default from settings)
        """
        self.db_path = db_path or get_sync_db_path()
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT,
                    PRIMARY KEY (kind, id)
                )
            """)

            # Index for listing a kind newest first
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_snapshots_kind_updated
                ON snapshots(kind, updated_at DESC)
            """)

            conn.commit()
            logger.info(f"Initialized local cache at {self.db_path}")
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        return sqlite3.connect(self.db_path)

    @staticmethod
    def _row_values(kind: str, snapshot: EntitySnapshot) -> tuple:
        return (kind, snapshot.id, json.dumps(snapshot.to_dict()), snapshot.updated_at)

    def get(self, kind: str, entity_id: str) -> Optional[EntitySnapshot]:
        """Get a snapshot by kind and ID."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "SELECT kind, id, data, updated_at FROM snapshots WHERE kind = ? AND id = ?",
                (kind, entity_id)
            )
            row = cursor.fetchone()
            if row:
                return EntitySnapshot.from_row(row)
            return None
        finally:
            conn.close()

    def put(self, kind: str, snapshot: EntitySnapshot) -> EntitySnapshot:
        """
        Store a snapshot, replacing any existing row with the same ID.

        Args:
            kind: Entity kind
            snapshot: Snapshot to store

        Returns:
            The stored snapshot
        """
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO snapshots (kind, id, data, updated_at) VALUES (?, ?, ?, ?)",
                self._row_values(kind, snapshot)
            )
            conn.commit()
            return snapshot
        finally:
            conn.close()

    def put_all(self, kind: str, snapshots: Iterable[EntitySnapshot]) -> int:
        """
        Store many snapshots in one transaction.

        Returns:
            Number of snapshots written
        """
        rows = [self._row_values(kind, s) for s in snapshots]
        conn = self._get_connection()
        try:
            conn.executemany(
                "INSERT OR REPLACE INTO snapshots (kind, id, data, updated_at) VALUES (?, ?, ?, ?)",
                rows
            )
            conn.commit()
            return len(rows)
        finally:
            conn.close()

    def delete(self, kind: str, entity_id: str) -> bool:
        """
        Delete a snapshot.

        Returns:
            True if deleted, False if not found
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "DELETE FROM snapshots WHERE kind = ? AND id = ?",
                (kind, entity_id)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def all(self, kind: str) -> list[EntitySnapshot]:
        """Get all snapshots of a kind, most recently updated first."""
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                SELECT kind, id, data, updated_at FROM snapshots
                WHERE kind = ?
                ORDER BY updated_at DESC, rowid DESC
            """, (kind,))
            return [EntitySnapshot.from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def replace_identifier(
        self,
        kind: str,
        tentative_id: str,
        snapshot: EntitySnapshot,
    ) -> EntitySnapshot:
        """
        Swap a tentative row for the server-confirmed snapshot.

        Both writes happen in one transaction so the entity never exists
        under two identifiers.

        Args:
            kind: Entity kind
            tentative_id: Client-generated ID being retired
            snapshot: Authoritative snapshot from the server

        Returns:
            The stored snapshot
        """
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM snapshots WHERE kind = ? AND id = ?",
                    (kind, tentative_id)
                )
                conn.execute(
                    "INSERT OR REPLACE INTO snapshots (kind, id, data, updated_at) VALUES (?, ?, ?, ?)",
                    self._row_values(kind, snapshot)
                )
            return snapshot
        finally:
            conn.close()

    def rewrite_references(self, old_id: str, new_id: str) -> list[EntitySnapshot]:
        """
        Replace old_id inside other snapshots' fields (contactId, contactIds, ...).

        Returns:
            The snapshots that were rewritten
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "SELECT kind, id, data, updated_at FROM snapshots WHERE data LIKE ? AND id != ?",
                (f"%{old_id}%", old_id)
            )
            rewritten = []
            for row in cursor.fetchall():
                snapshot = EntitySnapshot.from_row(row)
                fields = replace_reference(snapshot.fields, old_id, new_id)
                if fields != snapshot.fields:
                    snapshot.fields = fields
                    conn.execute(
                        "UPDATE snapshots SET data = ? WHERE kind = ? AND id = ?",
                        (json.dumps(snapshot.to_dict()), snapshot.kind, snapshot.id)
                    )
                    rewritten.append(snapshot)
            conn.commit()
            return rewritten
        finally:
            conn.close()

    def clear(self, kind: str) -> int:
        """Delete every snapshot of a kind."""
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM snapshots WHERE kind = ?", (kind,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count(self, kind: Optional[str] = None) -> int:
        """Get number of cached snapshots (optionally for one kind)."""
        conn = self._get_connection()
        try:
            if kind:
                cursor = conn.execute("SELECT COUNT(*) FROM snapshots WHERE kind = ?", (kind,))
            else:
                cursor = conn.execute("SELECT COUNT(*) FROM snapshots")
            return cursor.fetchone()[0]
        finally:
            conn.close()

    def get_statistics(self) -> dict:
        """Get aggregate statistics about cached snapshots."""
        conn = self._get_connection()
        try:
            total = conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0]

            by_kind = {}
            cursor = conn.execute("""
                SELECT kind, COUNT(*) as count
                FROM snapshots
                GROUP BY kind
            """)
            for row in cursor.fetchall():
                by_kind[row[0]] = row[1]

            tentative = conn.execute(
                "SELECT COUNT(*) FROM snapshots WHERE id LIKE ?",
                (f"{SyncConfig.TENTATIVE_ID_PREFIX}%",)
            ).fetchone()[0]

            return {
                "total_snapshots": total,
                "by_kind": by_kind,
                "tentative_count": tentative,
            }
        finally:
            conn.close()


# Singleton instance
_local_cache: Optional[LocalCache] = None


def get_local_cache(db_path: Optional[str] = None) -> LocalCache:
    """
    Get or create the singleton LocalCache.

    Args:
        db_path: Path to SQLite database

    Returns:
        LocalCache instance
    """
    global _local_cache
    if _local_cache is None:
        _local_cache = LocalCache(db_path)
    return _local_cache
