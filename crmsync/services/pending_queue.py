"""
Pending-Operation Queue for the CRM sync layer.

Ordered log of mutations the CRM API has not confirmed yet. An operation is
appended when a remote call fails with a network error after the optimistic
local write, and removed once a later replay succeeds. The queue is append /
remove only: a newer edit of the same entity is a new entry, so every update
payload carries the entity's full intended field set.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional

from crmsync.services.entities import replace_reference
from crmsync.services.local_cache import get_sync_db_path

logger = logging.getLogger(__name__)


def _make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware (UTC if naive)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# Operation kinds
OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"

OP_KINDS = (OP_CREATE, OP_UPDATE, OP_DELETE)


@dataclass
class PendingOperation:
    """
    An unconfirmed mutation waiting for replay.

    seq is assigned by the queue on enqueue and defines replay order.
    """

    op_kind: str
    entity_kind: str
    entity_id: str

    # Full intended end state for create/update, empty for delete
    payload: dict = field(default_factory=dict)

    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    seq: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        data = asdict(self)
        data["enqueued_at"] = self.enqueued_at.isoformat()
        return data

    @classmethod
    def from_row(cls, row: tuple) -> "PendingOperation":
        """Create PendingOperation from SQLite row."""
        # Row order: seq, op_kind, entity_kind, entity_id, payload, enqueued_at
        enqueued_at = datetime.fromisoformat(row[5]) if row[5] else datetime.now(timezone.utc)
        return cls(
            seq=row[0],
            op_kind=row[1],
            entity_kind=row[2],
            entity_id=row[3],
            payload=json.loads(row[4]) if row[4] else {},
            enqueued_at=_make_aware(enqueued_at),
        )

    @property
    def describe(self) -> str:
        """Short human-readable label for logs."""
        return f"#{self.seq} {self.op_kind} {self.entity_kind}/{self.entity_id}"


class PendingOperationQueue:
    """
    SQLite-backed pending operation log.

    Shares the database file with the LocalCache.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the pending operation queue.

        Args:
            db_path: Path to SQLite database (default from settings)
        """
        self.db_path = db_path or get_sync_db_path()
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            # AUTOINCREMENT so a removed seq is never handed out again
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_operations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    op_kind TEXT NOT NULL,
                    entity_kind TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    payload TEXT,
                    enqueued_at TIMESTAMP NOT NULL
                )
            """)

            # Index for per-entity lookups
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pending_operations_entity
                ON pending_operations(entity_kind, entity_id)
            """)

            conn.commit()
            logger.info(f"Initialized pending operation queue at {self.db_path}")
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        return sqlite3.connect(self.db_path)

    def enqueue(self, op: PendingOperation) -> PendingOperation:
        """
        Append an operation to the end of the queue.

        Args:
            op: Operation to append (seq is assigned here)

        Returns:
            The queued operation
        """
        if op.op_kind not in OP_KINDS:
            raise ValueError(f"Unknown operation kind: {op.op_kind}")

        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                INSERT INTO pending_operations
                (op_kind, entity_kind, entity_id, payload, enqueued_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                op.op_kind,
                op.entity_kind,
                op.entity_id,
                json.dumps(op.payload),
                op.enqueued_at.isoformat(),
            ))
            conn.commit()
            op.seq = cursor.lastrowid
            logger.info(f"Queued {op.describe}")
            return op
        finally:
            conn.close()

    def all(self) -> list[PendingOperation]:
        """Get all queued operations, oldest first."""
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                SELECT seq, op_kind, entity_kind, entity_id, payload, enqueued_at
                FROM pending_operations
                ORDER BY seq ASC
            """)
            return [PendingOperation.from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def for_entity(self, entity_kind: str, entity_id: str) -> list[PendingOperation]:
        """Get queued operations for one entity, oldest first."""
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                SELECT seq, op_kind, entity_kind, entity_id, payload, enqueued_at
                FROM pending_operations
                WHERE entity_kind = ? AND entity_id = ?
                ORDER BY seq ASC
            """, (entity_kind, entity_id))
            return [PendingOperation.from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def has_pending(self, entity_kind: str, entity_id: str) -> bool:
        """Check if an entity has any queued operation."""
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                SELECT 1 FROM pending_operations
                WHERE entity_kind = ? AND entity_id = ?
                LIMIT 1
            """, (entity_kind, entity_id))
            return cursor.fetchone() is not None
        finally:
            conn.close()

    def pending_ids(self, entity_kind: str) -> set[str]:
        """IDs of all entities of a kind with queued operations."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "SELECT DISTINCT entity_id FROM pending_operations WHERE entity_kind = ?",
                (entity_kind,)
            )
            return {row[0] for row in cursor.fetchall()}
        finally:
            conn.close()

    def remove(self, entity_kind: str, entity_id: str, op_kind: str) -> bool:
        """
        Remove the oldest operation matching entity and operation kind.

        Returns:
            True if an operation was removed
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                DELETE FROM pending_operations
                WHERE seq = (
                    SELECT seq FROM pending_operations
                    WHERE entity_kind = ? AND entity_id = ? AND op_kind = ?
                    ORDER BY seq ASC
                    LIMIT 1
                )
            """, (entity_kind, entity_id, op_kind))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def rewrite_entity_id(self, entity_kind: str, old_id: str, new_id: str) -> int:
        """
        Point every queued operation for old_id at new_id.

        Used when the server confirms a creation and the tentative identifier
        is retired.

        Returns:
            Number of operations rewritten
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                UPDATE pending_operations SET entity_id = ?
                WHERE entity_kind = ? AND entity_id = ?
            """, (new_id, entity_kind, old_id))
            conn.commit()
            if cursor.rowcount:
                logger.info(
                    f"Rewrote {cursor.rowcount} queued operation(s) "
                    f"{entity_kind}/{old_id} -> {new_id}"
                )
            return cursor.rowcount
        finally:
            conn.close()

    def rewrite_references(self, old_id: str, new_id: str) -> int:
        """
        Replace old_id inside queued payloads (e.g. a task's contactId).

        Returns:
            Number of operations whose payload changed
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "SELECT seq, payload FROM pending_operations WHERE payload LIKE ?",
                (f"%{old_id}%",)
            )
            changed = 0
            for seq, payload in cursor.fetchall():
                data = json.loads(payload) if payload else {}
                rewritten = replace_reference(data, old_id, new_id)
                if rewritten != data:
                    conn.execute(
                        "UPDATE pending_operations SET payload = ? WHERE seq = ?",
                        (json.dumps(rewritten), seq)
                    )
                    changed += 1
            conn.commit()
            return changed
        finally:
            conn.close()

    def discard_entity(self, entity_kind: str, entity_id: str) -> int:
        """
        Drop every queued operation for an entity.

        Returns:
            Number of operations removed
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                DELETE FROM pending_operations
                WHERE entity_kind = ? AND entity_id = ?
            """, (entity_kind, entity_id))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count(self) -> int:
        """Get number of queued operations."""
        conn = self._get_connection()
        try:
            cursor = conn.execute("SELECT COUNT(*) FROM pending_operations")
            return cursor.fetchone()[0]
        finally:
            conn.close()

    def get_statistics(self) -> dict:
        """Get aggregate statistics about queued operations."""
        conn = self._get_connection()
        try:
            total = conn.execute("SELECT COUNT(*) FROM pending_operations").fetchone()[0]

            by_op_kind = {}
            cursor = conn.execute("""
                SELECT op_kind, COUNT(*) as count
                FROM pending_operations
                GROUP BY op_kind
            """)
            for row in cursor.fetchall():
                by_op_kind[row[0]] = row[1]

            by_entity_kind = {}
            cursor = conn.execute("""
                SELECT entity_kind, COUNT(*) as count
                FROM pending_operations
                GROUP BY entity_kind
            """)
            for row in cursor.fetchall():
                by_entity_kind[row[0]] = row[1]

            oldest = conn.execute(
                "SELECT MIN(enqueued_at) FROM pending_operations"
            ).fetchone()[0]

            return {
                "total_pending": total,
                "by_op_kind": by_op_kind,
                "by_entity_kind": by_entity_kind,
                "oldest_enqueued_at": oldest,
            }
        finally:
            conn.close()


# Singleton instance
_pending_queue: Optional[PendingOperationQueue] = None


def get_pending_queue(db_path: Optional[str] = None) -> PendingOperationQueue:
    """
    Get or create the singleton PendingOperationQueue.

    Args:
        db_path: Path to SQLite database

    Returns:
        PendingOperationQueue instance
    """
    global _pending_queue
    if _pending_queue is None:
        _pending_queue = PendingOperationQueue(db_path)
    return _pending_queue
