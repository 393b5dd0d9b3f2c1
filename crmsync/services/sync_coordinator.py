"""
Sync Coordinator for the CRM client.

Owns every transition of entity snapshots and pending operations:

    Requested -> Optimistic -> Confirmed | Queued

The optimistic write (cache + in-memory state) always happens first and
synchronously, so callers see their intent immediately. The remote call then
either confirms (server truth replaces the optimistic snapshot, tentative IDs
are rewritten everywhere) or fails with a network error and the mutation is
queued for replay. A RequestRejected is raised to the caller; the optimistic
state is left in place.
"""
import asyncio
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Optional

from config.settings import settings
from config.sync_config import SyncConfig
from crmsync.services.derived_state import is_recurring, next_occurrence, parse_date, RECURRENCE_NONE
from crmsync.services.entities import (
    ENTITY_KINDS,
    KIND_CONTACT,
    KIND_TASK,
    EntitySnapshot,
    known_fields,
    validate_fields,
)
from crmsync.services.errors import (
    EntityNotFound,
    NetworkFailure,
    RequestRejected,
    UndoExpired,
)
from crmsync.services.gateway import RemoteGateway, get_remote_gateway
from crmsync.services.local_cache import LocalCache, get_local_cache
from crmsync.services.pending_queue import (
    OP_CREATE,
    OP_DELETE,
    OP_UPDATE,
    PendingOperation,
    PendingOperationQueue,
    get_pending_queue,
)

logger = logging.getLogger(__name__)

# Mutation outcomes
STATE_CONFIRMED = "confirmed"
STATE_QUEUED = "queued"


@dataclass
class MutationResult:
    """Outcome of a create/update/delete after the remote attempt."""

    snapshot: Optional[EntitySnapshot]
    state: str
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.state == STATE_CONFIRMED

    @property
    def queued(self) -> bool:
        return self.state == STATE_QUEUED

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "error": self.error,
            "entity": self.snapshot.to_dict() if self.snapshot else None,
        }


@dataclass
class TaskCompletion:
    """Result of completing a task, plus the next occurrence if it recurs."""

    completed: MutationResult
    successor: Optional[MutationResult] = None


@dataclass
class ReplayReport:
    """Summary of one pass over the pending-operation queue."""

    replayed: int = 0
    remaining: int = 0
    halted: bool = False  # stopped on a network failure
    blocked: list[str] = field(default_factory=list)  # "kind/id" rejected this pass
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "replayed": self.replayed,
            "remaining": self.remaining,
            "halted": self.halted,
            "blocked": list(self.blocked),
            "errors": list(self.errors),
        }


@dataclass
class _DeletedEntry:
    snapshot: EntitySnapshot
    deleted_at: float


class SyncCoordinator:
    """
    Optimistic mutation, reconciliation and replay over cache, queue and gateway.

    Mutations against the same entity are serialized with a per-entity
    asyncio.Lock; mutations of different entities may interleave.
    """

    def __init__(
        self,
        cache: LocalCache,
        queue: PendingOperationQueue,
        gateway: RemoteGateway,
        undo_window_seconds: Optional[float] = None,
        user_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the coordinator.

        Args:
            cache: Local snapshot cache
            queue: Pending operation queue (same database as the cache)
            gateway: Remote gateway to the CRM API
            undo_window_seconds: How long deletes can be restored (default from settings)
            user_id: Owning user stamped on optimistic creations
            clock: Monotonic clock, injectable for tests
        """
        self._cache = cache
        self._queue = queue
        self._gateway = gateway
        self._undo_window = (
            undo_window_seconds if undo_window_seconds is not None
            else settings.undo_window_seconds
        )
        self._user_id = user_id
        self._clock = clock

        # UI-facing state per kind, display order (newest creations first)
        self._state: dict[str, dict[str, EntitySnapshot]] = {}

        # tentative id -> authoritative id, for callers still holding the old one
        self._aliases: dict[tuple[str, str], str] = {}

        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._replay_lock = asyncio.Lock()

        # Bumped on every optimistic write; a confirmation only lands if no
        # newer optimistic write happened while it was in flight
        self._generations: dict[tuple[str, str], int] = {}

        self._deleted: dict[tuple[str, str], _DeletedEntry] = {}

        # kind -> ids, most recently viewed first
        self._recently_viewed: dict[str, list[str]] = {}

        self.online: Optional[bool] = None
        self.last_error: Optional[str] = None
        self.last_replay_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _kind_state(self, kind: str) -> dict[str, EntitySnapshot]:
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind: {kind}")
        if kind not in self._state:
            self._state[kind] = {s.id: s for s in self._cache.all(kind)}
        return self._state[kind]

    def resolve_id(self, kind: str, entity_id: str) -> str:
        """Follow a retired tentative ID to its authoritative ID."""
        return self._aliases.get((kind, entity_id), entity_id)

    def _current(self, kind: str, entity_id: str) -> Optional[EntitySnapshot]:
        snapshot = self._kind_state(kind).get(entity_id)
        if snapshot is None:
            snapshot = self._cache.get(kind, entity_id)
        return snapshot

    def _bump(self, kind: str, entity_id: str) -> int:
        key = (kind, entity_id)
        self._generations[key] = self._generations.get(key, 0) + 1
        return self._generations[key]

    def _generation(self, kind: str, entity_id: str) -> int:
        return self._generations.get((kind, entity_id), 0)

    def _apply_optimistic(self, kind: str, snapshot: EntitySnapshot, front: bool = False) -> int:
        """Write a snapshot to cache and memory; returns its generation."""
        self._cache.put(kind, snapshot)
        state = self._kind_state(kind)
        if front and snapshot.id not in state:
            self._state[kind] = {snapshot.id: snapshot, **state}
        else:
            state[snapshot.id] = snapshot
        logger.debug(f"Optimistic write {kind}/{snapshot.id}")
        return self._bump(kind, snapshot.id)

    def _remove_optimistic(self, kind: str, entity_id: str) -> None:
        self._cache.delete(kind, entity_id)
        self._kind_state(kind).pop(entity_id, None)
        self._bump(kind, entity_id)
        logger.debug(f"Optimistic removal {kind}/{entity_id}")

    def _store_confirmed(self, kind: str, snapshot: EntitySnapshot, generation: int) -> EntitySnapshot:
        """
        Reconcile with server truth unless a newer optimistic write exists.

        Returns:
            The snapshot now visible for the entity
        """
        if self._generation(kind, snapshot.id) != generation:
            logger.debug(f"Skipping stale confirmation for {kind}/{snapshot.id}")
            return self._current(kind, snapshot.id) or snapshot
        if snapshot.id not in self._kind_state(kind) and self._cache.get(kind, snapshot.id) is None:
            # Deleted locally while the call was in flight
            return snapshot
        self._cache.put(kind, snapshot)
        self._kind_state(kind)[snapshot.id] = snapshot
        return snapshot

    def _replace_in_state(self, kind: str, old_id: str, snapshot: EntitySnapshot) -> None:
        state = self._kind_state(kind)
        if old_id not in state:
            self._state[kind] = {snapshot.id: snapshot, **state}
            return
        self._state[kind] = {
            (snapshot.id if k == old_id else k): (snapshot if k == old_id else v)
            for k, v in state.items()
        }

    def _adopt_identifier(
        self,
        kind: str,
        tentative_id: str,
        confirmed: EntitySnapshot,
        generation: Optional[int] = None,
    ) -> EntitySnapshot:
        """
        Retire a tentative ID in favour of the server's ID.

        Rewrites the queue (entries and payload references), the cache (the
        row itself and references from other snapshots) and memory without
        yielding to the event loop in between.
        """
        new_id = confirmed.id
        self._aliases[(kind, tentative_id)] = new_id
        self._queue.rewrite_entity_id(kind, tentative_id, new_id)
        self._queue.rewrite_references(tentative_id, new_id)

        old_key = (kind, tentative_id)
        deleted_locally = old_key in self._deleted
        if deleted_locally:
            self._deleted[(kind, new_id)] = self._deleted.pop(old_key)

        for other in self._cache.rewrite_references(tentative_id, new_id):
            other_state = self._kind_state(other.kind)
            if other.id in other_state:
                other_state[other.id] = other

        if deleted_locally:
            # Deleted before the server answered; the pending delete follows
            logger.info(f"Confirmed {kind}/{tentative_id} as {new_id} after local delete")
            return confirmed

        cached = self._cache.get(kind, tentative_id)
        newer_edit = generation is not None and self._generation(kind, tentative_id) != generation
        if cached is None:
            visible = confirmed
        elif newer_edit or self._queue.has_pending(kind, new_id):
            # Later optimistic edits stay visible until they are confirmed
            visible = cached.with_id(new_id)
        else:
            visible = confirmed

        self._cache.replace_identifier(kind, tentative_id, visible)
        self._replace_in_state(kind, tentative_id, visible)
        self._generations[(kind, new_id)] = self._generations.pop(old_key, 0)
        logger.info(f"Confirmed {kind}/{tentative_id} as {new_id}")
        return visible

    def _in_flight_ids(self, kind: str) -> set[str]:
        """IDs of a kind with a mutation currently holding its lock."""
        return {
            entity_id for (lock_kind, entity_id), lock in self._locks.items()
            if lock_kind == kind and lock.locked()
        }

    def _record_view(self, kind: str, entity_id: str) -> None:
        viewed = [i for i in self._recently_viewed.get(kind, []) if i != entity_id]
        viewed.insert(0, entity_id)
        self._recently_viewed[kind] = viewed[:SyncConfig.MAX_RECENTLY_VIEWED]

    def _mark_online(self) -> None:
        if self.online is False:
            logger.info("CRM API reachable again")
        self.online = True

    def _mark_offline(self, error: Exception) -> None:
        if self.online is not False:
            logger.warning(f"CRM API unreachable, working offline: {error}")
        self.online = False
        self.last_error = str(error)

    @asynccontextmanager
    async def _entity_lock(self, kind: str, entity_id: str):
        """Serialize mutations of one entity (following ID rewrites)."""
        while True:
            resolved = self.resolve_id(kind, entity_id)
            lock = self._locks.setdefault((kind, resolved), asyncio.Lock())
            await lock.acquire()
            if self.resolve_id(kind, entity_id) == resolved:
                break
            lock.release()
        try:
            yield resolved
        finally:
            lock.release()

    def _prune_deleted(self) -> None:
        now = self._clock()
        expired = [
            key for key, entry in self._deleted.items()
            if now - entry.deleted_at > self._undo_window
        ]
        for key in expired:
            del self._deleted[key]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def entities(self, kind: str) -> list[EntitySnapshot]:
        """In-memory snapshots of a kind in display order."""
        return list(self._kind_state(kind).values())

    def get_cached(self, kind: str, entity_id: str) -> Optional[EntitySnapshot]:
        """Current local snapshot (memory, then cache) without a network call."""
        entity_id = self.resolve_id(kind, entity_id)
        snapshot = self._current(kind, entity_id)
        if snapshot is not None:
            self._record_view(kind, entity_id)
        return snapshot

    def recently_viewed(self, kind: str) -> list[EntitySnapshot]:
        """Snapshots most recently opened through get_entity/get_cached, newest first."""
        snapshots = []
        seen = set()
        for viewed_id in self._recently_viewed.get(kind, []):
            entity_id = self.resolve_id(kind, viewed_id)
            snapshot = self._current(kind, entity_id)
            if snapshot is not None and entity_id not in seen:
                seen.add(entity_id)
                snapshots.append(snapshot)
        return snapshots

    async def load(self, kind: str) -> list[EntitySnapshot]:
        """
        Refresh a kind from the server, falling back to the cache offline.

        Entities with queued operations, a mutation in flight or a tentative
        ID keep their local snapshots; other cached rows the server no longer
        has are dropped.

        Returns:
            Snapshots in display order
        """
        try:
            items = await self._gateway.resource(kind).list()
        except NetworkFailure as e:
            self._mark_offline(e)
            self._state[kind] = {s.id: s for s in self._cache.all(kind)}
            return self.entities(kind)

        self._mark_online()
        keep = self._queue.pending_ids(kind) | self._in_flight_ids(kind)
        server = [EntitySnapshot.from_dict(kind, item) for item in items]
        fresh = [s for s in server if s.id not in keep]
        self._cache.put_all(kind, fresh)

        server_ids = {s.id for s in server}
        local = []
        for cached in self._cache.all(kind):
            if cached.tentative or cached.id in keep:
                local.append(cached)
            elif cached.id not in server_ids:
                self._cache.delete(kind, cached.id)

        local.sort(key=lambda s: s.updated_at, reverse=True)
        self._state[kind] = {s.id: s for s in local + fresh}
        logger.info(f"Loaded {len(server)} {kind} snapshot(s), {len(local)} with local changes")
        return self.entities(kind)

    async def get_entity(self, kind: str, entity_id: str) -> Optional[EntitySnapshot]:
        """
        Fetch one entity, falling back to the cache offline.

        Raises:
            RequestRejected: The server refused the request
        """
        entity_id = self.resolve_id(kind, entity_id)
        current = self._current(kind, entity_id)
        if current is not None and (current.tentative or self._queue.has_pending(kind, entity_id)):
            self._record_view(kind, entity_id)
            return current

        generation = self._generation(kind, entity_id)
        try:
            data = await self._gateway.resource(kind).get(entity_id)
        except NetworkFailure as e:
            self._mark_offline(e)
            cached = self._cache.get(kind, entity_id)
            if cached is not None:
                self._record_view(kind, entity_id)
            return cached

        self._mark_online()
        snapshot = EntitySnapshot.from_dict(kind, data)
        if generation == self._generation(kind, entity_id):
            self._cache.put(kind, snapshot)
            self._kind_state(kind)[snapshot.id] = snapshot
        self._record_view(kind, entity_id)
        return self._current(kind, entity_id) or snapshot

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_entity(self, kind: str, fields: dict) -> MutationResult:
        """
        Create an entity optimistically under a tentative ID.

        Raises:
            PayloadInvalid: Payload failed validation (nothing is written)
            RequestRejected: Server refused the creation (optimistic state kept)
        """
        payload = validate_fields(kind, fields, partial=False)
        snapshot = EntitySnapshot.tentative_from_fields(kind, payload, self._user_id)
        generation = self._apply_optimistic(kind, snapshot, front=True)

        async with self._entity_lock(kind, snapshot.id):
            try:
                data = await self._gateway.resource(kind).create(payload)
            except NetworkFailure as e:
                self._mark_offline(e)
                self._queue.enqueue(PendingOperation(OP_CREATE, kind, snapshot.id, payload))
                return MutationResult(self._current(kind, snapshot.id) or snapshot, STATE_QUEUED, str(e))
            except RequestRejected as e:
                self.last_error = e.message
                logger.warning(f"Create {kind} rejected ({e.status_code}): {e.message}")
                raise

            self._mark_online()
            confirmed = EntitySnapshot.from_dict(kind, data)
            visible = self._adopt_identifier(kind, snapshot.id, confirmed, generation)
            return MutationResult(visible, STATE_CONFIRMED)

    async def update_entity(self, kind: str, entity_id: str, changes: dict) -> MutationResult:
        """
        Apply a partial update optimistically, then push the full field set.

        If the entity already has queued operations the update is queued
        behind them without a network call, keeping per-entity order.

        Raises:
            PayloadInvalid: Payload failed validation
            EntityNotFound: No local snapshot for the entity
            RequestRejected: Server refused the update (optimistic state kept)
        """
        payload = validate_fields(kind, changes, partial=True)
        entity_id = self.resolve_id(kind, entity_id)
        current = self._current(kind, entity_id)
        if current is None:
            raise EntityNotFound(kind, entity_id)

        optimistic = current.with_fields(payload)
        self._apply_optimistic(kind, optimistic)

        async with self._entity_lock(kind, entity_id) as resolved:
            # A create confirmed meanwhile may have moved the entity
            latest = self._current(kind, resolved)
            if latest is None:
                raise EntityNotFound(kind, resolved)
            full = known_fields(kind, latest.fields)
            generation = self._generation(kind, resolved)

            if self._queue.has_pending(kind, resolved):
                self._queue.enqueue(PendingOperation(OP_UPDATE, kind, resolved, full))
                return MutationResult(latest, STATE_QUEUED)

            try:
                data = await self._gateway.resource(kind).update(resolved, full)
            except NetworkFailure as e:
                self._mark_offline(e)
                self._queue.enqueue(PendingOperation(OP_UPDATE, kind, resolved, full))
                return MutationResult(latest, STATE_QUEUED, str(e))
            except RequestRejected as e:
                self.last_error = e.message
                logger.warning(f"Update {kind}/{resolved} rejected ({e.status_code}): {e.message}")
                raise

            self._mark_online()
            visible = self._store_confirmed(kind, EntitySnapshot.from_dict(kind, data), generation)
            return MutationResult(visible, STATE_CONFIRMED)

    async def delete_entity(self, kind: str, entity_id: str) -> MutationResult:
        """
        Remove an entity optimistically and keep it restorable for the undo window.

        An entity whose creation never reached the server just has its queued
        operations dropped.

        Returns:
            MutationResult carrying the deleted snapshot

        Raises:
            EntityNotFound: No local snapshot for the entity
            RequestRejected: Server refused the delete (entity stays removed locally)
        """
        entity_id = self.resolve_id(kind, entity_id)
        current = self._current(kind, entity_id)
        if current is None:
            raise EntityNotFound(kind, entity_id)

        self._remove_optimistic(kind, entity_id)
        self._prune_deleted()
        self._deleted[(kind, entity_id)] = _DeletedEntry(current, self._clock())

        async with self._entity_lock(kind, entity_id) as resolved:
            if resolved != entity_id:
                # Creation confirmed while waiting; drop the adopted row too
                self._remove_optimistic(kind, resolved)

            pending = self._queue.for_entity(kind, resolved)
            if any(op.op_kind == OP_CREATE for op in pending):
                dropped = self._queue.discard_entity(kind, resolved)
                logger.info(f"Dropped {dropped} queued operation(s) for unsynced {kind}/{resolved}")
                return MutationResult(current, STATE_CONFIRMED)

            if pending:
                self._queue.enqueue(PendingOperation(OP_DELETE, kind, resolved))
                return MutationResult(current, STATE_QUEUED)

            try:
                await self._gateway.resource(kind).delete(resolved)
            except NetworkFailure as e:
                self._mark_offline(e)
                self._queue.enqueue(PendingOperation(OP_DELETE, kind, resolved))
                return MutationResult(current, STATE_QUEUED, str(e))
            except RequestRejected as e:
                if not e.is_not_found:
                    self.last_error = e.message
                    logger.warning(f"Delete {kind}/{resolved} rejected ({e.status_code}): {e.message}")
                    raise
                logger.info(f"{kind}/{resolved} already gone on the server")

            self._mark_online()
            return MutationResult(current, STATE_CONFIRMED)

    async def restore_entity(self, kind: str, entity_id: str) -> MutationResult:
        """
        Undo a delete by re-creating the entity from its retained snapshot.

        The restored entity gets a new identifier.

        Raises:
            UndoExpired: No delete of this entity inside the undo window
        """
        self._prune_deleted()
        key = (kind, self.resolve_id(kind, entity_id))
        entry = self._deleted.pop(key, None)
        if entry is None:
            raise UndoExpired(kind, entity_id)

        logger.info(f"Restoring deleted {kind}/{entity_id}")
        return await self.create_entity(kind, known_fields(kind, entry.snapshot.fields))

    async def bulk_add_tags(self, contact_ids: list[str], tags: list[str]) -> list[EntitySnapshot]:
        """
        Add tags to many contacts (set union, no duplicates).

        Applied optimistically to every contact first. Contacts with queued
        operations get their update queued directly; the rest go through the
        bulk endpoint, and on a network failure each one is queued as a full
        update.

        Returns:
            The contacts' snapshots after the call

        Raises:
            RequestRejected: Server refused the bulk call (optimistic state kept)
        """
        new_tags = [t.strip() for t in tags if isinstance(t, str) and t.strip()]
        ids = list(dict.fromkeys(self.resolve_id(KIND_CONTACT, i) for i in contact_ids))

        touched: dict[str, int] = {}
        for contact_id in ids:
            current = self._current(KIND_CONTACT, contact_id)
            if current is None:
                logger.warning(f"Bulk tag: contact {contact_id} not found, skipping")
                continue
            existing = [t for t in (current.get("tags") or []) if isinstance(t, str)]
            merged = list(dict.fromkeys(existing + new_tags))
            touched[contact_id] = self._apply_optimistic(
                KIND_CONTACT, current.with_fields({"tags": merged})
            )

        if not touched:
            return []

        async with AsyncExitStack() as stack:
            for contact_id in sorted(touched):
                await stack.enter_async_context(self._entity_lock(KIND_CONTACT, contact_id))

            direct = []
            for contact_id in touched:
                if self._queue.has_pending(KIND_CONTACT, contact_id):
                    self._enqueue_full_update(KIND_CONTACT, contact_id)
                else:
                    direct.append(contact_id)

            if direct:
                try:
                    updated = await self._gateway.contacts.bulk_add_tags(direct, new_tags)
                except NetworkFailure as e:
                    self._mark_offline(e)
                    for contact_id in direct:
                        self._enqueue_full_update(KIND_CONTACT, contact_id)
                except RequestRejected as e:
                    self.last_error = e.message
                    logger.warning(f"Bulk tag rejected ({e.status_code}): {e.message}")
                    raise
                else:
                    self._mark_online()
                    for item in updated:
                        snapshot = EntitySnapshot.from_dict(KIND_CONTACT, item)
                        if snapshot.id in touched:
                            self._store_confirmed(KIND_CONTACT, snapshot, touched[snapshot.id])

        return [s for s in (self._current(KIND_CONTACT, i) for i in touched) if s is not None]

    def _enqueue_full_update(self, kind: str, entity_id: str) -> None:
        current = self._current(kind, entity_id)
        if current is not None:
            self._queue.enqueue(
                PendingOperation(OP_UPDATE, kind, entity_id, known_fields(kind, current.fields))
            )

    async def complete_task(self, task_id: str, today: Optional[date] = None) -> TaskCompletion:
        """
        Mark a task completed; for recurring tasks create the next occurrence.

        The successor copies title, description, contact, priority and
        recurrence settings, gets the advanced due date and links back through
        parentTaskId. No successor is created past recurrenceEndDate.

        Raises:
            EntityNotFound: Unknown task
            RequestRejected: Server refused the update
        """
        task_id = self.resolve_id(KIND_TASK, task_id)
        current = self._current(KIND_TASK, task_id)
        if current is None:
            raise EntityNotFound(KIND_TASK, task_id)
        already_done = current.get("status") == "COMPLETED"

        completed = await self.update_entity(KIND_TASK, task_id, {
            "status": "COMPLETED",
            "completedAt": datetime.now(timezone.utc).replace(tzinfo=None).isoformat(),
        })
        if already_done:
            return TaskCompletion(completed=completed)

        recurrence = current.get("recurrence") or RECURRENCE_NONE
        if recurrence == RECURRENCE_NONE:
            return TaskCompletion(completed=completed)
        if not is_recurring(recurrence):
            logger.warning(f"Task {task_id} has unknown recurrence {recurrence!r}, no successor created")
            return TaskCompletion(completed=completed)

        due = parse_date(current.get("dueDate")) or today
        if due is None:
            return TaskCompletion(completed=completed)

        next_due = next_occurrence(due, recurrence, parse_date(current.get("recurrenceEndDate")))
        if next_due is None:
            logger.info(f"Recurring task {task_id} reached its end date")
            return TaskCompletion(completed=completed)

        successor_fields = {
            key: current.get(key)
            for key in ("title", "description", "contactId", "contactName",
                        "priority", "recurrence", "recurrenceEndDate")
            if current.get(key) is not None
        }
        successor_fields.update({
            "status": "PENDING",
            "dueDate": next_due.isoformat(),
            "parentTaskId": self.resolve_id(KIND_TASK, completed.snapshot.id),
        })
        successor = await self.create_entity(KIND_TASK, successor_fields)
        return TaskCompletion(completed=completed, successor=successor)

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def replay_pending(self) -> ReplayReport:
        """
        Replay queued operations oldest first.

        A network failure halts the pass (everything left stays queued). A
        rejection blocks that entity for the rest of the pass so its later
        operations are never applied out of order; other entities continue.

        Returns:
            ReplayReport
        """
        async with self._replay_lock:
            report = ReplayReport()
            blocked: set[tuple[str, str]] = set()

            while True:
                op = next(
                    (o for o in self._queue.all() if (o.entity_kind, o.entity_id) not in blocked),
                    None,
                )
                if op is None:
                    break

                try:
                    async with self._entity_lock(op.entity_kind, op.entity_id):
                        removed = await self._replay_one(op)
                except NetworkFailure as e:
                    self._mark_offline(e)
                    report.halted = True
                    logger.warning(f"Replay halted at {op.describe}: {e}")
                    break
                except RequestRejected as e:
                    blocked.add((op.entity_kind, op.entity_id))
                    report.blocked.append(f"{op.entity_kind}/{op.entity_id}")
                    report.errors.append(f"{op.describe}: {e.message}")
                    self.last_error = e.message
                    logger.warning(f"Replay of {op.describe} rejected ({e.status_code}): {e.message}")
                    continue

                if not removed:
                    logger.warning(f"Replayed {op.describe} but it was no longer queued")
                    break
                self._mark_online()
                report.replayed += 1

            report.remaining = self._queue.count()
            self.last_replay_at = datetime.now(timezone.utc)
            logger.info(
                f"Replay finished: {report.replayed} replayed, {report.remaining} remaining"
                + (" (halted)" if report.halted else "")
            )
            return report

    async def _replay_one(self, op: PendingOperation) -> bool:
        kind = op.entity_kind
        resource = self._gateway.resource(kind)
        generation = self._generation(kind, op.entity_id)

        if op.op_kind == OP_CREATE:
            data = await resource.create(op.payload)
            removed = self._queue.remove(kind, op.entity_id, OP_CREATE)
            self._adopt_identifier(kind, op.entity_id, EntitySnapshot.from_dict(kind, data), generation)
            return removed

        if op.op_kind == OP_UPDATE:
            data = await resource.update(op.entity_id, op.payload)
            removed = self._queue.remove(kind, op.entity_id, OP_UPDATE)
            if not self._queue.has_pending(kind, op.entity_id):
                self._store_confirmed(kind, EntitySnapshot.from_dict(kind, data), generation)
            return removed

        await resource.delete(op.entity_id)
        return self._queue.remove(kind, op.entity_id, OP_DELETE)

    def discard_pending(self, kind: str, entity_id: str) -> int:
        """
        Drop every queued operation for an entity (operator escape hatch for
        a permanently rejected operation that blocks its entity).

        Returns:
            Number of operations dropped
        """
        dropped = self._queue.discard_entity(kind, self.resolve_id(kind, entity_id))
        if dropped:
            logger.warning(f"Discarded {dropped} queued operation(s) for {kind}/{entity_id}")
        return dropped

    def pending(self) -> list[PendingOperation]:
        """Queued operations, oldest first."""
        return self._queue.all()

    def status(self) -> dict:
        """Sync status for the UI's offline indicator."""
        return {
            "online": self.online,
            "pending_count": self._queue.count(),
            "last_replay_at": self.last_replay_at.isoformat() if self.last_replay_at else None,
            "last_error": self.last_error,
        }


# Singleton instance
_sync_coordinator: Optional[SyncCoordinator] = None


def get_sync_coordinator() -> SyncCoordinator:
    """
    Get or create the singleton SyncCoordinator.

    Wired to the default cache, queue and gateway singletons.
    """
    global _sync_coordinator
    if _sync_coordinator is None:
        _sync_coordinator = SyncCoordinator(
            cache=get_local_cache(),
            queue=get_pending_queue(),
            gateway=get_remote_gateway(),
        )
    return _sync_coordinator
