"""Sync engine - reconciles the local store with the backend."""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..events import DataPulled, EventBus, SyncCompleted
from ..store.models import EntityType, OutboxEntry, OutboxOp, format_timestamp, utcnow
from .conflicts import resolve
from .http_client import AuthError, NetworkError, RemoteStoreError
from .protocols import LocalStoreProtocol, RemoteStoreProtocol
from .remote import RemoteRecord

__all__ = ["SyncEngine", "SyncState", "SyncStats"]

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING_PULL = "syncing_pull"
    SYNCING_PUSH = "syncing_push"
    SYNCING_FULL = "syncing_full"


@dataclass
class SyncStats:
    """Statistics from a sync pass."""

    mode: str = "pass"
    pulled: int = 0
    pushed: int = 0
    conflicts_discarded: int = 0
    failed: int = 0
    held_back: int = 0
    network_failures: int = 0
    skipped: bool = False
    pulled_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


class SyncEngine:
    """Pull-then-push reconciliation with last-writer-wins conflicts.

    One pass runs at a time per owner. Entity types are synced in
    ``EntityType`` order and isolated from each other: a failing type is
    recorded in ``SyncStats.errors`` and the next one still runs. Only
    ``AuthError`` aborts a pass.
    """

    def __init__(
        self,
        local: LocalStoreProtocol,
        remote: RemoteStoreProtocol,
        events: Optional[EventBus] = None,
        max_attempts: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.local = local
        self.remote = remote
        self.events = events
        self.max_attempts = max_attempts
        self._clock = clock
        self._paused = False
        self._state = SyncState.IDLE
        self._state_lock = threading.Lock()
        self._owner_locks: dict[str, threading.Lock] = {}
        self._owner_locks_guard = threading.Lock()
        self._last_success: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_owner: Optional[str] = None

    # -- control ------------------------------------------------------------

    def pause(self) -> None:
        """Skip passes until resumed. A pass already running completes."""
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def state(self) -> SyncState:
        return self._state

    def _set_state(self, state: SyncState) -> None:
        with self._state_lock:
            if state is not self._state:
                logger.debug(f"Sync state {self._state.value} -> {state.value}")
            self._state = state

    def _owner_lock(self, owner_id: str) -> threading.Lock:
        with self._owner_locks_guard:
            if owner_id not in self._owner_locks:
                self._owner_locks[owner_id] = threading.Lock()
            return self._owner_locks[owner_id]

    # -- entry points -------------------------------------------------------

    def full_sync(self, user_id: str) -> SyncStats:
        """Pull then push each entity type in turn.

        Like ``sync_pass``, a call made while another pass for the same owner
        is running is coalesced into it and returns ``SyncStats(skipped=True)``.

        Raises:
            AuthError: If the session is missing or expired
        """
        stats = SyncStats(mode="full")
        if self._paused:
            stats.skipped = True
            return stats

        lock = self._owner_lock(user_id)
        if not lock.acquire(blocking=False):
            logger.debug(f"Sync already running for {user_id}, coalescing full sync")
            stats.skipped = True
            return stats

        try:
            self._set_state(SyncState.SYNCING_FULL)
            if self._check_reachable(stats):
                for entity_type in EntityType:
                    self._pull_type(entity_type, user_id, stats)
                    self._drain_type(entity_type, user_id, stats)
        except AuthError as e:
            self._last_error = str(e)
            logger.warning(f"Full sync aborted: {e}")
            raise
        finally:
            self._set_state(SyncState.IDLE)
            lock.release()

        self._finish(user_id, stats)
        return stats

    def sync_pass(self, user_id: str) -> SyncStats:
        """Pull every entity type, then drain the outbox.

        A call made while another pass for the same owner is running is
        coalesced into it and returns ``SyncStats(skipped=True)``.

        Raises:
            AuthError: If the session is missing or expired
        """
        stats = SyncStats(mode="pass")
        if self._paused:
            stats.skipped = True
            return stats

        lock = self._owner_lock(user_id)
        if not lock.acquire(blocking=False):
            logger.debug(f"Sync already running for {user_id}, coalescing trigger")
            stats.skipped = True
            return stats

        try:
            if self._check_reachable(stats):
                self._set_state(SyncState.SYNCING_PULL)
                for entity_type in EntityType:
                    self._pull_type(entity_type, user_id, stats)

                self._set_state(SyncState.SYNCING_PUSH)
                for entity_type in EntityType:
                    self._drain_type(entity_type, user_id, stats)
        except AuthError as e:
            self._last_error = str(e)
            logger.warning(f"Sync pass aborted: {e}")
            raise
        finally:
            self._set_state(SyncState.IDLE)
            lock.release()

        self._finish(user_id, stats)
        return stats

    def _check_reachable(self, stats: SyncStats) -> bool:
        if self.remote.is_reachable():
            return True
        stats.errors.append("Backend is not reachable")
        stats.network_failures += 1
        return False

    # -- pull ---------------------------------------------------------------

    def _pull_type(self, entity_type: EntityType, user_id: str, stats: SyncStats) -> None:
        """Fetch rows changed since the cursor and reconcile them one by one."""
        cursor = self.local.get_cursor(entity_type, user_id)
        try:
            records = self.remote.fetch_since(entity_type, cursor, user_id)
        except AuthError:
            raise
        except RemoteStoreError as e:
            if isinstance(e, NetworkError):
                stats.network_failures += 1
            stats.errors.append(f"Pull {entity_type.value} failed: {e}")
            logger.warning(f"Pull {entity_type.value} failed: {e}")
            return

        newest = cursor
        for record in records:
            try:
                self._reconcile(record, stats)
            except Exception as e:
                # Skip one bad row rather than stall the cursor on it forever
                stats.errors.append(f"Apply {entity_type.value} {record.entity_id} failed: {e}")
                logger.warning(f"Failed to apply remote {entity_type.value} {record.entity_id}: {e}")
            if record.updated_at and (newest is None or record.updated_at > newest):
                newest = record.updated_at

        if newest is not None and newest != cursor:
            self.local.set_cursor(entity_type, user_id, newest)

    def _reconcile(self, record: RemoteRecord, stats: SyncStats) -> None:
        entity_type = record.entity_type
        entries = self.local.pending_for(entity_type, record.entity_id)
        tombstoned = self.local.is_tombstoned(entity_type, record.entity_id)
        resolution = resolve(entries, record, local_tombstoned=tombstoned)

        if resolution.discarded:
            self._discard(resolution.discarded, record, resolution.reason, stats)

        if resolution.apply_remote and record.deleted and entity_type is EntityType.HABITS:
            orphaned = self.local.pending_completions_of(record.entity_id)
            if orphaned:
                self._discard(orphaned, record, "habit deleted remotely", stats)

        if resolution.apply_remote and self.local.apply_remote(entity_type, record.data):
            stats.pulled += 1
            stats.pulled_by_type[entity_type.value] += 1

    def _discard(
        self, entries: list[OutboxEntry], record: RemoteRecord, reason: str, stats: SyncStats
    ) -> None:
        self.local.remove_entries([e.seq for e in entries])
        stats.conflicts_discarded += len(entries)
        logger.info(
            f"Conflict discard: {len(entries)} local change(s) to "
            f"{record.entity_type.value} {record.entity_id} ({reason}, "
            f"remote updated_at={format_timestamp(record.updated_at)})"
        )

    # -- push ---------------------------------------------------------------

    def _drain_type(self, entity_type: EntityType, user_id: str, stats: SyncStats) -> None:
        """Push pending entries of one type in enqueue order.

        Once an entry fails, later entries for the same row wait for the next
        pass. A network failure stops the type altogether.
        """
        entries = self.local.pending_entries(
            user_id, entity_type=entity_type, max_attempts=self.max_attempts
        )
        held: set[str] = set()

        for index, entry in enumerate(entries):
            if entry.entity_id in held:
                stats.held_back += 1
                continue

            try:
                result = self._push_entry(entry)
            except AuthError:
                raise
            except NetworkError as e:
                self._record_failure(entry, e, stats)
                stats.network_failures += 1
                remaining = len(entries) - index - 1
                stats.held_back += remaining
                logger.info(f"Network failure pushing {entity_type.value}, {remaining} entries wait for next pass")
                return
            except RemoteStoreError as e:
                self._record_failure(entry, e, stats)
                held.add(entry.entity_id)
                continue

            self.local.remove_entries([entry.seq])
            if entry.op is OutboxOp.UPSERT and result.deleted:
                # The row was deleted elsewhere; take the tombstone
                if entity_type is EntityType.HABITS:
                    stats.conflicts_discarded += len(self.local.pending_completions_of(entry.entity_id))
                self.local.apply_remote(entity_type, result.data)
                stats.conflicts_discarded += 1
                logger.info(
                    f"Conflict discard: upsert of {entity_type.value} {entry.entity_id} "
                    f"hit a remote tombstone"
                )
            else:
                self.local.mark_synced(entity_type, entry.entity_id, result.updated_at)
                stats.pushed += 1

    def _push_entry(self, entry: OutboxEntry) -> RemoteRecord:
        if entry.op is OutboxOp.DELETE:
            return self.remote.delete(entry.entity_type, entry.entity_id)
        return self.remote.push(entry.entity_type, entry.payload or {})

    def _record_failure(self, entry: OutboxEntry, error: Exception, stats: SyncStats) -> None:
        self.local.record_failure([entry.seq], str(error))
        stats.failed += 1
        stats.errors.append(
            f"Push {entry.entity_type.value} {entry.entity_id} failed: {error}"
        )
        logger.warning(
            f"Push {entry.op.value} {entry.entity_type.value} {entry.entity_id} failed "
            f"(attempt {entry.attempts + 1}): {error}"
        )

    # -- reporting ----------------------------------------------------------

    def _finish(self, user_id: str, stats: SyncStats) -> None:
        self._last_owner = user_id
        if stats.success:
            self._last_success = self._clock()
            self._last_error = None
        else:
            self._last_error = stats.errors[-1]

        logger.info(
            f"Sync {stats.mode} done: pulled={stats.pulled} pushed={stats.pushed} "
            f"discarded={stats.conflicts_discarded} failed={stats.failed}"
        )

        if not self.events:
            return
        self.events.publish(
            SyncCompleted(
                owner_id=user_id,
                mode=stats.mode,
                pulled=stats.pulled,
                pushed=stats.pushed,
                conflicts_discarded=stats.conflicts_discarded,
                errors=tuple(stats.errors),
            )
        )
        if stats.pulled:
            self.events.publish(
                DataPulled(owner_id=user_id, counts=tuple(sorted(stats.pulled_by_type.items())))
            )

    def get_status(self, owner_id: Optional[str] = None) -> dict:
        """Get current sync status for a status badge."""
        owner_id = owner_id or self._last_owner
        if self._state is not SyncState.IDLE:
            badge = "syncing"
        elif self._last_error:
            badge = "error"
        else:
            badge = "idle"

        return {
            "state": self._state.value,
            "status": badge,
            "paused": self._paused,
            "last_success": format_timestamp(self._last_success),
            "last_error": self._last_error,
            "outbox_size": self.local.outbox_size(owner_id),
        }
