"""Embedded SQLite store for habits, completions and routines.

Every local mutation writes its row and an outbox entry in one transaction,
so a crash between the two can neither lose nor duplicate a pending change.
Rows written from the backend (``apply_remote``) never touch the outbox.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from ..config import Config
from ..events import (
    CompletionChanged,
    DomainEvent,
    EventBus,
    HabitCreated,
    HabitDeleted,
    HabitUpdated,
    RoutineChanged,
)
from .models import (
    Completion,
    EntityType,
    Habit,
    OutboxEntry,
    OutboxOp,
    Routine,
    format_timestamp,
    normalize_date,
    parse_timestamp,
    utcnow,
)

__all__ = ["LocalStore", "StorageInitError", "SCHEMA_VERSION"]

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# ON CONFLICT ... DO UPDATE needs SQLite 3.24
MIN_SQLITE_VERSION = (3, 24, 0)


class StorageInitError(Exception):
    """The embedded store cannot be used in this runtime."""

    pass


def _migrate_v1(cursor: sqlite3.Cursor) -> None:
    cursor.executescript(
        """
        CREATE TABLE IF NOT EXISTS habits (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            name TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT 'misc',
            is_goal INTEGER NOT NULL DEFAULT 0,
            goal_id TEXT,
            description TEXT,
            icon TEXT,
            color TEXT,
            task_days TEXT NOT NULL DEFAULT '["mon","tue","wed","thu","fri","sat","sun"]',
            target_date TEXT,
            is_archived INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            synced INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS completions (
            habit_id TEXT NOT NULL,
            date TEXT NOT NULL,
            done INTEGER NOT NULL DEFAULT 1,
            owner_id TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            synced INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (habit_id, date)
        );

        CREATE TABLE IF NOT EXISTS outbox (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            owner_id TEXT NOT NULL,
            op TEXT NOT NULL,
            payload TEXT,
            enqueued_at TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT
        );

        CREATE TABLE IF NOT EXISTS sync_cursors (
            entity_type TEXT NOT NULL,
            owner_id TEXT NOT NULL,
            last_synced_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (entity_type, owner_id)
        );

        CREATE INDEX IF NOT EXISTS idx_habits_owner ON habits(owner_id, deleted);
        CREATE INDEX IF NOT EXISTS idx_habits_goal ON habits(goal_id);
        CREATE INDEX IF NOT EXISTS idx_completions_owner_date ON completions(owner_id, date);
        CREATE INDEX IF NOT EXISTS idx_outbox_owner ON outbox(owner_id, seq);
        CREATE INDEX IF NOT EXISTS idx_outbox_entity ON outbox(entity_type, entity_id);
        """
    )


def _migrate_v2(cursor: sqlite3.Cursor) -> None:
    cursor.executescript(
        """
        CREATE TABLE IF NOT EXISTS routines (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            name TEXT NOT NULL,
            steps TEXT NOT NULL DEFAULT '[]',
            time_of_day TEXT NOT NULL DEFAULT 'anytime',
            updated_at TEXT NOT NULL,
            synced INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_routines_owner ON routines(owner_id, deleted);
        """
    )


MIGRATIONS: dict[int, Callable[[sqlite3.Cursor], None]] = {
    1: _migrate_v1,
    2: _migrate_v2,
}


class LocalStore:
    """SQLite-backed local-first store with a pending-change outbox."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        events: Optional[EventBus] = None,
        sandboxed: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the store. Nothing touches disk until ``open()``.

        Args:
            db_path: Path to SQLite database file
            events: Bus that receives domain events after each commit
            sandboxed: True in restricted preview runtimes without an embedded engine
            clock: Source of mutation timestamps
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "habyss.db"

        self.db_path = Path(db_path)
        self.events = events
        self.sandboxed = sandboxed
        self._clock = clock
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._opened = False
        self._open_lock = threading.Lock()

    # -- lifecycle ----------------------------------------------------------

    def is_available(self) -> bool:
        """Check whether the embedded engine is usable in this runtime."""
        if self.sandboxed:
            return False
        return sqlite3.sqlite_version_info >= MIN_SQLITE_VERSION

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> "LocalStore":
        """Create the schema on first run. Safe to call repeatedly.

        Raises:
            StorageInitError: If the engine is unavailable or the database
                cannot be created
        """
        with self._open_lock:
            if self._opened:
                return self
            if not self.is_available():
                raise StorageInitError("SQLite is not available in this runtime")
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = self._get_connection()
                conn.execute("PRAGMA journal_mode = WAL")
                self._run_migrations()
            except (OSError, sqlite3.Error) as e:
                self.close()
                raise StorageInitError(f"Cannot open local store at {self.db_path}: {e}") from e
            self._opened = True
            logger.info(f"Local store opened at {self.db_path}")
            return self

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
        self._local = threading.local()
        self._opened = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            conn = sqlite3.connect(str(self.db_path), isolation_level=None, timeout=10)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA busy_timeout = 5000")
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Cursor for reads (autocommit)."""
        cursor = self._get_connection().cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Cursor inside a write transaction, committed on success."""
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _run_migrations(self) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
            )
            row = cursor.execute("SELECT MAX(version) FROM schema_version").fetchone()
            current = row[0] or 0

        for version in sorted(MIGRATIONS):
            if version <= current:
                continue
            # executescript commits, so each migration records its version right after
            with self._cursor() as cursor:
                MIGRATIONS[version](cursor)
                cursor.execute("INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (version,))
            logger.info(f"Migrated local store to schema v{version}")

    def _publish(self, events: list[DomainEvent]) -> None:
        if not self.events:
            return
        for event in events:
            self.events.publish(event)

    # -- habits -------------------------------------------------------------

    def get_habits(self, owner_id: str, include_deleted: bool = False) -> list[Habit]:
        """Get an owner's habits, newest first."""
        query = "SELECT * FROM habits WHERE owner_id = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        query += " ORDER BY created_at DESC"
        with self._cursor() as cursor:
            cursor.execute(query, (owner_id,))
            return [Habit.from_row(row) for row in cursor.fetchall()]

    def get_goals(self, owner_id: str) -> list[Habit]:
        return [h for h in self.get_habits(owner_id) if h.is_goal]

    def get_habit(self, habit_id: str) -> Optional[Habit]:
        """Get a habit by id, tombstones included."""
        with self._cursor() as cursor:
            return self._fetch_habit(cursor, habit_id)

    def upsert_habit(self, habit: Habit) -> Habit:
        """Create or update a habit and enqueue it for push.

        A tombstoned id is never resurrected; a ``goal_id`` that does not point
        at a live goal of the same owner is cleared.
        """
        events: list[DomainEvent] = []
        with self._transaction() as cursor:
            existing = self._fetch_habit(cursor, habit.id)
            if existing and existing.deleted:
                logger.warning(f"Ignoring update to deleted habit {habit.id}")
                return existing

            goal_id = habit.goal_id
            if goal_id and not self._is_valid_goal(cursor, goal_id, habit):
                logger.warning(
                    f"Habit {habit.id} references {goal_id}, which is not a goal; clearing goal_id"
                )
                goal_id = None

            now = self._clock()
            stored = replace(
                habit,
                goal_id=goal_id,
                created_at=existing.created_at if existing else habit.created_at,
                updated_at=now,
                deleted=False,
            )
            self._write_habit(cursor, stored, synced=False)
            self._enqueue(cursor, EntityType.HABITS, stored.id, stored.owner_id, OutboxOp.UPSERT, stored.to_dict(), now)

            if existing:
                events.append(HabitUpdated(habit_id=stored.id, owner_id=stored.owner_id))
            else:
                events.append(
                    HabitCreated(
                        habit_id=stored.id,
                        owner_id=stored.owner_id,
                        name=stored.name,
                        is_goal=stored.is_goal,
                    )
                )

        self._publish(events)
        return stored

    def delete_habit(self, habit_id: str) -> bool:
        """Tombstone a habit and cascade to its completions, routines and child habits.

        Returns:
            True if a live habit was deleted
        """
        events: list[DomainEvent] = []
        with self._transaction() as cursor:
            existing = self._fetch_habit(cursor, habit_id)
            if existing is None or existing.deleted:
                return False

            now = self._clock()
            owner_id = existing.owner_id
            cursor.execute(
                "UPDATE habits SET deleted = 1, synced = 0, updated_at = ? WHERE id = ?",
                (format_timestamp(now), habit_id),
            )
            cursor.execute("DELETE FROM completions WHERE habit_id = ?", (habit_id,))
            # Pending completion pushes for this habit are moot now
            self._drop_completion_entries(cursor, habit_id)
            self._enqueue(
                cursor,
                EntityType.HABITS,
                habit_id,
                owner_id,
                OutboxOp.DELETE,
                {"id": habit_id, "user_id": owner_id},
                now,
            )
            events.append(HabitDeleted(habit_id=habit_id, owner_id=owner_id))

            cursor.execute(
                "SELECT * FROM habits WHERE goal_id = ? AND deleted = 0", (habit_id,)
            )
            for child in [Habit.from_row(row) for row in cursor.fetchall()]:
                child = replace(child, goal_id=None, updated_at=now)
                self._write_habit(cursor, child, synced=False)
                self._enqueue(cursor, EntityType.HABITS, child.id, owner_id, OutboxOp.UPSERT, child.to_dict(), now)
                events.append(HabitUpdated(habit_id=child.id, owner_id=owner_id))

            for routine in self._fetch_routines(cursor, owner_id):
                if not any(step.habit_id == habit_id for step in routine.steps):
                    continue
                routine = replace(routine.without_habit(habit_id), updated_at=now)
                self._write_routine(cursor, routine, synced=False)
                self._enqueue(cursor, EntityType.ROUTINES, routine.id, owner_id, OutboxOp.UPSERT, routine.to_dict(), now)
                events.append(RoutineChanged(routine_id=routine.id, owner_id=owner_id))

        self._publish(events)
        return True

    def _fetch_habit(self, cursor: sqlite3.Cursor, habit_id: str) -> Optional[Habit]:
        cursor.execute("SELECT * FROM habits WHERE id = ?", (habit_id,))
        row = cursor.fetchone()
        return Habit.from_row(row) if row else None

    def _is_valid_goal(self, cursor: sqlite3.Cursor, goal_id: str, habit: Habit) -> bool:
        if goal_id == habit.id:
            return False
        goal = self._fetch_habit(cursor, goal_id)
        return bool(goal and goal.is_goal and not goal.deleted and goal.owner_id == habit.owner_id)

    def _write_habit(self, cursor: sqlite3.Cursor, habit: Habit, synced: bool) -> None:
        cursor.execute(
            """
            INSERT INTO habits (
                id, owner_id, name, category, is_goal, goal_id, description, icon, color,
                task_days, target_date, is_archived, created_at, updated_at, synced, deleted
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_id = excluded.owner_id,
                name = excluded.name,
                category = excluded.category,
                is_goal = excluded.is_goal,
                goal_id = excluded.goal_id,
                description = excluded.description,
                icon = excluded.icon,
                color = excluded.color,
                task_days = excluded.task_days,
                target_date = excluded.target_date,
                is_archived = excluded.is_archived,
                updated_at = excluded.updated_at,
                synced = excluded.synced,
                deleted = excluded.deleted
            """,
            (
                habit.id,
                habit.owner_id,
                habit.name,
                habit.category.value,
                int(habit.is_goal),
                habit.goal_id,
                habit.description,
                habit.icon,
                habit.color,
                json.dumps(list(habit.task_days)),
                habit.target_date,
                int(habit.is_archived),
                format_timestamp(habit.created_at),
                format_timestamp(habit.updated_at),
                int(synced),
                int(habit.deleted),
            ),
        )

    # -- completions --------------------------------------------------------

    def get_completions(self, day: Union[str, "datetime"], owner_id: str) -> dict[str, bool]:
        """Get habits completed on a calendar day."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT habit_id FROM completions WHERE owner_id = ? AND date = ? AND done = 1",
                (owner_id, normalize_date(day)),
            )
            return {row["habit_id"]: True for row in cursor.fetchall()}

    def get_completions_between(self, start: str, end: str, owner_id: str) -> dict[str, list[str]]:
        """Get completed habit ids per day for an inclusive date range."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT date, habit_id FROM completions
                WHERE owner_id = ? AND date >= ? AND date <= ? AND done = 1
                ORDER BY date ASC
                """,
                (owner_id, normalize_date(start), normalize_date(end)),
            )
            result: dict[str, list[str]] = {}
            for row in cursor.fetchall():
                result.setdefault(row["date"], []).append(row["habit_id"])
            return result

    def set_completion(
        self, habit_id: str, day, done: bool, owner_id: Optional[str] = None
    ) -> Optional[Completion]:
        """Record whether a habit was done on a day.

        Idempotent: one row per (habit, day); repeating the same value is a no-op.

        Returns:
            The stored completion, or None if the habit is deleted or has no owner
        """
        day_str = normalize_date(day)
        with self._transaction() as cursor:
            habit = self._fetch_habit(cursor, habit_id)
            if habit and habit.deleted:
                logger.warning(f"Ignoring completion for deleted habit {habit_id}")
                return None
            owner_id = owner_id or (habit.owner_id if habit else None)
            if not owner_id:
                logger.warning(f"Ignoring completion for unknown habit {habit_id} without owner")
                return None

            cursor.execute(
                "SELECT * FROM completions WHERE habit_id = ? AND date = ?", (habit_id, day_str)
            )
            row = cursor.fetchone()
            if row and bool(row["done"]) == bool(done):
                return Completion.from_row(row)

            now = self._clock()
            completion = Completion(
                habit_id=habit_id, date=day_str, done=bool(done), owner_id=owner_id, updated_at=now
            )
            self._write_completion(cursor, completion, synced=False)
            self._enqueue(
                cursor,
                EntityType.COMPLETIONS,
                completion.key,
                owner_id,
                OutboxOp.UPSERT,
                completion.to_dict(),
                now,
            )

        self._publish(
            [CompletionChanged(habit_id=habit_id, date=day_str, done=bool(done), owner_id=owner_id)]
        )
        return completion

    def _write_completion(self, cursor: sqlite3.Cursor, completion: Completion, synced: bool) -> None:
        cursor.execute(
            """
            INSERT INTO completions (habit_id, date, done, owner_id, updated_at, synced)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(habit_id, date) DO UPDATE SET
                done = excluded.done,
                owner_id = excluded.owner_id,
                updated_at = excluded.updated_at,
                synced = excluded.synced
            """,
            (
                completion.habit_id,
                completion.date,
                int(completion.done),
                completion.owner_id,
                format_timestamp(completion.updated_at),
                int(synced),
            ),
        )

    # -- routines -----------------------------------------------------------

    def get_routines(self, owner_id: str) -> list[Routine]:
        with self._cursor() as cursor:
            return self._fetch_routines(cursor, owner_id)

    def get_routine(self, routine_id: str) -> Optional[Routine]:
        with self._cursor() as cursor:
            return self._fetch_routine(cursor, routine_id)

    def upsert_routine(self, routine: Routine) -> Routine:
        """Create or update a routine and enqueue it for push."""
        with self._transaction() as cursor:
            existing = self._fetch_routine(cursor, routine.id)
            if existing and existing.deleted:
                logger.warning(f"Ignoring update to deleted routine {routine.id}")
                return existing
            now = self._clock()
            stored = replace(routine, updated_at=now, deleted=False)
            self._write_routine(cursor, stored, synced=False)
            self._enqueue(cursor, EntityType.ROUTINES, stored.id, stored.owner_id, OutboxOp.UPSERT, stored.to_dict(), now)

        self._publish([RoutineChanged(routine_id=stored.id, owner_id=stored.owner_id)])
        return stored

    def delete_routine(self, routine_id: str) -> bool:
        with self._transaction() as cursor:
            existing = self._fetch_routine(cursor, routine_id)
            if existing is None or existing.deleted:
                return False
            now = self._clock()
            cursor.execute(
                "UPDATE routines SET deleted = 1, synced = 0, updated_at = ? WHERE id = ?",
                (format_timestamp(now), routine_id),
            )
            self._enqueue(
                cursor,
                EntityType.ROUTINES,
                routine_id,
                existing.owner_id,
                OutboxOp.DELETE,
                {"id": routine_id, "user_id": existing.owner_id},
                now,
            )

        self._publish([RoutineChanged(routine_id=routine_id, owner_id=existing.owner_id, deleted=True)])
        return True

    def _fetch_routine(self, cursor: sqlite3.Cursor, routine_id: str) -> Optional[Routine]:
        cursor.execute("SELECT * FROM routines WHERE id = ?", (routine_id,))
        row = cursor.fetchone()
        return Routine.from_row(row) if row else None

    def _fetch_routines(self, cursor: sqlite3.Cursor, owner_id: str) -> list[Routine]:
        cursor.execute(
            "SELECT * FROM routines WHERE owner_id = ? AND deleted = 0 ORDER BY name ASC",
            (owner_id,),
        )
        return [Routine.from_row(row) for row in cursor.fetchall()]

    def _write_routine(self, cursor: sqlite3.Cursor, routine: Routine, synced: bool) -> None:
        cursor.execute(
            """
            INSERT INTO routines (id, owner_id, name, steps, time_of_day, updated_at, synced, deleted)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_id = excluded.owner_id,
                name = excluded.name,
                steps = excluded.steps,
                time_of_day = excluded.time_of_day,
                updated_at = excluded.updated_at,
                synced = excluded.synced,
                deleted = excluded.deleted
            """,
            (
                routine.id,
                routine.owner_id,
                routine.name,
                json.dumps([s.to_dict() for s in routine.steps]),
                routine.time_of_day,
                format_timestamp(routine.updated_at),
                int(synced),
                int(routine.deleted),
            ),
        )

    # -- outbox -------------------------------------------------------------

    def _enqueue(
        self,
        cursor: sqlite3.Cursor,
        entity_type: EntityType,
        entity_id: str,
        owner_id: str,
        op: OutboxOp,
        payload: Optional[dict],
        at: datetime,
    ) -> None:
        cursor.execute(
            """
            INSERT INTO outbox (entity_type, entity_id, owner_id, op, payload, enqueued_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entity_type.value,
                entity_id,
                owner_id,
                op.value,
                json.dumps(payload) if payload is not None else None,
                format_timestamp(at),
            ),
        )

    def pending_entries(
        self,
        owner_id: str,
        entity_type: Optional[EntityType] = None,
        limit: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> list[OutboxEntry]:
        """Get pending outbox entries in enqueue order.

        Args:
            owner_id: Only entries written by this owner
            entity_type: Restrict to one entity type
            limit: Maximum number of entries
            max_attempts: Skip (but keep) entries that already failed this often
        """
        query = "SELECT * FROM outbox WHERE owner_id = ?"
        params: list = [owner_id]
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(EntityType(entity_type).value)
        if max_attempts is not None:
            query += " AND attempts < ?"
            params.append(max_attempts)
        query += " ORDER BY seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [OutboxEntry.from_row(row) for row in cursor.fetchall()]

    def pending_for(self, entity_type: EntityType, entity_id: str) -> list[OutboxEntry]:
        """Get pending entries for one row, in enqueue order."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM outbox WHERE entity_type = ? AND entity_id = ? ORDER BY seq ASC",
                (EntityType(entity_type).value, entity_id),
            )
            return [OutboxEntry.from_row(row) for row in cursor.fetchall()]

    def pending_completions_of(self, habit_id: str) -> list[OutboxEntry]:
        """Get pending completion entries belonging to one habit, in enqueue order."""
        with self._cursor() as cursor:
            return self._completion_entries_of(cursor, habit_id)

    def _completion_entries_of(self, cursor: sqlite3.Cursor, habit_id: str) -> list[OutboxEntry]:
        # The prefix only narrows the scan; "h1_b_<date>" also starts with "h1_"
        cursor.execute(
            "SELECT * FROM outbox WHERE entity_type = ? AND substr(entity_id, 1, ?) = ? ORDER BY seq ASC",
            (EntityType.COMPLETIONS.value, len(habit_id) + 1, f"{habit_id}_"),
        )
        return [
            entry
            for entry in (OutboxEntry.from_row(row) for row in cursor.fetchall())
            if Completion.split_key(entry.entity_id)[0] == habit_id
        ]

    def _drop_completion_entries(self, cursor: sqlite3.Cursor, habit_id: str) -> int:
        seqs = [entry.seq for entry in self._completion_entries_of(cursor, habit_id)]
        if seqs:
            placeholders = ",".join("?" * len(seqs))
            cursor.execute(f"DELETE FROM outbox WHERE seq IN ({placeholders})", seqs)
        return len(seqs)

    def remove_entries(self, seqs: list[int]) -> int:
        """Remove entries after a confirmed push or a conflict discard."""
        if not seqs:
            return 0
        with self._transaction() as cursor:
            placeholders = ",".join("?" * len(seqs))
            cursor.execute(f"DELETE FROM outbox WHERE seq IN ({placeholders})", list(seqs))
            return cursor.rowcount

    def record_failure(self, seqs: list[int], error: str) -> None:
        """Count a failed push attempt; the entries stay queued."""
        if not seqs:
            return
        with self._transaction() as cursor:
            placeholders = ",".join("?" * len(seqs))
            cursor.execute(
                f"""
                UPDATE outbox
                SET attempts = attempts + 1, last_error = ?
                WHERE seq IN ({placeholders})
                """,
                [error[:500], *seqs],
            )

    def reset_attempts(self, owner_id: str) -> int:
        """Make parked entries eligible again (e.g. after sign-in)."""
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE outbox SET attempts = 0, last_error = NULL WHERE owner_id = ? AND attempts > 0",
                (owner_id,),
            )
            return cursor.rowcount

    def outbox_size(self, owner_id: Optional[str] = None) -> int:
        with self._cursor() as cursor:
            if owner_id is None:
                cursor.execute("SELECT COUNT(*) FROM outbox")
            else:
                cursor.execute("SELECT COUNT(*) FROM outbox WHERE owner_id = ?", (owner_id,))
            return cursor.fetchone()[0]

    # -- remote apply -------------------------------------------------------

    def is_tombstoned(self, entity_type: EntityType, entity_id: str) -> bool:
        """Check whether a row was deleted locally."""
        entity_type = EntityType(entity_type)
        if entity_type is EntityType.COMPLETIONS:
            return False
        table = entity_type.value
        with self._cursor() as cursor:
            cursor.execute(f"SELECT deleted FROM {table} WHERE id = ?", (entity_id,))
            row = cursor.fetchone()
            return bool(row and row["deleted"])

    def apply_remote(self, entity_type: EntityType, data: dict) -> bool:
        """Write a row received from the backend. Does not enqueue anything.

        Returns:
            True if the local store changed
        """
        entity_type = EntityType(entity_type)
        events: list[DomainEvent] = []
        with self._transaction() as cursor:
            if entity_type is EntityType.HABITS:
                habit = Habit.from_dict(data)
                existing = self._fetch_habit(cursor, habit.id)
                if existing and existing.deleted and not habit.deleted:
                    return False
                if existing is not None:
                    habit = replace(habit, created_at=existing.created_at)
                self._write_habit(cursor, habit, synced=True)
                if habit.deleted:
                    cursor.execute("DELETE FROM completions WHERE habit_id = ?", (habit.id,))
                    dropped = self._drop_completion_entries(cursor, habit.id)
                    if dropped:
                        logger.info(f"Dropped {dropped} pending completion change(s) of deleted habit {habit.id}")
                    if existing and not existing.deleted:
                        events.append(HabitDeleted(habit_id=habit.id, owner_id=habit.owner_id, source="remote"))
                elif existing is None:
                    events.append(
                        HabitCreated(habit_id=habit.id, owner_id=habit.owner_id, name=habit.name, is_goal=habit.is_goal)
                    )
                else:
                    events.append(HabitUpdated(habit_id=habit.id, owner_id=habit.owner_id, source="remote"))

            elif entity_type is EntityType.COMPLETIONS:
                completion = Completion.from_dict(data)
                habit = self._fetch_habit(cursor, completion.habit_id)
                if habit and habit.deleted:
                    return False
                self._write_completion(cursor, completion, synced=True)
                events.append(
                    CompletionChanged(
                        habit_id=completion.habit_id,
                        date=completion.date,
                        done=completion.done,
                        owner_id=completion.owner_id,
                        source="remote",
                    )
                )

            else:
                routine = Routine.from_dict(data)
                existing = self._fetch_routine(cursor, routine.id)
                if existing and existing.deleted and not routine.deleted:
                    return False
                self._write_routine(cursor, routine, synced=True)
                events.append(
                    RoutineChanged(
                        routine_id=routine.id,
                        owner_id=routine.owner_id,
                        deleted=routine.deleted,
                        source="remote",
                    )
                )

        self._publish(events)
        return True

    def mark_synced(self, entity_type: EntityType, entity_id: str, updated_at: Optional[datetime]) -> None:
        """Adopt the server's version timestamp after a confirmed push.

        The row stays unsynced while later local changes are still queued.
        """
        entity_type = EntityType(entity_type)
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT COUNT(*) FROM outbox WHERE entity_type = ? AND entity_id = ?",
                (entity_type.value, entity_id),
            )
            if cursor.fetchone()[0] > 0:
                return
            stamp = format_timestamp(updated_at) if updated_at else None
            if entity_type is EntityType.COMPLETIONS:
                habit_id, day = Completion.split_key(entity_id)
                cursor.execute(
                    """
                    UPDATE completions SET synced = 1, updated_at = COALESCE(?, updated_at)
                    WHERE habit_id = ? AND date = ?
                    """,
                    (stamp, habit_id, day),
                )
            else:
                cursor.execute(
                    f"UPDATE {entity_type.value} SET synced = 1, updated_at = COALESCE(?, updated_at) WHERE id = ?",
                    (stamp, entity_id),
                )

    # -- sync cursors -------------------------------------------------------

    def get_cursor(self, entity_type: EntityType, owner_id: str) -> Optional[datetime]:
        """Get the newest server timestamp already pulled for a type.

        Returns:
            Watermark, or None if never synced
        """
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT last_synced_at FROM sync_cursors WHERE entity_type = ? AND owner_id = ?",
                (EntityType(entity_type).value, owner_id),
            )
            row = cursor.fetchone()
            if row:
                return parse_timestamp(row[0])
            return None

    def set_cursor(self, entity_type: EntityType, owner_id: str, last_synced_at: datetime) -> None:
        """Advance the watermark for a type."""
        now = format_timestamp(utcnow())
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO sync_cursors (entity_type, owner_id, last_synced_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(entity_type, owner_id) DO UPDATE SET
                    last_synced_at = excluded.last_synced_at,
                    updated_at = excluded.updated_at
                """,
                (EntityType(entity_type).value, owner_id, format_timestamp(last_synced_at), now),
            )

    def get_all_cursors(self, owner_id: str) -> dict[EntityType, datetime]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT entity_type, last_synced_at FROM sync_cursors WHERE owner_id = ?",
                (owner_id,),
            )
            return {
                EntityType(row["entity_type"]): parse_timestamp(row["last_synced_at"])
                for row in cursor.fetchall()
            }

    # -- ownership ----------------------------------------------------------

    def purge_owner(self, owner_id: str) -> int:
        """Delete every local row, pending change and cursor of an owner."""
        removed = 0
        with self._transaction() as cursor:
            for table in ("completions", "habits", "routines", "outbox", "sync_cursors"):
                cursor.execute(f"DELETE FROM {table} WHERE owner_id = ?", (owner_id,))
                removed += cursor.rowcount
        logger.info(f"Purged {removed} local rows for owner {owner_id}")
        return removed
