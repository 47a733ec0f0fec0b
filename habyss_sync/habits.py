"""Habit operations for the UI, local-first with remote-only and in-memory fallbacks."""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date, timedelta
from enum import Enum
from typing import Callable, Optional, Union

from .capabilities import Capabilities, NoopWidgetBridge, WidgetBridge, WidgetData
from .events import (
    CompletionChanged,
    EventBus,
    HabitCreated,
    HabitDeleted,
    HabitUpdated,
    RoutineChanged,
)
from .store.database import LocalStore
from .store.models import (
    Completion,
    EntityType,
    Habit,
    HabitCategory,
    Routine,
    RoutineStep,
    normalize_date,
    utcnow,
)
from .sync.http_client import RemoteStoreError
from .sync.remote import RemoteStoreClient

__all__ = ["HabitService", "StorageMode", "StreakData", "LOCAL_OWNER"]

logger = logging.getLogger(__name__)

# Owner of rows created while signed out
LOCAL_OWNER = "local"

STREAK_WINDOW_DAYS = 90


class StorageMode(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    MEMORY = "memory"


@dataclass
class StreakData:
    current_streak: int = 0
    best_streak: int = 0
    perfect_days: int = 0
    total_completed: int = 0


class HabitService:
    """Habit CRUD and statistics for one signed-in (or local) user.

    Reads and writes go to the local store when it is open. Without it, a
    signed-in user talks to the backend directly; with neither, everything
    lives in memory for the life of the process. No call raises for a
    backend failure: errors are logged and the cached view is returned.
    """

    def __init__(
        self,
        store: Optional[LocalStore] = None,
        remote: Optional[RemoteStoreClient] = None,
        events: Optional[EventBus] = None,
        capabilities: Optional[Capabilities] = None,
        widgets: Optional[WidgetBridge] = None,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.remote = remote
        self.events = events or EventBus()
        self.capabilities = capabilities or Capabilities()
        self.widgets = widgets or NoopWidgetBridge()
        self._today = today
        self.mode = StorageMode.MEMORY
        self.owner_id = LOCAL_OWNER
        self._habits: dict[str, Habit] = {}
        self._completions: dict[str, dict[str, bool]] = {}
        self._routines: dict[str, Routine] = {}

    def init(self, owner_id: Optional[str] = None) -> StorageMode:
        """Pick the storage mode for a user. Call again after sign-in/out."""
        self.owner_id = owner_id or LOCAL_OWNER
        if self.store is not None and self.store.is_open:
            self.mode = StorageMode.LOCAL
        elif self.remote is not None and owner_id and self.remote.user_id == owner_id:
            self.mode = StorageMode.REMOTE
        else:
            self.mode = StorageMode.MEMORY
        self._clear_cache()
        logger.info(f"Habit service using {self.mode.value} storage for {self.owner_id}")
        return self.mode

    def teardown(self) -> None:
        self._clear_cache()
        self.mode = StorageMode.MEMORY
        self.owner_id = LOCAL_OWNER

    def _clear_cache(self) -> None:
        self._habits.clear()
        self._completions.clear()
        self._routines.clear()

    def _today_str(self) -> str:
        return self._today().isoformat()

    # -- habits -------------------------------------------------------------

    def get_habits(self) -> list[Habit]:
        if self.mode is StorageMode.LOCAL:
            return self.store.get_habits(self.owner_id)

        if self.mode is StorageMode.REMOTE:
            try:
                records = self.remote.fetch_since(EntityType.HABITS, None, self.owner_id)
            except RemoteStoreError as e:
                logger.warning(f"Failed to load habits from backend, using cache: {e}")
            else:
                self._habits = {
                    r.entity_id: Habit.from_dict(r.data) for r in records if not r.deleted
                }

        return sorted(self._habits.values(), key=lambda h: h.created_at, reverse=True)

    def get_goals(self) -> list[Habit]:
        return [h for h in self.get_habits() if h.is_goal]

    def get_habit(self, habit_id: str) -> Optional[Habit]:
        if self.mode is StorageMode.LOCAL:
            habit = self.store.get_habit(habit_id)
            return habit if habit and not habit.deleted else None
        return self._habits.get(habit_id)

    def add_habit(
        self,
        name: str,
        category: Union[str, HabitCategory] = HabitCategory.MISC,
        is_goal: bool = False,
        goal_id: Optional[str] = None,
        **fields,
    ) -> Habit:
        """Create a habit (or a goal when ``is_goal`` is set)."""
        habit = Habit(
            id=str(uuid.uuid4()),
            owner_id=self.owner_id,
            name=name.strip() or "New Habit",
            category=category,
            is_goal=is_goal,
            goal_id=goal_id,
            **fields,
        )
        if self.mode is StorageMode.LOCAL:
            stored = self.store.upsert_habit(habit)
        else:
            if habit.goal_id and not self._is_cached_goal(habit.goal_id):
                logger.warning(f"Habit {habit.id} references unknown goal {habit.goal_id}; clearing goal_id")
                habit.goal_id = None
            stored = self._remote_upsert_habit(habit)
            self.events.publish(
                HabitCreated(habit_id=stored.id, owner_id=stored.owner_id, name=stored.name, is_goal=stored.is_goal)
            )
        self._sync_widgets()
        return stored

    def update_habit(self, habit_id: str, **changes) -> Optional[Habit]:
        """Apply field changes to an existing habit.

        Returns:
            The updated habit, or None if it does not exist
        """
        existing = self.get_habit(habit_id)
        if existing is None:
            logger.warning(f"Cannot update missing habit {habit_id}")
            return None

        changes.pop("id", None)
        changes.pop("owner_id", None)
        updated = replace(existing, **changes)

        if self.mode is StorageMode.LOCAL:
            stored = self.store.upsert_habit(updated)
        else:
            if updated.goal_id and not self._is_cached_goal(updated.goal_id, exclude=habit_id):
                logger.warning(f"Habit {habit_id} references unknown goal {updated.goal_id}; clearing goal_id")
                updated.goal_id = None
            updated.updated_at = utcnow()
            stored = self._remote_upsert_habit(updated)
            self.events.publish(HabitUpdated(habit_id=stored.id, owner_id=stored.owner_id))
        self._sync_widgets()
        return stored

    def remove_habit(self, habit_id: str) -> bool:
        """Delete a habit everywhere, with its completions and routine steps."""
        if self.mode is StorageMode.LOCAL:
            removed = self.store.delete_habit(habit_id)
        else:
            removed = self._habits.pop(habit_id, None) is not None
            if removed:
                for day in self._completions.values():
                    day.pop(habit_id, None)
                for routine_id, routine in list(self._routines.items()):
                    if any(s.habit_id == habit_id for s in routine.steps):
                        self._routines[routine_id] = routine.without_habit(habit_id)
                for child in self._habits.values():
                    if child.goal_id == habit_id:
                        child.goal_id = None
                if self.mode is StorageMode.REMOTE:
                    self._remote_call(lambda: self.remote.delete(EntityType.HABITS, habit_id))
                self.events.publish(HabitDeleted(habit_id=habit_id, owner_id=self.owner_id))
        if removed:
            self._sync_widgets()
        return removed

    def remove_goal_with_linked_habits(self, goal_id: str) -> int:
        """Delete a goal and every habit linked to it.

        Returns:
            Number of habits removed, the goal included
        """
        linked = [h.id for h in self.get_habits() if h.goal_id == goal_id]
        removed = sum(1 for habit_id in linked if self.remove_habit(habit_id))
        if self.remove_habit(goal_id):
            removed += 1
        logger.info(f"Removed goal {goal_id} with {len(linked)} linked habits")
        return removed

    def _is_cached_goal(self, goal_id: str, exclude: Optional[str] = None) -> bool:
        goal = self._habits.get(goal_id)
        return bool(goal and goal.is_goal and goal.id != exclude)

    def _remote_upsert_habit(self, habit: Habit) -> Habit:
        self._habits[habit.id] = habit
        if self.mode is StorageMode.REMOTE:
            record = self._remote_call(lambda: self.remote.push(EntityType.HABITS, habit.to_dict()))
            if record is not None and not record.deleted:
                habit = Habit.from_dict(record.data)
                self._habits[habit.id] = habit
        return habit

    def _remote_call(self, func):
        try:
            return func()
        except RemoteStoreError as e:
            logger.warning(f"Backend write failed, keeping change in memory only: {e}")
            return None

    # -- completions --------------------------------------------------------

    def get_completions(self, day: Optional[Union[str, date]] = None) -> dict[str, bool]:
        """Get habits completed on a day (today by default)."""
        day_str = normalize_date(day) if day else self._today_str()
        if self.mode is StorageMode.LOCAL:
            return self.store.get_completions(day_str, self.owner_id)
        if self.mode is StorageMode.REMOTE:
            self._load_remote_completions(day_str, day_str)
        return {k: True for k, v in self._completions.get(day_str, {}).items() if v}

    def set_completion(self, habit_id: str, day: Optional[Union[str, date]], done: bool) -> None:
        day_str = normalize_date(day) if day else self._today_str()
        if self.mode is StorageMode.LOCAL:
            self.store.set_completion(habit_id, day_str, done, self.owner_id)
        else:
            current = self._completions.setdefault(day_str, {})
            if current.get(habit_id, False) == bool(done) and habit_id in current:
                return
            current[habit_id] = bool(done)
            if self.mode is StorageMode.REMOTE:
                completion = Completion(habit_id=habit_id, date=day_str, done=bool(done), owner_id=self.owner_id)
                self._remote_call(lambda: self.remote.push(EntityType.COMPLETIONS, completion.to_dict()))
            self.events.publish(
                CompletionChanged(habit_id=habit_id, date=day_str, done=bool(done), owner_id=self.owner_id)
            )
        self._sync_widgets()

    def toggle_completion(self, habit_id: str, day: Optional[Union[str, date]] = None) -> dict[str, bool]:
        """Flip a habit's completion for a day.

        Returns:
            The day's completions after the change
        """
        day_str = normalize_date(day) if day else self._today_str()
        done = not self.get_completions(day_str).get(habit_id, False)
        self.set_completion(habit_id, day_str, done)
        return self.get_completions(day_str)

    def _load_remote_completions(self, start: str, end: str) -> None:
        try:
            records = self.remote.fetch_completions_between(self.owner_id, start, end)
        except RemoteStoreError as e:
            logger.warning(f"Failed to load completions from backend, using cache: {e}")
            return
        current = date.fromisoformat(start)
        last = date.fromisoformat(end)
        while current <= last:
            self._completions[current.isoformat()] = {}
            current += timedelta(days=1)
        for record in records:
            completion = Completion.from_dict(record.data)
            self._completions.setdefault(completion.date, {})[completion.habit_id] = completion.done

    def _completions_between(self, start: str, end: str) -> dict[str, list[str]]:
        if self.mode is StorageMode.LOCAL:
            return self.store.get_completions_between(start, end, self.owner_id)
        if self.mode is StorageMode.REMOTE:
            self._load_remote_completions(start, end)
        return {
            day: [habit_id for habit_id, done in habits.items() if done]
            for day, habits in self._completions.items()
            if start <= day <= end
        }

    # -- routines -----------------------------------------------------------

    def get_routines(self) -> list[Routine]:
        if self.mode is StorageMode.LOCAL:
            return self.store.get_routines(self.owner_id)
        return sorted(self._routines.values(), key=lambda r: r.name)

    def save_routine(
        self,
        name: str,
        steps: list[RoutineStep],
        time_of_day: str = "anytime",
        routine_id: Optional[str] = None,
    ) -> Routine:
        """Create or replace a routine."""
        routine = Routine(
            id=routine_id or str(uuid.uuid4()),
            owner_id=self.owner_id,
            name=name,
            steps=list(steps),
            time_of_day=time_of_day,
        )
        if self.mode is StorageMode.LOCAL:
            return self.store.upsert_routine(routine)

        self._routines[routine.id] = routine
        if self.mode is StorageMode.REMOTE:
            self._remote_call(lambda: self.remote.push(EntityType.ROUTINES, routine.to_dict()))
        self.events.publish(RoutineChanged(routine_id=routine.id, owner_id=self.owner_id))
        return routine

    def remove_routine(self, routine_id: str) -> bool:
        if self.mode is StorageMode.LOCAL:
            return self.store.delete_routine(routine_id)

        if self._routines.pop(routine_id, None) is None:
            return False
        if self.mode is StorageMode.REMOTE:
            self._remote_call(lambda: self.remote.delete(EntityType.ROUTINES, routine_id))
        self.events.publish(RoutineChanged(routine_id=routine_id, owner_id=self.owner_id, deleted=True))
        return True

    # -- statistics ---------------------------------------------------------

    def get_last_n_days_completions(self, days: int) -> list[tuple[str, list[str]]]:
        """Get completed habit ids per day, oldest first, ending today."""
        end = self._today()
        start = end - timedelta(days=days - 1)
        history = self._completions_between(start.isoformat(), end.isoformat())
        return [
            (day.isoformat(), history.get(day.isoformat(), []))
            for day in (start + timedelta(days=i) for i in range(days))
        ]

    def get_streak_data(self) -> StreakData:
        """Streaks over the last 90 days.

        A day counts toward a streak when anything was completed. Today
        does not break the current streak until it is over.
        """
        habit_count = len([h for h in self.get_habits() if not h.is_goal])
        if habit_count == 0:
            return StreakData()

        history = self.get_last_n_days_completions(STREAK_WINDOW_DAYS)
        data = StreakData()
        run = 0
        for _, completed in history:
            data.total_completed += len(completed)
            if completed and len(completed) >= habit_count:
                data.perfect_days += 1
            if completed:
                run += 1
                data.best_streak = max(data.best_streak, run)
            else:
                run = 0

        for index in range(len(history) - 1, -1, -1):
            if history[index][1]:
                data.current_streak += 1
            elif index == len(history) - 1:
                continue
            else:
                break
        return data

    def goal_progress(self, goal: Habit) -> int:
        """Percentage of scheduled linked-habit days completed between goal start and target."""
        if not goal.is_goal:
            return 0
        linked = [h for h in self.get_habits() if h.goal_id == goal.id and not h.is_archived]
        if not linked:
            return 0

        start = goal.created_at.date()
        end = date.fromisoformat(normalize_date(goal.target_date)) if goal.target_date else self._today()
        if start > end:
            return 0

        history = self._completions_between(start.isoformat(), end.isoformat())
        expected = 0
        completed = 0
        day = start
        while day <= end:
            done_ids = history.get(day.isoformat(), [])
            for habit in linked:
                if habit.is_scheduled_for(day):
                    expected += 1
                    if habit.id in done_ids:
                        completed += 1
            day += timedelta(days=1)

        if expected == 0:
            return 0
        return round(completed / expected * 100)

    def get_heatmap_data(self, days: int = 365) -> dict[str, int]:
        """Completion count per day for the last ``days`` days (days with none omitted)."""
        end = self._today()
        start = end - timedelta(days=days)
        history = self._completions_between(start.isoformat(), end.isoformat())
        return {day: len(ids) for day, ids in history.items() if ids}

    def _sync_widgets(self) -> None:
        if not self.capabilities.supports_widgets:
            return
        try:
            habits = [h for h in self.get_habits() if not h.is_archived and not h.is_goal]
            today = self.get_completions()
            self.widgets.update_timeline(
                WidgetData(
                    total=len(habits),
                    completed=sum(1 for h in habits if today.get(h.id)),
                    habits=[{"id": h.id, "name": h.name, "is_completed": bool(today.get(h.id))} for h in habits],
                )
            )
        except Exception as e:
            logger.warning(f"Widget sync failed: {e}")
