"""Domain records held by the local store and exchanged with the backend."""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, Union

__all__ = [
    "HabitCategory",
    "EntityType",
    "OutboxOp",
    "FocusMode",
    "Habit",
    "Completion",
    "Routine",
    "RoutineStep",
    "OutboxEntry",
    "ALL_DAYS",
    "DEFAULT_COLOR",
    "utcnow",
    "parse_timestamp",
    "format_timestamp",
    "normalize_date",
]

logger = logging.getLogger(__name__)

ALL_DAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
DEFAULT_COLOR = "#6B46C1"


class HabitCategory(str, Enum):
    HEALTH = "health"
    FITNESS = "fitness"
    WORK = "work"
    PERSONAL = "personal"
    MINDFULNESS = "mindfulness"
    MISC = "misc"
    PRODUCTIVITY = "productivity"
    LEARNING = "learning"
    CREATIVITY = "creativity"
    SOCIAL = "social"
    BODY = "body"
    WEALTH = "wealth"
    HEART = "heart"
    MIND = "mind"
    SOUL = "soul"
    PLAY = "play"
    FAMILY = "family"
    FINANCE = "finance"

    @classmethod
    def parse(cls, value: Union[str, "HabitCategory", None]) -> "HabitCategory":
        """Parse a category, falling back to MISC for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "misc").strip().lower())
        except ValueError:
            logger.warning(f"Unknown habit category {value!r}, using misc")
            return cls.MISC


class EntityType(str, Enum):
    """Synchronized entity types, in sync order."""

    HABITS = "habits"
    COMPLETIONS = "completions"
    ROUTINES = "routines"


class OutboxOp(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class FocusMode(str, Enum):
    POMODORO = "pomodoro"
    STOPWATCH = "stopwatch"
    COUNTDOWN = "countdown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def normalize_date(value: Union[str, date, datetime]) -> str:
    """Return a calendar day as YYYY-MM-DD."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(value.strip()[:10]).isoformat()


def _load_json(value, default):
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value) if value else default
    return value


@dataclass
class Habit:
    """A tracked habit; doubles as a goal when ``is_goal`` is set."""

    id: str
    owner_id: str
    name: str
    category: HabitCategory = HabitCategory.MISC
    is_goal: bool = False
    goal_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    description: Optional[str] = None
    icon: Optional[str] = None
    color: str = DEFAULT_COLOR
    task_days: list[str] = field(default_factory=lambda: list(ALL_DAYS))
    target_date: Optional[str] = None
    is_archived: bool = False
    deleted: bool = False

    def __post_init__(self) -> None:
        self.category = HabitCategory.parse(self.category)

    def is_scheduled_for(self, day: Union[str, date]) -> bool:
        """Check whether the habit is due on a calendar day."""
        day_str = normalize_date(day)
        if day_str < self.created_at.date().isoformat():
            return False
        if self.target_date and day_str > normalize_date(self.target_date):
            return False
        weekday = ALL_DAYS[date.fromisoformat(day_str).weekday()]
        if self.task_days:
            return weekday in {d.lower() for d in self.task_days}
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.owner_id,
            "name": self.name,
            "category": self.category.value,
            "is_goal": self.is_goal,
            "goal_id": self.goal_id,
            "description": self.description,
            "icon": self.icon,
            "color": self.color,
            "task_days": list(self.task_days),
            "target_date": self.target_date,
            "is_archived": self.is_archived,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Habit":
        return cls(
            id=data["id"],
            owner_id=data.get("user_id") or data.get("owner_id") or "",
            name=data.get("name") or "New Habit",
            category=HabitCategory.parse(data.get("category")),
            is_goal=bool(data.get("is_goal")),
            goal_id=data.get("goal_id"),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            description=data.get("description"),
            icon=data.get("icon"),
            color=data.get("color") or DEFAULT_COLOR,
            task_days=list(_load_json(data.get("task_days"), list(ALL_DAYS))),
            target_date=data.get("target_date"),
            is_archived=bool(data.get("is_archived")),
            deleted=bool(data.get("deleted")),
        )

    @classmethod
    def from_row(cls, row) -> "Habit":
        """Create from a ``habits`` table row."""
        return cls.from_dict(dict(row))


@dataclass
class Completion:
    """Whether a habit was done on a calendar day."""

    habit_id: str
    date: str
    done: bool
    owner_id: str
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.date = normalize_date(self.date)

    @property
    def key(self) -> str:
        return self.make_key(self.habit_id, self.date)

    @staticmethod
    def make_key(habit_id: str, day: str) -> str:
        return f"{habit_id}_{normalize_date(day)}"

    @staticmethod
    def split_key(key: str) -> tuple[str, str]:
        """Split a completion key into (habit_id, date).

        Dates never contain an underscore, so the last one is the separator.
        """
        habit_id, _, day = key.rpartition("_")
        return habit_id, day

    def to_dict(self) -> dict:
        return {
            "habit_id": self.habit_id,
            "date": self.date,
            "completed": self.done,
            "user_id": self.owner_id,
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Completion":
        done = data["completed"] if "completed" in data else data.get("done", True)
        return cls(
            habit_id=data["habit_id"],
            date=data["date"],
            done=bool(done),
            owner_id=data.get("user_id") or data.get("owner_id") or "",
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
        )

    @classmethod
    def from_row(cls, row) -> "Completion":
        return cls.from_dict(dict(row))


@dataclass
class RoutineStep:
    """One habit in a guided routine session."""

    habit_id: str
    focus_mode: FocusMode = FocusMode.COUNTDOWN
    duration_seconds: int = 300

    def to_dict(self) -> dict:
        return {
            "habit_id": self.habit_id,
            "focus_mode": FocusMode(self.focus_mode).value,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RoutineStep":
        return cls(
            habit_id=data["habit_id"],
            focus_mode=FocusMode(data.get("focus_mode") or FocusMode.COUNTDOWN.value),
            duration_seconds=int(data.get("duration_seconds") or 300),
        )


@dataclass
class Routine:
    """An ordered sequence of habits played back as one session."""

    id: str
    owner_id: str
    name: str
    steps: list[RoutineStep] = field(default_factory=list)
    time_of_day: str = "anytime"
    updated_at: datetime = field(default_factory=utcnow)
    deleted: bool = False

    def without_habit(self, habit_id: str) -> "Routine":
        return replace(self, steps=[s for s in self.steps if s.habit_id != habit_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.owner_id,
            "name": self.name,
            "steps": [s.to_dict() for s in self.steps],
            "time_of_day": self.time_of_day,
            "updated_at": format_timestamp(self.updated_at),
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Routine":
        return cls(
            id=data["id"],
            owner_id=data.get("user_id") or data.get("owner_id") or "",
            name=data.get("name") or "Routine",
            steps=[RoutineStep.from_dict(s) for s in _load_json(data.get("steps"), [])],
            time_of_day=data.get("time_of_day") or "anytime",
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            deleted=bool(data.get("deleted")),
        )

    @classmethod
    def from_row(cls, row) -> "Routine":
        return cls.from_dict(dict(row))


@dataclass
class OutboxEntry:
    """A pending local mutation awaiting push."""

    seq: int
    entity_type: EntityType
    entity_id: str
    owner_id: str
    op: OutboxOp
    payload: Optional[dict]
    enqueued_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "OutboxEntry":
        """Create from an ``outbox`` table row."""
        return cls(
            seq=row["seq"],
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            owner_id=row["owner_id"],
            op=OutboxOp(row["op"]),
            payload=json.loads(row["payload"]) if row["payload"] else None,
            enqueued_at=parse_timestamp(row["enqueued_at"]),
            attempts=row["attempts"] or 0,
            last_error=row["last_error"],
        )
