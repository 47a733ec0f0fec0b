"""Store module - embedded SQLite store and domain records."""

from .database import LocalStore, StorageInitError
from .models import (
    Completion,
    EntityType,
    FocusMode,
    Habit,
    HabitCategory,
    OutboxEntry,
    OutboxOp,
    Routine,
    RoutineStep,
)

__all__ = [
    "LocalStore",
    "StorageInitError",
    "Completion",
    "EntityType",
    "FocusMode",
    "Habit",
    "HabitCategory",
    "OutboxEntry",
    "OutboxOp",
    "Routine",
    "RoutineStep",
]
