"""Tests for domain models and platform capabilities."""

from datetime import date, datetime, timezone

import pytest

from habyss_sync.capabilities import (
    Capabilities,
    NoopWidgetBridge,
    WidgetBridge,
    detect_capabilities,
    widget_bridge_for,
)
from habyss_sync.store.models import (
    Completion,
    FocusMode,
    Habit,
    HabitCategory,
    Routine,
    RoutineStep,
    normalize_date,
    parse_timestamp,
)


class TestHelpers:
    """Tests for timestamp and date helpers."""

    def test_parse_timestamp_z_suffix(self):
        """Test parsing a Z-suffixed timestamp."""
        assert parse_timestamp("2026-03-01T10:00:00Z") == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_parse_timestamp_naive_is_utc(self):
        """Test that naive timestamps are treated as UTC."""
        assert parse_timestamp("2026-03-01T10:00:00").tzinfo is not None
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_parse_timestamp_converts_offsets(self):
        """Test that offsets are normalized to UTC."""
        assert parse_timestamp("2026-03-01T12:00:00+02:00") == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_normalize_date(self):
        """Test normalizing dates from strings, dates and datetimes."""
        assert normalize_date("2026-03-01T23:59:00Z") == "2026-03-01"
        assert normalize_date(date(2026, 3, 1)) == "2026-03-01"
        assert normalize_date(datetime(2026, 3, 1, 8, 0)) == "2026-03-01"

    def test_normalize_date_rejects_garbage(self):
        """Test that invalid dates raise."""
        with pytest.raises(ValueError):
            normalize_date("yesterday")


class TestHabit:
    """Tests for Habit."""

    def test_category_parse(self):
        """Test category parsing with fallback."""
        assert HabitCategory.parse("Fitness") is HabitCategory.FITNESS
        assert HabitCategory.parse("astrology") is HabitCategory.MISC
        assert HabitCategory.parse(None) is HabitCategory.MISC

    def test_from_dict_backend_row(self):
        """Test building a habit from a backend row."""
        habit = Habit.from_dict(
            {
                "id": "h1",
                "user_id": "u1",
                "name": "Run",
                "category": "fitness",
                "is_goal": False,
                "task_days": ["mon", "wed"],
                "created_at": "2026-03-01T08:00:00Z",
                "updated_at": "2026-03-02T08:00:00Z",
            }
        )

        assert habit.owner_id == "u1"
        assert habit.category is HabitCategory.FITNESS
        assert habit.task_days == ["mon", "wed"]
        assert habit.to_dict()["user_id"] == "u1"

    def test_from_dict_task_days_json(self):
        """Test that task_days stored as JSON text are decoded."""
        habit = Habit.from_dict({"id": "h1", "owner_id": "u1", "task_days": '["sat"]'})

        assert habit.task_days == ["sat"]
        assert habit.name == "New Habit"

    def test_is_scheduled_for(self):
        """Test schedule checks against created_at, target_date and task_days."""
        habit = Habit(
            id="h1",
            owner_id="u1",
            name="Swim",
            created_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
            task_days=["mon", "wed"],
            target_date="2026-03-11",
        )

        assert habit.is_scheduled_for("2026-03-02") is True  # Monday
        assert habit.is_scheduled_for("2026-03-03") is False  # Tuesday
        assert habit.is_scheduled_for("2026-03-01") is False  # before creation
        assert habit.is_scheduled_for("2026-03-16") is False  # after target


class TestCompletion:
    """Tests for Completion."""

    def test_key(self):
        """Test the natural key of a completion."""
        completion = Completion(habit_id="h1", date="2026-03-01T10:00:00", done=True, owner_id="u1")

        assert completion.date == "2026-03-01"
        assert completion.key == "h1_2026-03-01"

    def test_from_dict_accepts_both_flags(self):
        """Test that both backend and local flag names are read."""
        assert Completion.from_dict({"habit_id": "h1", "date": "2026-03-01", "completed": False}).done is False
        assert Completion.from_dict({"habit_id": "h1", "date": "2026-03-01", "done": True}).done is True
        assert Completion.from_dict({"habit_id": "h1", "date": "2026-03-01"}).done is True


class TestRoutine:
    """Tests for Routine."""

    def test_without_habit(self):
        """Test removing a habit's steps from a routine."""
        routine = Routine(
            id="r1",
            owner_id="u1",
            name="Morning",
            steps=[RoutineStep("h1"), RoutineStep("h2", FocusMode.POMODORO, 1500)],
        )

        trimmed = routine.without_habit("h1")

        assert [s.habit_id for s in trimmed.steps] == ["h2"]
        assert len(routine.steps) == 2

    def test_from_dict_steps(self):
        """Test decoding steps from a backend row."""
        routine = Routine.from_dict(
            {
                "id": "r1",
                "user_id": "u1",
                "name": "Evening",
                "steps": [{"habit_id": "h1", "focus_mode": "stopwatch"}],
            }
        )

        assert routine.steps[0].focus_mode is FocusMode.STOPWATCH
        assert routine.steps[0].duration_seconds == 300
        assert routine.time_of_day == "anytime"


class TestCapabilities:
    """Tests for capability detection."""

    def test_desktop_has_no_native_bridges(self):
        """Test that non-mobile platforms report no native bridges."""
        capabilities = detect_capabilities(local_store_available=True, platform_name="linux")

        assert capabilities == Capabilities(supports_local_store=True)

    def test_ios_has_native_bridges(self):
        """Test that iOS reports widget, health and shield support."""
        capabilities = detect_capabilities(local_store_available=False, platform_name="ios")

        assert capabilities.supports_widgets is True
        assert capabilities.supports_health_sync is True
        assert capabilities.supports_screen_time_shield is True
        assert capabilities.supports_local_store is False

    def test_widget_bridge_for(self):
        """Test that the no-op bridge is used without widget support."""
        real = NoopWidgetBridge()

        assert widget_bridge_for(Capabilities(supports_widgets=True), real) is real
        assert isinstance(widget_bridge_for(Capabilities(), real), NoopWidgetBridge)
        assert widget_bridge_for(Capabilities(), real) is not real
        assert isinstance(real, WidgetBridge)
