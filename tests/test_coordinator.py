"""Tests for the sync coordinator and app session wiring."""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import Mock, patch

from apscheduler.jobstores.base import JobLookupError

from habyss_sync.auth.keychain import KeychainManager, Session
from habyss_sync.config import Config, SyncSettings
from habyss_sync.habits import LOCAL_OWNER, StorageMode
from habyss_sync.main import SYNC_JOB_ID, HabyssSyncApp, SingleInstanceLock, SyncCoordinator
from habyss_sync.store.models import Habit
from habyss_sync.sync.http_client import AuthError, NetworkError
from habyss_sync.sync.sync_engine import SyncStats


class TestSyncCoordinator:
    """Tests for SyncCoordinator."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config = Config(sync=SyncSettings(interval_seconds=30))
        self.engine = Mock()
        self.engine.sync_pass.return_value = SyncStats()
        self.sessions = Mock()
        self.sessions.user_id = "u1"
        self.remote = Mock()
        self.scheduler = Mock()
        self.scheduler.running = True
        self.coordinator = SyncCoordinator(
            self.config, self.engine, self.sessions, self.remote, scheduler=self.scheduler
        )

    def _job_ids(self) -> list:
        return [c.kwargs.get("id") for c in self.scheduler.add_job.call_args_list]

    def test_start_sync_service(self):
        """Test that starting adds the interval job and an immediate pass."""
        self.coordinator.start_sync_service()

        assert self.coordinator.is_running
        assert self._job_ids() == [SYNC_JOB_ID, "startup_sync"]
        trigger = self.scheduler.add_job.call_args_list[0].kwargs["trigger"]
        assert trigger.interval.total_seconds() == 30
        self.scheduler.start.assert_not_called()

    def test_start_without_immediate_pass(self):
        """Test that the startup pass can be left to the caller."""
        self.coordinator.start_sync_service(immediate=False)

        assert self.coordinator.is_running
        assert self._job_ids() == [SYNC_JOB_ID]

    def test_start_starts_scheduler(self):
        """Test that a stopped scheduler is started."""
        self.scheduler.running = False

        self.coordinator.start_sync_service()

        self.scheduler.start.assert_called_once()

    def test_start_is_idempotent(self):
        """Test that starting twice adds the job once."""
        self.coordinator.start_sync_service()
        self.coordinator.start_sync_service()

        assert self._job_ids().count(SYNC_JOB_ID) == 1

    def test_stop_sync_service(self):
        """Test that stopping removes the job, even if it is already gone."""
        self.coordinator.start_sync_service()
        self.scheduler.remove_job.side_effect = JobLookupError(SYNC_JOB_ID)

        self.coordinator.stop_sync_service()

        assert self.coordinator.is_running is False
        self.scheduler.remove_job.assert_called_once_with(SYNC_JOB_ID)

    def test_trigger_requires_running_scheduler(self):
        """Test that one-off passes are only scheduled on a running scheduler."""
        self.scheduler.running = False

        self.coordinator.trigger_sync("network_sync")

        self.scheduler.add_job.assert_not_called()

    def test_pause_and_resume(self):
        """Test that pause stops the timer and resume triggers a pass."""
        self.scheduler.get_job.return_value = Mock()

        self.coordinator.pause()
        self.coordinator.resume()

        self.engine.pause.assert_called_once()
        self.engine.resume.assert_called_once()
        self.scheduler.pause_job.assert_called_once_with(SYNC_JOB_ID)
        self.scheduler.resume_job.assert_called_once_with(SYNC_JOB_ID)
        assert "resume_sync" in self._job_ids()

    def test_do_sync_skips_when_signed_out(self):
        """Test that no pass runs without a user."""
        self.sessions.user_id = None

        self.coordinator._do_sync()

        self.engine.sync_pass.assert_not_called()

    def test_do_sync_skips_when_offline(self):
        """Test that no pass runs while the network is down."""
        self.coordinator.paused_by_network = True

        self.coordinator._do_sync()

        self.engine.sync_pass.assert_not_called()

    def test_network_failure_backs_off(self):
        """Test that network failures stretch the interval and success restores it."""
        self.scheduler.get_job.return_value = Mock()
        self.engine.sync_pass.return_value = SyncStats(network_failures=1, errors=["offline"])

        self.coordinator._do_sync()

        assert self.coordinator.backoff.failures == 1
        trigger = self.scheduler.reschedule_job.call_args.kwargs["trigger"]
        assert 45 <= trigger.interval.total_seconds() <= 75

        self.engine.sync_pass.return_value = SyncStats()
        self.coordinator._do_sync()

        assert self.coordinator.backoff.failures == 0
        trigger = self.scheduler.reschedule_job.call_args.kwargs["trigger"]
        assert trigger.interval.total_seconds() == 30

    def test_rejected_rows_do_not_back_off(self):
        """Test that permanent push failures keep the regular interval."""
        self.engine.sync_pass.return_value = SyncStats(failed=1, errors=["API error (400)"])

        self.coordinator._do_sync()

        assert self.coordinator.backoff.failures == 0
        self.scheduler.reschedule_job.assert_not_called()

    def test_unexpected_error_backs_off(self):
        """Test that an unexpected engine failure is logged and backed off."""
        self.scheduler.get_job.return_value = Mock()
        self.engine.sync_pass.side_effect = RuntimeError("disk I/O error")

        self.coordinator._do_sync()

        assert self.coordinator.backoff.failures == 1

    def test_auth_error_refreshes_and_retries_once(self):
        """Test that an auth failure refreshes the session and schedules one retry."""
        self.engine.sync_pass.side_effect = AuthError("JWT expired", 401)
        self.sessions.refresh.return_value = Session("fresh", "refresh", "u1")

        self.coordinator._do_sync()

        self.remote.set_session.assert_called_once_with("fresh", "u1")
        assert "auth_retry_sync" in self._job_ids()

        self.coordinator._do_sync()

        assert self.sessions.refresh.call_count == 1
        self.sessions.sign_out.assert_not_called()

    def test_rejected_refresh_signs_out(self):
        """Test that a rejected refresh token signs the user out."""
        self.engine.sync_pass.side_effect = AuthError("JWT expired", 401)
        self.sessions.refresh.side_effect = AuthError("invalid_grant", 400)

        self.coordinator._do_sync()

        self.sessions.sign_out.assert_called_once()

    def test_offline_refresh_waits(self):
        """Test that a refresh that cannot reach the backend keeps the session."""
        self.engine.sync_pass.side_effect = AuthError("JWT expired", 401)
        self.sessions.refresh.side_effect = NetworkError("Cannot connect")

        self.coordinator._do_sync()

        self.sessions.sign_out.assert_not_called()

    def test_full_sync(self):
        """Test blocking full sync for the signed-in user."""
        self.engine.full_sync.return_value = SyncStats(mode="full", pushed=2)

        stats = self.coordinator.full_sync()

        assert stats.pushed == 2
        self.engine.full_sync.assert_called_once_with("u1")

    def test_full_sync_signed_out(self):
        """Test that full sync is skipped without a user."""
        self.sessions.user_id = None

        assert self.coordinator.full_sync() is None
        self.engine.full_sync.assert_not_called()


class TestHabyssSyncApp:
    """Tests for HabyssSyncApp session handling."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.patches = [
            patch("habyss_sync.main.setup_logging"),
            patch.object(Config, "get_data_dir", return_value=Path(self.temp_dir)),
        ]
        for p in self.patches:
            p.start()
        self.keychain = Mock(spec=KeychainManager)
        self.keychain.load.return_value = None
        self.config = Config(supabase_url="https://test.supabase.co", sync=SyncSettings(purge_on_sign_out=True))
        self.app = HabyssSyncApp(config=self.config, keychain=self.keychain)
        self.app.coordinator.scheduler = Mock(running=True)

    def teardown_method(self):
        """Clean up."""
        self.app._shutdown()
        for p in self.patches:
            p.stop()

    def _job_ids(self) -> list:
        return [c.kwargs.get("id") for c in self.app.coordinator.scheduler.add_job.call_args_list]

    def test_start_signed_out_runs_local_only(self):
        """Test that starting without a session opens the store and does not sync."""
        with patch.object(self.app.coordinator, "full_sync") as full_sync:
            self.app.start()

        assert self.app.local_store_ready
        assert self.app.habits.mode is StorageMode.LOCAL
        assert self.app.habits.owner_id == LOCAL_OWNER
        assert self.app.coordinator.is_running
        assert self._job_ids() == [SYNC_JOB_ID]
        full_sync.assert_not_called()

    def test_start_signed_in_starts_loop_then_full_syncs(self):
        """Test that the sync loop is started before the blocking full sync."""
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        self.keychain.load.return_value = Session("token", "refresh", "u1", expires_at=expires)
        order = []
        self.app.coordinator.scheduler.add_job.side_effect = lambda *a, **kw: order.append(kw["id"])

        with patch.object(
            self.app.coordinator, "full_sync", side_effect=lambda user_id: order.append(("full_sync", user_id))
        ):
            self.app.start()

        assert order == [SYNC_JOB_ID, ("full_sync", "u1")]
        assert self.app.remote.user_id == "u1"

    def test_sandboxed_runtime_runs_without_store(self):
        """Test that a runtime without the embedded store still starts."""
        self.app._shutdown()
        config = Config(sandboxed=True)
        app = HabyssSyncApp(config=config, keychain=self.keychain)

        app.start()

        assert app.local_store_ready is False
        assert app.capabilities.supports_local_store is False
        assert app.habits.mode is StorageMode.MEMORY
        app._shutdown()

    def test_sign_in_triggers_sync_and_sign_out_purges(self):
        """Test that signing in triggers a pass and signing out drops the user's data."""
        self.app.start()

        self.app._on_session_change(Session("token", "refresh", "u1", email="ada@example.com"))

        assert self.app.remote.user_id == "u1"
        assert self.app.habits.owner_id == "u1"
        assert self.app.coordinator.is_running
        assert self._job_ids() == [SYNC_JOB_ID, "sign_in_sync"]

        self.app.store.upsert_habit(Habit(id="h1", owner_id="u1", name="Read"))
        self.app._on_session_change(None)

        assert self.app.remote.user_id is None
        assert self.app.store.get_habits("u1") == []

    def test_token_refresh_keeps_sync_running(self):
        """Test that a refreshed token for the same user only swaps credentials."""
        self.app.start()
        self.app._on_session_change(Session("token", "refresh", "u1"))
        add_calls = self.app.coordinator.scheduler.add_job.call_count

        self.app._on_session_change(Session("token-2", "refresh-2", "u1"))

        assert self.app.remote.access_token == "token-2"
        assert self.app.coordinator.scheduler.add_job.call_count == add_calls

    def test_network_change(self):
        """Test that going offline pauses sync and coming back resumes it."""
        self.app.start()

        self.app.on_network_change(False)
        assert self.app.coordinator.paused_by_network is True
        assert self.app.engine.is_paused is True

        self.app.on_network_change(True)
        assert self.app.coordinator.paused_by_network is False
        assert self.app.engine.is_paused is False

    def test_app_state_change(self):
        """Test that backgrounding pauses and foregrounding resumes."""
        self.app.on_app_state_change(False)
        assert self.app.engine.is_paused is True

        self.app.on_app_state_change(True)
        assert self.app.engine.is_paused is False


class TestSingleInstanceLock:
    """Tests for SingleInstanceLock."""

    def setup_method(self):
        """Set up test fixtures."""
        self.db_path = Path(tempfile.mkdtemp()) / "habyss.db"

    def test_second_instance_is_refused(self):
        """Test that a second lock on the same database fails until the first is released."""
        first = SingleInstanceLock(self.db_path)
        second = SingleInstanceLock(self.db_path)

        assert first.acquire() is True
        try:
            assert second.acquire() is False
            assert second.held is False
            assert second.holder_pid() == os.getpid()
        finally:
            first.release()

        assert not first.path.exists()
        assert second.acquire() is True
        second.release()

    def test_context_manager_releases(self):
        """Test that leaving the block frees the lock."""
        with SingleInstanceLock(self.db_path) as lock:
            assert lock.acquire() is True
            assert lock.acquire() is True
            assert lock.path == self.db_path.with_suffix(".lock")

        assert lock.held is False
        assert lock.holder_pid() is None
