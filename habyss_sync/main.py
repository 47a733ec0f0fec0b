"""Habyss Sync - Main entry point."""

import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .auth import KeychainManager, Session, SessionManager
from .capabilities import detect_capabilities
from .config import Config, setup_logging
from .events import EventBus
from .habits import HabitService
from .store import LocalStore, StorageInitError
from .sync import AuthError, NetworkError, PassBackoff, RemoteStoreClient, SyncEngine, SyncStats

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "sync_job"
MAX_BACKOFF_SECONDS = 600


class SyncCoordinator:
    """Owns the sync scheduler and the background sync loop.

    Pulled out of HabyssSyncApp so that the app class focuses on lifecycle
    orchestration and event wiring only.
    """

    def __init__(
        self,
        config: Config,
        engine: SyncEngine,
        sessions: SessionManager,
        remote: RemoteStoreClient,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.sessions = sessions
        self.remote = remote
        self.scheduler = scheduler or BackgroundScheduler()
        self.backoff = PassBackoff(
            base_delay=config.sync.interval_seconds,
            max_delay=MAX_BACKOFF_SECONDS,
        )
        self._lock = threading.Lock()
        self._running = False
        self._auth_retry_pending = False

        # Flags set by the app layer
        self.paused_by_network = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start_sync_service(self, immediate: bool = True) -> None:
        """Start the periodic sync job, plus an immediate pass unless told not to. Idempotent."""
        with self._lock:
            if self._running:
                return
            self._running = True

        self.scheduler.add_job(
            self._do_sync,
            trigger=IntervalTrigger(seconds=self.config.sync.interval_seconds),
            id=SYNC_JOB_ID,
            replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        if immediate:
            self.trigger_sync("startup_sync")
        logger.info(f"Sync service started (interval: {self.config.sync.interval_seconds}s)")

    def stop_sync_service(self) -> None:
        """Stop the periodic job. An in-flight pass completes on its own."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        try:
            self.scheduler.remove_job(SYNC_JOB_ID)
        except JobLookupError:
            pass
        logger.info("Sync service stopped")

    def shutdown(self) -> None:
        """Shut down the scheduler if running."""
        self.stop_sync_service()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def pause(self) -> None:
        """Pause the timer (app backgrounded or offline)."""
        self.engine.pause()
        if self.scheduler.get_job(SYNC_JOB_ID):
            self.scheduler.pause_job(SYNC_JOB_ID)
        logger.info("Sync paused")

    def resume(self) -> None:
        self.engine.resume()
        if self.scheduler.get_job(SYNC_JOB_ID):
            self.scheduler.resume_job(SYNC_JOB_ID)
        logger.info("Sync resumed")
        self.trigger_sync("resume_sync")

    def reschedule(self, interval_seconds: float) -> None:
        """Change the sync interval on the fly."""
        if self.scheduler.get_job(SYNC_JOB_ID):
            self.scheduler.reschedule_job(
                SYNC_JOB_ID,
                trigger=IntervalTrigger(seconds=interval_seconds),
            )

    def trigger_sync(self, job_id: str = "immediate_sync") -> None:
        """Schedule a one-off pass (e.g. network restored, app foregrounded)."""
        if self.scheduler.running:
            self.scheduler.add_job(self._do_sync, id=job_id, replace_existing=True)

    def full_sync(self, user_id: Optional[str] = None) -> Optional[SyncStats]:
        """Run a blocking full sync for the signed-in user.

        Returns:
            Sync statistics, or None when nobody is signed in or auth failed
        """
        user_id = user_id or self.sessions.user_id
        if not user_id:
            logger.info("Not signed in, skipping full sync")
            return None
        try:
            stats = self.engine.full_sync(user_id)
        except AuthError as e:
            self._handle_auth_error(e)
            return None
        self._after_pass(stats)
        return stats

    # -- internal ---------------------------------------------------------

    def _do_sync(self) -> None:
        """Perform one sync pass."""
        user_id = self.sessions.user_id
        if not user_id:
            logger.debug("Not signed in, skipping sync pass")
            return
        if self.paused_by_network:
            logger.debug("Offline, skipping sync pass")
            return

        try:
            stats = self.engine.sync_pass(user_id)
        except AuthError as e:
            self._handle_auth_error(e)
            return
        except Exception as e:
            logger.exception(f"Sync error: {e}")
            self._apply_backoff()
            return

        self._after_pass(stats)

    def _after_pass(self, stats: SyncStats) -> None:
        if stats.skipped:
            return
        self._auth_retry_pending = False
        if stats.network_failures:
            self._apply_backoff()
        elif self.backoff.failures:
            self.backoff.record_success()
            self.reschedule(self.config.sync.interval_seconds)
            logger.info("Backend reachable again, sync interval restored")

    def _apply_backoff(self) -> None:
        delay = self.backoff.record_failure()
        self.reschedule(delay)
        logger.info(f"Sync backoff: next pass in {delay:.0f}s (failure #{self.backoff.failures})")

    def _handle_auth_error(self, error: AuthError) -> None:
        """Refresh the session once and retry; give up until the next sign-in otherwise."""
        if self._auth_retry_pending:
            self._auth_retry_pending = False
            logger.warning(f"Still not authorized after session refresh: {error}")
            return

        logger.warning(f"Auth error during sync: {error}, refreshing session")
        try:
            session = self.sessions.refresh()
        except AuthError as e:
            logger.warning(f"Session refresh rejected, signing out: {e}")
            self.sessions.sign_out()
            return
        except NetworkError as e:
            logger.warning(f"Session refresh failed, will retry next pass: {e}")
            return

        self.remote.set_session(session.access_token, session.user_id)
        self._auth_retry_pending = True
        self.trigger_sync("auth_retry_sync")


class HabyssSyncApp:
    """Main application orchestrator.

    Wires components together, handles lifecycle (start / shutdown),
    and routes session and system events to the appropriate handler.
    """

    def __init__(self, config: Optional[Config] = None, keychain: Optional[KeychainManager] = None):
        """Initialize the application."""
        self.config = config or Config.load()
        setup_logging(self.config.debug_mode)

        logger.info("Habyss Sync starting...")
        logger.info(f"Using backend: {self.config.supabase_url}")

        self.events = EventBus()
        self.store = LocalStore(
            self.config.database_path,
            events=self.events,
            sandboxed=self.config.sandboxed,
        )
        self.capabilities = detect_capabilities(self.store.is_available())
        self.remote = RemoteStoreClient(
            self.config.rest_url,
            anon_key=self.config.supabase_anon_key,
            page_size=self.config.sync.page_size,
            timeout=self.config.sync.request_timeout,
        )
        self.sessions = SessionManager(
            self.config.auth_url,
            anon_key=self.config.supabase_anon_key,
            keychain=keychain or KeychainManager(),
            timeout=self.config.sync.request_timeout,
        )
        self.engine = SyncEngine(
            self.store,
            self.remote,
            events=self.events,
            max_attempts=self.config.sync.max_attempts,
        )
        self.coordinator = SyncCoordinator(self.config, self.engine, self.sessions, self.remote)
        self.habits = HabitService(
            store=self.store,
            remote=self.remote,
            events=self.events,
            capabilities=self.capabilities,
        )
        self.sessions.add_listener(self._on_session_change)

        # State
        self._user_id: Optional[str] = None
        self._started = False
        self._shutdown_done = False
        self._shutdown_event = threading.Event()

    @property
    def local_store_ready(self) -> bool:
        return self.store.is_open

    def start(self) -> None:
        """Open storage, restore the session, start background sync, then reconcile."""
        if self.capabilities.supports_local_store:
            try:
                self.store.open()
            except StorageInitError as e:
                logger.warning(f"Local store unavailable, running remote-only: {e}")
        else:
            logger.warning("Local store not supported in this runtime, running remote-only")

        session = self.sessions.restore()
        self._adopt_session(session)

        if self.local_store_ready:
            # The blocking full sync below stands in for the first pass
            self.coordinator.start_sync_service(immediate=False)
            if session:
                self.coordinator.full_sync(session.user_id)
        self._started = True
        logger.info(f"Habyss Sync started ({self.habits.mode.value} mode)")

    def run(self) -> None:
        """Run until a signal or ``stop()``."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.start()
        logger.info("Habyss Sync running")
        try:
            self._shutdown_event.wait()
        finally:
            self._shutdown()

    def stop(self) -> None:
        self._shutdown_event.set()

    def sign_in(self, email: str, password: str) -> Session:
        """Sign in; the session listener starts syncing."""
        return self.sessions.sign_in_with_password(email, password)

    def sign_out(self) -> None:
        self.sessions.sign_out()

    # -- Event handlers ---------------------------------------------------

    def _adopt_session(self, session: Optional[Session]) -> None:
        if session is not None:
            self.remote.set_session(session.access_token, session.user_id)
            self._user_id = session.user_id
            self.habits.init(session.user_id)
        else:
            self.remote.clear_session()
            self._user_id = None
            self.habits.init(None)

    def _on_session_change(self, session: Optional[Session]) -> None:
        """Handle sign-in, token refresh and sign-out."""
        previous = self._user_id
        if session is not None and session.user_id == previous:
            # Token refresh for the same user
            self.remote.set_session(session.access_token, session.user_id)
            return

        self._adopt_session(session)
        if not self._started:
            return

        if session is not None:
            logger.info(f"Signed in as {session.email or session.user_id}")
            if self.local_store_ready:
                self.store.reset_attempts(session.user_id)
                self.coordinator.start_sync_service(immediate=False)
                self.coordinator.trigger_sync("sign_in_sync")
        else:
            if previous and self.local_store_ready and self.config.sync.purge_on_sign_out:
                self.store.purge_owner(previous)
            logger.info("Signed out, sync idle until the next sign-in")

    def on_app_state_change(self, active: bool) -> None:
        """App foregrounded/backgrounded."""
        if active:
            self.coordinator.resume()
        else:
            self.coordinator.pause()

    def on_network_change(self, is_online: bool) -> None:
        """Handle network connectivity change."""
        self.remote.invalidate_reachability()
        if is_online:
            logger.info("Network back online, triggering sync to flush outbox")
            if self.coordinator.paused_by_network:
                self.coordinator.paused_by_network = False
                self.coordinator.resume()
            else:
                self.coordinator.trigger_sync("network_sync")
        else:
            logger.info("Network offline, pausing sync")
            self.coordinator.paused_by_network = True
            self.coordinator.pause()

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self._shutdown_event.set()

    # -- Lifecycle --------------------------------------------------------

    def _shutdown(self) -> None:
        """Shutdown the application. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down...")

        self.coordinator.shutdown()
        self.habits.teardown()
        self.remote.close()
        self.sessions.close()
        self.store.close()
        self.events.clear()

        logger.info("Shutdown complete")

    def __enter__(self) -> "HabyssSyncApp":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._shutdown()


class SingleInstanceLock:
    """Advisory lock on a sidecar file next to the database.

    Two processes syncing the same database would drain the outbox twice, so
    the second one refuses to start. The file holds the owner's pid.
    """

    def __init__(self, db_path: Path):
        self.path = Path(db_path).with_suffix(".lock")
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def holder_pid(self) -> Optional[int]:
        """Pid written by the process holding the lock, if readable."""
        try:
            return int(self.path.read_text().strip() or 0) or None
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """Try to take the lock without waiting."""
        if self.held:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+")
        try:
            _lock_file(handle)
        except OSError:
            handle.close()
            return False

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        if not self.held:
            return
        handle, self._handle = self._handle, None
        try:
            _unlock_file(handle)
        except OSError as e:
            logger.debug(f"Unlocking {self.path} failed: {e}")
        handle.close()
        try:
            self.path.unlink()
        except OSError:
            pass

    def __enter__(self) -> "SingleInstanceLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def _lock_file(handle) -> None:
    if sys.platform == "win32":
        import msvcrt
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        import fcntl
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(handle) -> None:
    if sys.platform == "win32":
        import msvcrt
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl
        fcntl.flock(handle, fcntl.LOCK_UN)


def main() -> None:
    """Main entry point."""
    config = Config.load()
    instance_lock = SingleInstanceLock(config.database_path)
    if not instance_lock.acquire():
        pid = instance_lock.holder_pid()
        print(f"Habyss Sync is already running{f' (pid {pid})' if pid else ''}.")
        sys.exit(0)

    with instance_lock:
        with HabyssSyncApp(config) as app:
            app.run()


if __name__ == "__main__":
    main()
