"""Supabase session management (GoTrue password and refresh-token grants)."""

import logging
import threading
from datetime import timedelta
from typing import Callable, Optional

import requests

from ..store.models import utcnow
from ..sync.http_client import AuthError, BaseApiClient, NetworkError, RemoteStoreError
from ..sync.retry import RetryConfig, RetryExhausted, retry_with_backoff
from .keychain import KeychainManager, Session

__all__ = ["SessionManager"]

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[Session]], None]

REFRESH_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    base_delay=1.0,
    max_delay=10.0,
    exponential_base=2.0,
    jitter=True,
)


class SessionManager:
    """Owns the current session.

    No session means "signed out, local-only"; that is a normal state, not an
    error. Listeners hear about every sign-in, refresh and sign-out.
    """

    def __init__(
        self,
        auth_url: str,
        anon_key: str = "",
        keychain: Optional[KeychainManager] = None,
        timeout: int = 15,
        retry_config: Optional[RetryConfig] = None,
        http_session: Optional[requests.Session] = None,
    ):
        """Initialize session manager.

        Args:
            auth_url: GoTrue base URL, e.g. ``https://xyz.supabase.co/auth/v1``
            anon_key: Project anon key
            keychain: Session storage (creates default if None)
            timeout: Request timeout in seconds
            retry_config: Backoff for transient refresh failures
            http_session: Optional requests session (for testing)
        """
        self.client = BaseApiClient(auth_url, anon_key=anon_key, timeout=timeout, session=http_session)
        self.keychain = keychain or KeychainManager()
        self.retry_config = retry_config or REFRESH_RETRY_CONFIG
        self._session: Optional[Session] = None
        self._loaded = False
        self._lock = threading.RLock()
        self._listeners: list[SessionListener] = []

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register a callback for session changes.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception as e:
                logger.error(f"Session listener failed: {e}")

    def current(self) -> Optional[Session]:
        """Get the current session, loading it from the keychain once."""
        with self._lock:
            if not self._loaded:
                self._session = self.keychain.load()
                self._loaded = True
            return self._session

    @property
    def user_id(self) -> Optional[str]:
        session = self.current()
        return session.user_id if session else None

    def restore(self) -> Optional[Session]:
        """Resume the stored session at startup, refreshing it if expired.

        A network failure keeps the stored session; the next pass retries.
        """
        session = self.current()
        if session is None:
            return None

        if session.is_expired():
            try:
                return self.refresh()
            except AuthError as e:
                logger.warning(f"Stored session rejected: {e}")
                self.sign_out()
                return None
            except NetworkError as e:
                logger.warning(f"Cannot refresh stored session now: {e}")
                return session

        logger.info(f"Session restored for {session.email or session.user_id}")
        self._notify(session)
        return session

    def sign_in_with_password(self, email: str, password: str) -> Session:
        """Sign in with email and password.

        Raises:
            AuthError: If the credentials are rejected
            NetworkError: On transient failure
        """
        body = self._token_request("password", {"email": email, "password": password})
        session = self._adopt(body)
        logger.info(f"Signed in as {session.email or session.user_id}")
        return session

    def refresh(self) -> Session:
        """Exchange the refresh token for a new session.

        Raises:
            AuthError: If there is no session or the refresh token is rejected
            NetworkError: If the backend stays unreachable after retries
        """
        current = self.current()
        if current is None:
            raise AuthError("No session to refresh")

        def do_refresh() -> dict:
            return self._token_request("refresh_token", {"refresh_token": current.refresh_token})

        try:
            body = retry_with_backoff(
                do_refresh,
                config=self.retry_config,
                retryable_exceptions=(NetworkError,),
            )
        except RetryExhausted as e:
            raise NetworkError(f"Session refresh failed: {e.last_error}") from e.last_error

        session = self._adopt(body, fallback=current)
        logger.info("Session refreshed")
        return session

    def sign_out(self) -> None:
        """Revoke the session (best effort) and forget it locally."""
        with self._lock:
            session = self.current()
            self._session = None
            self._loaded = True

        if session is not None:
            self.client.set_credentials(session.access_token)
            try:
                self.client._request("POST", "logout")
            except RemoteStoreError as e:
                logger.warning(f"Failed to revoke session: {e}")
            finally:
                self.client.clear_credentials()

        self.keychain.delete()
        logger.info("Signed out")
        self._notify(None)

    def _token_request(self, grant_type: str, payload: dict) -> dict:
        try:
            body = self.client._request(
                "POST", "token", params={"grant_type": grant_type}, json=payload
            )
        except AuthError:
            raise
        except NetworkError:
            raise
        except RemoteStoreError as e:
            # GoTrue answers 400 for bad credentials and revoked refresh tokens
            if e.status_code in (400, 422):
                raise AuthError(str(e), e.status_code) from e
            raise
        if not body or "access_token" not in body:
            raise AuthError("Token response carried no access token")
        return body

    def _adopt(self, body: dict, fallback: Optional[Session] = None) -> Session:
        user = body.get("user") or {}
        expires_in = body.get("expires_in")
        expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None

        session = Session(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or (fallback.refresh_token if fallback else ""),
            user_id=user.get("id") or (fallback.user_id if fallback else ""),
            email=user.get("email") or (fallback.email if fallback else None),
            expires_at=expires_at,
        )
        with self._lock:
            self._session = session
            self._loaded = True
        if not self.keychain.store(session):
            logger.warning("Failed to store session in keychain")
        self._notify(session)
        return session

    def close(self) -> None:
        self.client.close()
