"""Base HTTP client for the Supabase REST endpoints."""

import logging
from typing import Any, Optional, Union
from urllib.parse import urlparse

import requests

__all__ = [
    "BaseApiClient",
    "RemoteStoreError",
    "AuthError",
    "NetworkError",
]

logger = logging.getLogger(__name__)


class RemoteStoreError(Exception):
    """Backend request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(RemoteStoreError):
    """Session is missing, expired or not allowed to touch the row."""

    pass


class NetworkError(RemoteStoreError):
    """Transient failure: offline, timeout, 5xx or rate limited."""

    pass


class BaseApiClient:
    """Base HTTP client.

    Handles:
    - Session management
    - apikey / bearer headers
    - Error classification into AuthError, NetworkError and RemoteStoreError

    It never retries; the sync coordinator decides when to try again.
    """

    USER_AGENT = "Habyss-Sync/1.0.0"

    def __init__(
        self,
        base_url: str,
        anon_key: str = "",
        access_token: Optional[str] = None,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ):
        """Initialize base API client.

        Args:
            base_url: REST base URL, e.g. ``https://xyz.supabase.co/rest/v1``
            anon_key: Project anon key sent as ``apikey``
            access_token: User access token for row-level security
            timeout: Request timeout in seconds
            session: Optional requests session (for dependency injection/testing)
        """
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.access_token = access_token
        self.timeout = timeout
        self._session = session or requests.Session()
        self._owns_session = session is None

    @property
    def host(self) -> str:
        return urlparse(self.base_url).netloc

    def _get_headers(self, prefer: Optional[str] = None) -> dict:
        """Get request headers with authentication."""
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        if self.anon_key:
            headers["apikey"] = self.anon_key
        token = self.access_token or self.anon_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Union[dict, list]] = None,
        json: Optional[Union[dict, list]] = None,
        prefer: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Make a request relative to ``base_url``.

        Returns:
            Decoded JSON body, or None for an empty body

        Raises:
            AuthError: For 401/403 responses
            NetworkError: For connection failures, timeouts, 5xx and 429
            RemoteStoreError: For any other non-2xx response
        """
        if self._session is None:
            raise RemoteStoreError("Client is closed")

        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._get_headers(prefer),
                timeout=timeout or self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Request to {path} timed out") from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Cannot connect to {self.host}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request to {path} failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"Not authorized ({status}): {self._error_detail(response)}", status)
        if status == 429 or status >= 500:
            raise NetworkError(f"Server error ({status}): {self._error_detail(response)}", status)
        if status >= 400:
            raise RemoteStoreError(f"API error ({status}): {self._error_detail(response)}", status)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteStoreError(f"Invalid JSON from {path}", status) from e

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(
                body.get("message")
                or body.get("error_description")
                or body.get("msg")
                or body.get("error")
                or body
            )
        return str(body)[:200]

    def set_credentials(self, access_token: str) -> None:
        """Set the user access token."""
        self.access_token = access_token

    def clear_credentials(self) -> None:
        self.access_token = None

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:
            pass

    def __enter__(self) -> "BaseApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
