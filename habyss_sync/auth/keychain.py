"""Secure session storage using the system keychain."""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from ..store.models import format_timestamp, parse_timestamp, utcnow

__all__ = ["KeychainManager", "Session"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "Habyss Sync"
ACCOUNT_NAME = "supabase_session"


@dataclass
class Session:
    """A signed-in Supabase session."""

    access_token: str
    refresh_token: str
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, leeway_seconds: int = 60) -> bool:
        if self.expires_at is None:
            return False
        return utcnow() + timedelta(seconds=leeway_seconds) >= self.expires_at

    def to_json(self) -> str:
        data = asdict(self)
        data["expires_at"] = format_timestamp(self.expires_at)
        return json.dumps(data)

    @classmethod
    def from_json(cls, data: str) -> "Session":
        parsed = json.loads(data)
        return cls(
            access_token=parsed["access_token"],
            refresh_token=parsed["refresh_token"],
            user_id=parsed["user_id"],
            email=parsed.get("email"),
            expires_at=parse_timestamp(parsed.get("expires_at")),
        )


class KeychainManager:
    """Keeps the current session in the OS keychain."""

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name

    def store(self, session: Session) -> bool:
        """Store a session.

        Returns:
            True if stored successfully
        """
        try:
            keyring.set_password(self.service_name, ACCOUNT_NAME, session.to_json())
            logger.info(f"Session stored for {session.email or session.user_id}")
            return True
        except KeyringError as e:
            logger.error(f"Failed to store session: {e}")
            return False

    def load(self) -> Optional[Session]:
        """Load the stored session, if any."""
        try:
            data = keyring.get_password(self.service_name, ACCOUNT_NAME)
            if data:
                return Session.from_json(data)
            return None
        except KeyringError as e:
            logger.error(f"Failed to load session: {e}")
            return None
        except (json.JSONDecodeError, KeyError) as e:
            logger.error(f"Invalid session format: {e}")
            return None

    def delete(self) -> bool:
        """Delete the stored session.

        Returns:
            True if deleted (or didn't exist)
        """
        try:
            keyring.delete_password(self.service_name, ACCOUNT_NAME)
            logger.info("Session deleted")
            return True
        except PasswordDeleteError:
            return True
        except KeyringError as e:
            logger.error(f"Failed to delete session: {e}")
            return False

    def has_session(self) -> bool:
        return self.load() is not None
