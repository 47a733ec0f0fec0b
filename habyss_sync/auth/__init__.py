"""Auth module - Supabase session handling and secure storage."""

from .keychain import KeychainManager, Session
from .session import SessionManager

__all__ = ["KeychainManager", "Session", "SessionManager"]
