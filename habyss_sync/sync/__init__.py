"""Sync module - reconciles the local store with the Supabase backend."""

from .conflicts import Outcome, Resolution, resolve
from .http_client import AuthError, BaseApiClient, NetworkError, RemoteStoreError
from .protocols import LocalStoreProtocol, RemoteStoreProtocol
from .remote import RemoteRecord, RemoteStoreClient
from .retry import PassBackoff, RetryConfig, calculate_delay, retry_with_backoff
from .sync_engine import SyncEngine, SyncState, SyncStats

__all__ = [
    "AuthError",
    "BaseApiClient",
    "NetworkError",
    "RemoteStoreError",
    "Outcome",
    "Resolution",
    "resolve",
    "LocalStoreProtocol",
    "RemoteStoreProtocol",
    "RemoteRecord",
    "RemoteStoreClient",
    "PassBackoff",
    "RetryConfig",
    "calculate_delay",
    "retry_with_backoff",
    "SyncEngine",
    "SyncState",
    "SyncStats",
]
