"""Protocol types for SyncEngine dependencies.

Defines the interfaces that SyncEngine requires from its collaborators,
so tests can hand it in-memory fakes.
"""

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from ..store.models import EntityType, OutboxEntry
from .remote import RemoteRecord


@runtime_checkable
class RemoteStoreProtocol(Protocol):
    """Interface for reading and writing rows on the backend."""

    def is_reachable(self) -> bool: ...

    def fetch_since(
        self, entity_type: EntityType, cursor: Optional[datetime], owner_id: str
    ) -> list[RemoteRecord]: ...

    def push(self, entity_type: EntityType, record: dict) -> RemoteRecord: ...

    def delete(self, entity_type: EntityType, entity_id: str) -> RemoteRecord: ...


@runtime_checkable
class LocalStoreProtocol(Protocol):
    """Interface for the local outbox, cursors and remote-apply path."""

    def pending_entries(
        self,
        owner_id: str,
        entity_type: Optional[EntityType] = None,
        limit: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> list[OutboxEntry]: ...

    def pending_for(self, entity_type: EntityType, entity_id: str) -> list[OutboxEntry]: ...

    def pending_completions_of(self, habit_id: str) -> list[OutboxEntry]: ...

    def remove_entries(self, seqs: list[int]) -> int: ...

    def record_failure(self, seqs: list[int], error: str) -> None: ...

    def outbox_size(self, owner_id: Optional[str] = None) -> int: ...

    def is_tombstoned(self, entity_type: EntityType, entity_id: str) -> bool: ...

    def apply_remote(self, entity_type: EntityType, data: dict) -> bool: ...

    def mark_synced(
        self, entity_type: EntityType, entity_id: str, updated_at: Optional[datetime]
    ) -> None: ...

    def get_cursor(self, entity_type: EntityType, owner_id: str) -> Optional[datetime]: ...

    def set_cursor(self, entity_type: EntityType, owner_id: str, last_synced_at: datetime) -> None: ...

    def get_all_cursors(self, owner_id: str) -> dict[EntityType, datetime]: ...
