"""Last-writer-wins resolution between pending local changes and a pulled row."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from ..store.models import OutboxEntry, OutboxOp
from .remote import RemoteRecord

__all__ = ["Outcome", "Resolution", "resolve"]

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLY_REMOTE = "apply_remote"
    KEEP_LOCAL = "keep_local"


@dataclass
class Resolution:
    """What to do with a pulled row.

    ``discarded`` holds the outbox entries that lost and must be removed
    without being pushed.
    """

    outcome: Outcome
    reason: str
    discarded: list[OutboxEntry] = field(default_factory=list)

    @property
    def apply_remote(self) -> bool:
        return self.outcome is Outcome.APPLY_REMOTE

    @property
    def is_conflict_discard(self) -> bool:
        return bool(self.discarded)


def resolve(
    local_entries: Sequence[OutboxEntry],
    remote: RemoteRecord,
    local_tombstoned: bool = False,
) -> Resolution:
    """Decide between the pending local entries for one row and its remote version.

    Whole records are compared; there is no field-level merge. Tombstones on
    either side are terminal.

    Args:
        local_entries: Pending outbox entries for the row, in enqueue order
        remote: The row as pulled from the backend
        local_tombstoned: The local row is already deleted
    """
    entries = list(local_entries)

    if remote.deleted:
        return Resolution(Outcome.APPLY_REMOTE, "remote tombstone", discarded=entries)

    if local_tombstoned:
        return Resolution(Outcome.KEEP_LOCAL, "local tombstone")

    if not entries:
        return Resolution(Outcome.APPLY_REMOTE, "no local changes")

    if any(e.op is OutboxOp.DELETE for e in entries):
        return Resolution(Outcome.KEEP_LOCAL, "pending local delete")

    newest_local = max(e.enqueued_at for e in entries)
    if remote.updated_at is None or newest_local > remote.updated_at:
        return Resolution(Outcome.KEEP_LOCAL, "local change is newer")

    return Resolution(Outcome.APPLY_REMOTE, "remote change is newer", discarded=entries)
