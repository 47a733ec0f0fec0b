"""PostgREST client for the habit tables."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import requests

from ..store.models import Completion, EntityType, format_timestamp, parse_timestamp, utcnow
from .http_client import AuthError, BaseApiClient, NetworkError, RemoteStoreError
from .retry import NetworkReachabilityCache

__all__ = ["RemoteStoreClient", "RemoteRecord", "REMOTE_TABLES"]

logger = logging.getLogger(__name__)

REMOTE_TABLES = {
    EntityType.HABITS: "habits",
    EntityType.COMPLETIONS: "habit_completions",
    EntityType.ROUTINES: "routines",
}

# Offset paging needs a total order; rows can share an updated_at
PAGE_ORDER = {
    EntityType.HABITS: "updated_at.asc,id.asc",
    EntityType.COMPLETIONS: "updated_at.asc,habit_id.asc,date.asc",
    EntityType.ROUTINES: "updated_at.asc,id.asc",
}

# Columns the server owns on upsert
_SERVER_COLUMNS = ("deleted", "user_id")


@dataclass
class RemoteRecord:
    """A row as the backend returned it."""

    entity_type: EntityType
    entity_id: str
    updated_at: Optional[datetime]
    deleted: bool = False
    data: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, entity_type: EntityType, row: dict) -> "RemoteRecord":
        entity_type = EntityType(entity_type)
        if entity_type is EntityType.COMPLETIONS:
            entity_id = Completion.make_key(row["habit_id"], row["date"])
        else:
            entity_id = str(row["id"])
        return cls(
            entity_type=entity_type,
            entity_id=entity_id,
            updated_at=parse_timestamp(row.get("updated_at")),
            deleted=bool(row.get("deleted")),
            data=dict(row),
        )


class RemoteStoreClient(BaseApiClient):
    """Reads and writes habit rows through Supabase's REST API."""

    def __init__(
        self,
        base_url: str,
        anon_key: str = "",
        access_token: Optional[str] = None,
        user_id: Optional[str] = None,
        page_size: int = 500,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
        reachability_cache: Optional[NetworkReachabilityCache] = None,
    ):
        super().__init__(
            base_url,
            anon_key=anon_key,
            access_token=access_token,
            timeout=timeout,
            session=session,
        )
        self.user_id = user_id
        self.page_size = page_size
        self._reachability = reachability_cache or NetworkReachabilityCache(ttl_seconds=30.0)

    def set_session(self, access_token: str, user_id: str) -> None:
        """Act as a signed-in user."""
        self.set_credentials(access_token)
        self.user_id = user_id

    def clear_session(self) -> None:
        self.clear_credentials()
        self.user_id = None

    def _require_user(self) -> str:
        if not self.access_token or not self.user_id:
            raise AuthError("No active session")
        return self.user_id

    def fetch_since(
        self, entity_type: EntityType, cursor: Optional[datetime], owner_id: str
    ) -> list[RemoteRecord]:
        """Fetch every row of a type changed after ``cursor``, oldest first.

        Args:
            entity_type: Table to read
            cursor: Watermark, or None for a full pull
            owner_id: Row owner

        Raises:
            AuthError: If the session is missing or expired
            NetworkError: On transient failure
        """
        entity_type = EntityType(entity_type)
        table = REMOTE_TABLES[entity_type]
        params = {
            "select": "*",
            "user_id": f"eq.{owner_id}",
            "order": PAGE_ORDER[entity_type],
            "limit": str(self.page_size),
        }
        if cursor is not None:
            params["updated_at"] = f"gt.{format_timestamp(cursor)}"

        records: list[RemoteRecord] = []
        offset = 0
        while True:
            params["offset"] = str(offset)
            rows = self._request("GET", table, params=params) or []
            records.extend(RemoteRecord.from_row(entity_type, row) for row in rows)
            if len(rows) < self.page_size:
                break
            offset += len(rows)

        logger.debug(f"Fetched {len(records)} {entity_type.value} changed since {cursor}")
        return records

    def fetch_completions_between(self, owner_id: str, start: str, end: str) -> list[RemoteRecord]:
        """Fetch completions for an inclusive date range (remote-only reads)."""
        params = [
            ("select", "*"),
            ("user_id", f"eq.{owner_id}"),
            ("date", f"gte.{start}"),
            ("date", f"lte.{end}"),
            ("order", "date.asc"),
        ]
        rows = self._request("GET", REMOTE_TABLES[EntityType.COMPLETIONS], params=params) or []
        return [RemoteRecord.from_row(EntityType.COMPLETIONS, row) for row in rows]

    def push(self, entity_type: EntityType, record: dict) -> RemoteRecord:
        """Upsert a row and return the server's canonical version.

        ``user_id`` always comes from the session. ``deleted`` is never sent,
        so an upsert cannot undo a server tombstone.
        """
        entity_type = EntityType(entity_type)
        user_id = self._require_user()
        body = {k: v for k, v in record.items() if k not in _SERVER_COLUMNS}
        body["user_id"] = user_id

        params = {}
        if entity_type is EntityType.COMPLETIONS:
            params["on_conflict"] = "habit_id,date"

        rows = self._request(
            "POST",
            REMOTE_TABLES[entity_type],
            params=params or None,
            json=body,
            prefer="resolution=merge-duplicates,return=representation",
        )
        if not rows:
            raise RemoteStoreError(f"Upsert into {REMOTE_TABLES[entity_type]} returned no row")
        return RemoteRecord.from_row(entity_type, rows[0])

    def delete(self, entity_type: EntityType, entity_id: str) -> RemoteRecord:
        """Write a server-side tombstone so the delete reaches other devices."""
        entity_type = EntityType(entity_type)
        self._require_user()
        now = utcnow()

        if entity_type is EntityType.COMPLETIONS:
            habit_id, day = Completion.split_key(entity_id)
            params = {"habit_id": f"eq.{habit_id}", "date": f"eq.{day}"}
        else:
            params = {"id": f"eq.{entity_id}"}

        rows = self._request(
            "PATCH",
            REMOTE_TABLES[entity_type],
            params=params,
            json={"deleted": True, "updated_at": format_timestamp(now)},
            prefer="return=representation",
        )
        if rows:
            return RemoteRecord.from_row(entity_type, rows[0])

        # Never reached the server, nothing to tombstone there
        logger.debug(f"Delete of {entity_type.value} {entity_id} matched no remote row")
        return RemoteRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            updated_at=now,
            deleted=True,
            data={"id": entity_id, "deleted": True},
        )

    def is_reachable(self) -> bool:
        """Check whether the backend answers at all (cached)."""
        cached = self._reachability.get(self.host)
        if cached is not None:
            return cached

        try:
            self._request("GET", "", timeout=5)
            reachable = True
        except NetworkError:
            reachable = False
        except RemoteStoreError:
            # Any HTTP answer, even a refusal, means the server is up
            reachable = True

        self._reachability.set(self.host, reachable)
        return reachable

    def invalidate_reachability(self) -> None:
        self._reachability.invalidate(self.host)
