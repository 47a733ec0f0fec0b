"""Tests for the Supabase REST client."""

import json
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import requests
import responses
from responses import matchers

from habyss_sync.store.models import EntityType
from habyss_sync.sync.http_client import AuthError, BaseApiClient, NetworkError, RemoteStoreError
from habyss_sync.sync.remote import RemoteRecord, RemoteStoreClient
from habyss_sync.sync.retry import NetworkReachabilityCache

BASE = "https://test.supabase.co/rest/v1"


def _query(call) -> dict:
    return parse_qs(urlparse(call.request.url).query)


class TestBaseApiClient:
    """Tests for BaseApiClient error classification."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = BaseApiClient(BASE, anon_key="anon-key", access_token="user-token")

    def teardown_method(self):
        """Clean up."""
        self.client.close()

    def test_headers_with_token(self):
        """Test that the user token wins over the anon key for Authorization."""
        headers = self.client._get_headers(prefer="return=representation")

        assert headers["apikey"] == "anon-key"
        assert headers["Authorization"] == "Bearer user-token"
        assert headers["Prefer"] == "return=representation"

    def test_headers_without_token(self):
        """Test that the anon key is used when signed out."""
        self.client.clear_credentials()
        headers = self.client._get_headers()

        assert headers["Authorization"] == "Bearer anon-key"
        assert "Prefer" not in headers

    @responses.activate
    def test_request_auth_error_401(self):
        """Test 401 response raises AuthError."""
        responses.add(responses.GET, f"{BASE}/habits", json={"message": "JWT expired"}, status=401)

        with pytest.raises(AuthError, match="JWT expired") as exc_info:
            self.client._request("GET", "habits")
        assert exc_info.value.status_code == 401

    @responses.activate
    def test_request_auth_error_403(self):
        """Test 403 response raises AuthError."""
        responses.add(responses.GET, f"{BASE}/habits", json={"message": "permission denied"}, status=403)

        with pytest.raises(AuthError):
            self.client._request("GET", "habits")

    @responses.activate
    def test_request_connection_error(self):
        """Test connection error raises NetworkError."""
        responses.add(
            responses.GET,
            f"{BASE}/habits",
            body=requests.exceptions.ConnectionError("Connection refused"),
        )

        with pytest.raises(NetworkError, match="Cannot connect"):
            self.client._request("GET", "habits")

    @responses.activate
    def test_request_timeout_error(self):
        """Test timeout raises NetworkError."""
        responses.add(
            responses.GET,
            f"{BASE}/habits",
            body=requests.exceptions.Timeout("Request timed out"),
        )

        with pytest.raises(NetworkError, match="timed out"):
            self.client._request("GET", "habits")

    @responses.activate
    def test_request_rate_limited_is_transient(self):
        """Test 429 is classified as a network error."""
        responses.add(responses.GET, f"{BASE}/habits", json={"message": "Rate limit exceeded"}, status=429)

        with pytest.raises(NetworkError, match="429.*Rate limit exceeded"):
            self.client._request("GET", "habits")

    @responses.activate
    def test_request_server_error_is_transient(self):
        """Test 5xx is classified as a network error."""
        responses.add(responses.GET, f"{BASE}/habits", body="upstream down", status=503)

        with pytest.raises(NetworkError, match="503"):
            self.client._request("GET", "habits")

    @responses.activate
    def test_request_client_error_is_permanent(self):
        """Test other 4xx responses raise a plain RemoteStoreError."""
        responses.add(
            responses.GET,
            f"{BASE}/habits",
            json={"message": "column habits.bogus does not exist"},
            status=400,
        )

        with pytest.raises(RemoteStoreError) as exc_info:
            self.client._request("GET", "habits")
        assert not isinstance(exc_info.value, (AuthError, NetworkError))
        assert exc_info.value.status_code == 400

    @responses.activate
    def test_request_empty_body(self):
        """Test that an empty 2xx body returns None."""
        responses.add(responses.PATCH, f"{BASE}/habits", body="", status=204)

        assert self.client._request("PATCH", "habits", json={}) is None

    def test_request_after_close(self):
        """Test that a closed client refuses requests."""
        self.client.close()

        with pytest.raises(RemoteStoreError, match="closed"):
            self.client._request("GET", "habits")


class TestRemoteRecord:
    """Tests for RemoteRecord."""

    def test_from_habit_row(self):
        """Test building a record from a habit row."""
        record = RemoteRecord.from_row(
            EntityType.HABITS,
            {"id": "h1", "name": "Read", "updated_at": "2026-03-01T10:00:00Z", "deleted": True},
        )

        assert record.entity_id == "h1"
        assert record.deleted is True
        assert record.updated_at == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_from_completion_row(self):
        """Test that completion records are keyed by habit and day."""
        record = RemoteRecord.from_row(
            "completions", {"habit_id": "h1", "date": "2026-03-01", "completed": True}
        )

        assert record.entity_type is EntityType.COMPLETIONS
        assert record.entity_id == "h1_2026-03-01"
        assert record.updated_at is None
        assert record.deleted is False


class TestRemoteStoreClient:
    """Tests for RemoteStoreClient."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = RemoteStoreClient(
            BASE,
            anon_key="anon-key",
            access_token="user-token",
            user_id="u1",
            page_size=2,
        )

    def teardown_method(self):
        """Clean up."""
        self.client.close()

    @responses.activate
    def test_fetch_since_full_pull_paginates(self):
        """Test that a full pull pages until a short page."""
        responses.add(
            responses.GET,
            f"{BASE}/habits",
            json=[
                {"id": "h1", "user_id": "u1", "updated_at": "2026-03-01T10:00:00Z"},
                {"id": "h2", "user_id": "u1", "updated_at": "2026-03-01T11:00:00Z"},
            ],
        )
        responses.add(
            responses.GET,
            f"{BASE}/habits",
            json=[{"id": "h3", "user_id": "u1", "updated_at": "2026-03-01T12:00:00Z"}],
        )

        records = self.client.fetch_since(EntityType.HABITS, None, "u1")

        assert [r.entity_id for r in records] == ["h1", "h2", "h3"]
        assert len(responses.calls) == 2
        first, second = _query(responses.calls[0]), _query(responses.calls[1])
        assert first["user_id"] == ["eq.u1"]
        assert first["order"] == ["updated_at.asc,id.asc"]
        assert first["offset"] == ["0"]
        assert second["offset"] == ["2"]
        assert "updated_at" not in first

    @responses.activate
    def test_fetch_since_cursor_filter(self):
        """Test that the cursor becomes a strict greater-than filter."""
        responses.add(responses.GET, f"{BASE}/habit_completions", json=[])
        cursor = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

        records = self.client.fetch_since(EntityType.COMPLETIONS, cursor, "u1")

        assert records == []
        assert _query(responses.calls[0])["updated_at"] == ["gt.2026-03-01T10:00:00+00:00"]
        assert _query(responses.calls[0])["order"] == ["updated_at.asc,habit_id.asc,date.asc"]

    @responses.activate
    def test_fetch_completions_between(self):
        """Test the inclusive date range query."""
        responses.add(
            responses.GET,
            f"{BASE}/habit_completions",
            json=[{"habit_id": "h1", "date": "2026-03-02", "completed": True, "user_id": "u1"}],
        )

        records = self.client.fetch_completions_between("u1", "2026-03-01", "2026-03-07")

        assert [r.entity_id for r in records] == ["h1_2026-03-02"]
        assert _query(responses.calls[0])["date"] == ["gte.2026-03-01", "lte.2026-03-07"]

    @responses.activate
    def test_push_habit(self):
        """Test that an upsert sends user_id from the session and never sends deleted."""
        responses.add(
            responses.POST,
            f"{BASE}/habits",
            json=[{"id": "h1", "user_id": "u1", "name": "Read", "updated_at": "2026-03-01T10:00:05Z"}],
            status=201,
            match=[
                matchers.header_matcher(
                    {"Prefer": "resolution=merge-duplicates,return=representation"}
                )
            ],
        )

        record = self.client.push(
            EntityType.HABITS, {"id": "h1", "user_id": "someone-else", "name": "Read", "deleted": False}
        )

        body = json.loads(responses.calls[0].request.body)
        assert body["user_id"] == "u1"
        assert "deleted" not in body
        assert record.entity_id == "h1"
        assert record.updated_at == datetime(2026, 3, 1, 10, 0, 5, tzinfo=timezone.utc)

    @responses.activate
    def test_push_completion_upserts_on_natural_key(self):
        """Test that completion upserts resolve conflicts on (habit_id, date)."""
        responses.add(
            responses.POST,
            f"{BASE}/habit_completions",
            json=[{"habit_id": "h1", "date": "2026-03-01", "completed": True, "user_id": "u1"}],
            status=201,
            match=[matchers.query_param_matcher({"on_conflict": "habit_id,date"})],
        )

        record = self.client.push(
            EntityType.COMPLETIONS, {"habit_id": "h1", "date": "2026-03-01", "completed": True}
        )

        assert record.entity_id == "h1_2026-03-01"

    @responses.activate
    def test_push_returns_server_tombstone(self):
        """Test that an upsert onto a deleted row reports the tombstone."""
        responses.add(
            responses.POST,
            f"{BASE}/habits",
            json=[{"id": "h1", "user_id": "u1", "deleted": True, "updated_at": "2026-03-01T10:00:00Z"}],
            status=201,
        )

        record = self.client.push(EntityType.HABITS, {"id": "h1", "name": "Read"})

        assert record.deleted is True

    def test_push_without_session(self):
        """Test that pushing while signed out raises AuthError."""
        self.client.clear_session()

        with pytest.raises(AuthError, match="No active session"):
            self.client.push(EntityType.HABITS, {"id": "h1"})

    @responses.activate
    def test_delete_writes_tombstone(self):
        """Test that delete patches deleted=true instead of removing the row."""
        responses.add(
            responses.PATCH,
            f"{BASE}/routines",
            json=[{"id": "r1", "user_id": "u1", "deleted": True, "updated_at": "2026-03-01T10:00:00Z"}],
            match=[matchers.query_param_matcher({"id": "eq.r1"})],
        )

        record = self.client.delete(EntityType.ROUTINES, "r1")

        body = json.loads(responses.calls[0].request.body)
        assert body["deleted"] is True
        assert "updated_at" in body
        assert record.deleted is True

    @responses.activate
    def test_delete_completion_splits_key(self):
        """Test that completion deletes filter on habit id and day."""
        responses.add(
            responses.PATCH,
            f"{BASE}/habit_completions",
            json=[],
            match=[matchers.query_param_matcher({"habit_id": "eq.habit_with_underscores", "date": "eq.2026-03-01"})],
        )

        record = self.client.delete(EntityType.COMPLETIONS, "habit_with_underscores_2026-03-01")

        assert record.deleted is True
        assert record.entity_id == "habit_with_underscores_2026-03-01"

    @responses.activate
    def test_is_reachable_true(self):
        """Test is_reachable when server responds."""
        responses.add(responses.GET, f"{BASE}/", json={"swagger": "2.0"})

        assert self.client.is_reachable() is True

    @responses.activate
    def test_is_reachable_on_refusal(self):
        """Test that an HTTP refusal still counts as reachable."""
        responses.add(responses.GET, f"{BASE}/", json={"message": "no"}, status=401)

        assert self.client.is_reachable() is True

    @responses.activate
    def test_is_reachable_false(self):
        """Test is_reachable when server is down."""
        responses.add(
            responses.GET,
            f"{BASE}/",
            body=requests.exceptions.ConnectionError("Connection refused"),
        )

        assert self.client.is_reachable() is False

    @responses.activate
    def test_is_reachable_is_cached(self):
        """Test that reachability is probed once per TTL."""
        client = RemoteStoreClient(BASE, reachability_cache=NetworkReachabilityCache(ttl_seconds=60))
        responses.add(responses.GET, f"{BASE}/", json={})

        assert client.is_reachable() is True
        assert client.is_reachable() is True
        assert len(responses.calls) == 1

        client.invalidate_reachability()
        client.is_reachable()
        assert len(responses.calls) == 2
        client.close()
