"""Tests for watched single APIs: fetch classification and persistence."""

from __future__ import annotations

import httpx
import pytest

from apiscope.errors import NotFoundError, ValidationError
from apiscope.watch import FetchOutcome, WatchRegistry, fetch_api


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetchApi:
    @pytest.mark.asyncio
    async def test_json_body(self):
        async with _client(lambda request: httpx.Response(200, json={"items": [1, 2]})) as client:
            outcome = await fetch_api("http://api.test/items", client=client)
        assert outcome.status == "success"
        assert outcome.status_code == 200
        assert outcome.data == {"items": [1, 2]}

    @pytest.mark.asyncio
    async def test_text_body(self):
        async with _client(lambda request: httpx.Response(200, text="pong")) as client:
            outcome = await fetch_api("http://api.test/ping", client=client)
        assert outcome.data == "pong"

    @pytest.mark.asyncio
    async def test_4xx_is_success(self):
        async with _client(lambda request: httpx.Response(404, json={"error": "nope"})) as client:
            outcome = await fetch_api("http://api.test/missing", client=client)
        assert outcome.status == "success"
        assert outcome.status_code == 404

    @pytest.mark.asyncio
    async def test_5xx_is_error(self):
        async with _client(lambda request: httpx.Response(502)) as client:
            outcome = await fetch_api("http://api.test/", client=client)
        assert outcome.status == "error"
        assert outcome.error == "Request failed with status code 502"

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            outcome = await fetch_api("http://api.test/", client=client)
        assert outcome.status == "error"
        assert outcome.status_code is None
        assert "connection refused" in outcome.error


class TestWatchRegistry:
    def test_add_and_list(self, db_conn):
        registry = WatchRegistry(db_conn)
        api = registry.add("http://api.test/items")
        assert api["last_status"] == "pending"
        assert [a["id"] for a in registry.list_apis()] == [api["id"]]

    def test_duplicate_url(self, db_conn):
        registry = WatchRegistry(db_conn)
        registry.add("http://api.test/items")
        with pytest.raises(ValidationError, match="already exists"):
            registry.add("http://api.test/items")

    def test_invalid_url(self, db_conn):
        with pytest.raises(ValidationError):
            WatchRegistry(db_conn).add("not-a-url")

    def test_record_success_keeps_response(self, db_conn):
        registry = WatchRegistry(db_conn)
        api = registry.add("http://api.test/items")
        outcome = FetchOutcome(status="success", response_time_ms=12.5, status_code=200, data={"n": 1})
        stored = registry.record_fetch(api["id"], outcome)
        assert stored["last_status"] == "success"
        assert stored["last_response"] == {"n": 1}
        assert stored["response_time_ms"] == 12.5
        assert stored["last_checked"] is not None

    def test_record_error(self, db_conn):
        registry = WatchRegistry(db_conn)
        api = registry.add("http://api.test/items")
        outcome = FetchOutcome(status="error", response_time_ms=3.0, error="boom")
        stored = registry.record_fetch(api["id"], outcome)
        assert stored["last_status"] == "error"
        assert stored["last_response"] is None
        assert stored["error_message"] == "boom"

    def test_delete(self, db_conn):
        registry = WatchRegistry(db_conn)
        api = registry.add("http://api.test/items")
        registry.delete(api["id"])
        assert registry.list_apis() == []
        with pytest.raises(NotFoundError):
            registry.delete(api["id"])
