"""Tests for the Mem0 HTTP client using httpx.MockTransport."""

import json

import httpx
import pytest

from collabsync.config import Settings
from collabsync.errors import RemoteMemoryError
from collabsync.storage.mem0 import Mem0Client, infer_memory_type
from collabsync.types import MemoryRecord


def _client(handler):
    return Mem0Client("https://mem0.test", "secret", transport=httpx.MockTransport(handler))


class TestConstruction:
    def test_rejects_plain_http_for_remote_hosts(self):
        with pytest.raises(ValueError):
            Mem0Client("http://mem0.example.com", "secret")

    def test_allows_localhost_http(self):
        client = Mem0Client("http://localhost:8000/", "secret")
        assert client.base_url == "http://localhost:8000"

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            Mem0Client("https://mem0.test", "")

    def test_from_settings_requires_configuration(self):
        with pytest.raises(ValueError):
            Mem0Client.from_settings(Settings(mem0_api_url=None, mem0_api_key=None))

    def test_from_settings_uses_validated_url(self):
        client = Mem0Client.from_settings(
            Settings(mem0_api_url="https://mem0.example.com/", mem0_api_key="secret", http_timeout=7.0)
        )

        assert client.base_url == "https://mem0.example.com"
        assert client.timeout == 7.0

    def test_from_settings_rejects_unsafe_url(self):
        with pytest.raises(ValueError):
            Mem0Client.from_settings(Settings(mem0_api_url="http://mem0.example.com", mem0_api_key="secret"))


class TestCheckConnection:
    @pytest.mark.asyncio
    async def test_base_url_answering(self):
        async with _client(lambda request: httpx.Response(200)) as client:
            assert await client.check_connection() is True

    @pytest.mark.asyncio
    async def test_unauthorized_base_still_reachable(self):
        async with _client(lambda request: httpx.Response(401)) as client:
            assert await client.check_connection() is True

    @pytest.mark.asyncio
    async def test_falls_back_to_health_endpoints(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path))
            if request.url.path == "/health":
                return httpx.Response(200, json={"status": "ok"})
            return httpx.Response(404)

        async with _client(handler) as client:
            assert await client.check_connection() is True

        assert seen == [("HEAD", "/"), ("GET", "/api/health"), ("GET", "/health")]

    @pytest.mark.asyncio
    async def test_unreachable_never_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            assert await client.check_connection() is False

    @pytest.mark.asyncio
    async def test_all_endpoints_missing(self):
        async with _client(lambda request: httpx.Response(404)) as client:
            assert await client.check_connection() is False


class TestListMemories:
    @pytest.mark.asyncio
    async def test_first_successful_endpoint_wins(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            if request.url.path == "/api/memory/search":
                return httpx.Response(404)
            return httpx.Response(200, json={"results": [
                {"id": "m1", "memory": "Opened the file budget.xlsx", "metadata": {"local_id": "l1"}},
                {"id": "m2", "text": "Prefers compact view", "metadata": {"type": "preference"}},
                {"memory": "no id, skipped"},
            ]})

        async with _client(handler) as client:
            records = await client.list_memories("alice", "file_manager")

        assert [r.id for r in records] == ["m1", "m2"]
        assert records[0].local_id == "l1"
        assert records[0].type == "file_operation"
        assert records[1].memory == "Prefers compact view"
        assert records[1].type == "preference"
        assert bodies[0]["filter"] == {"metadata": {"ai_family_member_id": "file_manager"}}
        assert bodies[0]["user_id"] == "alice"

    @pytest.mark.asyncio
    async def test_bare_list_response(self):
        async with _client(lambda request: httpx.Response(200, json=[{"id": "m1", "memory": "x"}])) as client:
            records = await client.list_memories("alice", "file_manager")

        assert [r.id for r in records] == ["m1"]

    @pytest.mark.asyncio
    async def test_all_endpoints_failing_raises(self):
        async with _client(lambda request: httpx.Response(500)) as client:
            with pytest.raises(RemoteMemoryError) as exc_info:
                await client.list_memories("alice", "file_manager")

        assert exc_info.value.status_code == 500


class TestAddMemory:
    @pytest.mark.asyncio
    async def test_returns_remote_id_and_sends_link(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "m-new"})

        record = MemoryRecord(id="local-1", memory="Renamed notes.txt", type="file_operation")
        async with _client(handler) as client:
            remote_id = await client.add_memory(record, "alice", "file_manager")

        assert remote_id == "m-new"
        request = requests[0]
        body = json.loads(request.content)
        assert request.url.path == "/api/memory/add"
        assert request.headers["Authorization"] == "Bearer secret"
        assert body["local_id"] == "local-1"
        assert body["metadata"]["local_id"] == "local-1"
        assert body["metadata"]["type"] == "file_operation"

    @pytest.mark.asyncio
    async def test_id_from_results_list(self):
        def handler(request):
            if request.url.path == "/api/memory/add":
                return httpx.Response(404)
            return httpx.Response(201, json={"results": [{"id": "m-2", "event": "ADD"}]})

        async with _client(handler) as client:
            assert await client.add_memory(MemoryRecord(id="l", memory="x"), "alice", "s") == "m-2"

    @pytest.mark.asyncio
    async def test_failure_raises(self):
        async with _client(lambda request: httpx.Response(503)) as client:
            with pytest.raises(RemoteMemoryError):
                await client.add_memory(MemoryRecord(id="l", memory="x"), "alice", "s")

    @pytest.mark.asyncio
    async def test_add_messages(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        async with _client(handler) as client:
            result = await client.add_messages([{"role": "user", "content": "hi"}], "alice", {"k": "v"})

        assert result is None
        assert bodies[0] == {"messages": [{"role": "user", "content": "hi"}], "user_id": "alice", "metadata": {"k": "v"}}


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Moved file report.pdf", "file_operation"),
        ("Search for invoices", "search"),
        ("User preference: dark mode", "preference"),
        ("Talked about the weather", "custom"),
    ],
)
def test_infer_memory_type(text, expected):
    assert infer_memory_type(text) == expected
