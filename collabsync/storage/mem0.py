"""HTTP client for a Mem0-compatible remote memory API.

Deployments expose different route layouts, so every call tries a short list
of known endpoints and uses the first one that answers successfully.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from collabsync.config import Settings
from collabsync.errors import RemoteMemoryError
from collabsync.types import MemoryRecord, format_datetime, parse_datetime
from collabsync.utils import validate_backend_url

logger = logging.getLogger(__name__)

HEALTH_ENDPOINTS = ("/api/health", "/health", "/api/status", "/status", "/memories", "/api/memory/search")
SEARCH_ENDPOINTS = ("/api/memory/search", "/memories", "/api/memories")
ADD_ENDPOINTS = ("/api/memory/add", "/memories")

# A memory endpoint answering 401/403 still proves the API exists
_AUTH_STATUSES = frozenset({401, 403})


def infer_memory_type(text: str) -> str:
    """Best-effort type for remote memories that carry none."""
    lowered = text.lower()
    if "file" in lowered:
        return "file_operation"
    if "search" in lowered:
        return "search"
    if "preference" in lowered:
        return "preference"
    return "custom"


def _is_memory_endpoint(endpoint: str) -> bool:
    return "memories" in endpoint or "search" in endpoint


class Mem0Client:
    """Async client for the remote memory API.

    Args:
        base_url: API root. Must be https (http only for localhost).
        api_key: Bearer token.
        timeout: Timeout for list requests in seconds.
        push_timeout: Timeout for add requests in seconds.
        health_timeout: Timeout for connectivity probes in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        push_timeout: float = 5.0,
        health_timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        validated = validate_backend_url(base_url)
        if not validated:
            raise ValueError(f"Refusing unsafe or invalid memory API URL: {base_url!r}")
        if not api_key:
            raise ValueError("Memory API key cannot be empty")

        self.base_url = validated
        self.timeout = timeout
        self.push_timeout = push_timeout
        self.health_timeout = health_timeout
        self._http = httpx.AsyncClient(
            base_url=validated,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mem0Client":
        base_url = settings.mem0_base_url
        if not base_url or not settings.mem0_api_key:
            raise ValueError(
                "COLLABSYNC_MEM0_API_URL (https, or http on localhost) and COLLABSYNC_MEM0_API_KEY must be set"
            )
        return cls(
            base_url,
            settings.mem0_api_key,
            timeout=settings.http_timeout,
            push_timeout=settings.push_timeout,
            health_timeout=settings.health_timeout,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "Mem0Client":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # === Connectivity ===

    async def check_connection(self) -> bool:
        """Probe the API. Never raises; any failure means unreachable."""
        try:
            response = await self._http.head("", timeout=self.health_timeout)
            if response.is_success or response.status_code in _AUTH_STATUSES:
                return True
        except httpx.HTTPError as e:
            logger.debug(f"Direct connection to {self.base_url} failed: {e}")

        for endpoint in HEALTH_ENDPOINTS:
            method = "HEAD" if _is_memory_endpoint(endpoint) else "GET"
            try:
                response = await self._http.request(method, endpoint, timeout=self.health_timeout)
            except httpx.HTTPError as e:
                logger.debug(f"Connection test failed for {endpoint}: {e}")
                continue
            if response.is_success:
                return True
            if _is_memory_endpoint(endpoint) and response.status_code in _AUTH_STATUSES:
                return True

        logger.info(f"Memory API at {self.base_url} is unreachable")
        return False

    # === Memories ===

    async def list_memories(self, user_id: str, scope: str) -> List[MemoryRecord]:
        body = {
            "user_id": user_id,
            "query": "",
            "limit": 1000,
            "filter": {"metadata": {"ai_family_member_id": scope}},
        }
        response = await self._post_first(SEARCH_ENDPOINTS, body, self.timeout, "list memories")
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteMemoryError(f"Memory list response is not JSON: {e}") from e

        records = []
        for item in _extract_items(data):
            record = self._parse_record(item, user_id, scope)
            if record is not None:
                records.append(record)
        return records

    async def add_memory(self, record: MemoryRecord, user_id: str, scope: str) -> Optional[str]:
        """Push one record. Returns the remote id if the API reports it."""
        body = {
            "user_id": record.user_id or user_id,
            "text": record.memory,
            "memory": record.memory,
            "local_id": record.id,
            "metadata": {
                "ai_family_member_id": record.scope or scope,
                "source": "collabsync",
                "type": record.type or "custom",
                "local_id": record.id,
                "created_at": format_datetime(record.created_at),
                "updated_at": format_datetime(record.last_modified),
            },
        }
        response = await self._post_first(ADD_ENDPOINTS, body, self.push_timeout, "add memory")
        return _extract_id(response)

    async def add_messages(
        self, messages: List[Dict[str, str]], user_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """Store a short conversation (used for collaboration activity)."""
        body = {"messages": messages, "user_id": user_id, "metadata": metadata or {}}
        response = await self._post_first(ADD_ENDPOINTS, body, self.push_timeout, "add messages")
        return _extract_id(response)

    # === Internals ===

    async def _post_first(
        self, endpoints: Iterable[str], body: Dict[str, Any], timeout: float, action: str
    ) -> httpx.Response:
        last_error = "no endpoints tried"
        last_status: Optional[int] = None
        for endpoint in endpoints:
            try:
                response = await self._http.post(endpoint, json=body, timeout=timeout)
            except httpx.HTTPError as e:
                logger.debug(f"{action}: error with endpoint {endpoint}: {e}")
                last_error = str(e) or type(e).__name__
                continue
            if response.is_success:
                return response
            logger.debug(f"{action}: {endpoint} returned HTTP {response.status_code}")
            last_error = f"HTTP {response.status_code} from {endpoint}"
            last_status = response.status_code
        raise RemoteMemoryError(f"All endpoints failed to {action}: {last_error}", last_status)

    def _parse_record(self, item: Any, user_id: str, scope: str) -> Optional[MemoryRecord]:
        if not isinstance(item, dict) or not item.get("id"):
            logger.warning("Skipping remote memory without an id")
            return None

        metadata = item.get("metadata") or {}
        text = item.get("memory") or item.get("text") or ""
        return MemoryRecord(
            id=str(item["id"]),
            memory=text,
            user_id=item.get("user_id") or user_id,
            scope=metadata.get("ai_family_member_id") or scope,
            created_at=parse_datetime(item.get("created_at") or metadata.get("created_at")),
            updated_at=parse_datetime(item.get("updated_at") or metadata.get("updated_at")),
            type=item.get("type") or metadata.get("type") or infer_memory_type(text),
            metadata=metadata,
            local_id=item.get("local_id") or metadata.get("local_id"),
        )


def _extract_items(data: Any) -> List[Any]:
    """Memories may come as a bare list or under results/memories/data."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("results", "memories", "data"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


def _extract_id(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    items = _extract_items(data)
    if items and isinstance(items[0], dict) and items[0].get("id"):
        return str(items[0]["id"])
    return None
