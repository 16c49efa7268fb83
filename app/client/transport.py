"""httpx-backed command transport and Server-Sent-Events subscription."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Sequence

import httpx

from app.auth.identity import UserIdentity

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]


class CommandError(Exception):
    """A command the server rejected (validation, not found, forbidden)."""

    def __init__(self, status_code: int, detail: Any) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class CommandTransport(Protocol):
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any: ...


class EventSource(Protocol):
    def events(
        self, session_id: str, topics: Sequence[str]
    ) -> AsyncIterator[JSONCompatibleDict]: ...


def identity_headers(identity: UserIdentity) -> Dict[str, str]:
    headers = {
        "X-User-Id": identity.user_id,
        "X-User-Name": identity.display_name,
    }
    if identity.avatar:
        headers["X-User-Avatar"] = identity.avatar
    if identity.roles:
        headers["X-User-Roles"] = ",".join(identity.roles)
    return headers


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[JSONCompatibleDict]:
    """Turn ``data:`` lines into decoded events; comments and other fields are skipped."""
    buffer = []
    async for line in lines:
        if not line:
            if buffer:
                payload = "\n".join(buffer)
                buffer = []
                try:
                    event = json.loads(payload)
                except ValueError:
                    logger.warning("Discarding malformed event payload: %r", payload[:200])
                    continue
                if isinstance(event, dict):
                    yield event
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip())


class HttpCommandTransport:
    """Issues commands against the HTTP API on behalf of one user."""

    def __init__(
        self,
        identity: UserIdentity,
        *,
        base_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.identity = identity
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        response = await self.client.request(
            method,
            path,
            json=json,
            params=params,
            headers=identity_headers(self.identity),
        )
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            logger.info("%s %s rejected: %s %s", method, path, response.status_code, detail)
            raise CommandError(response.status_code, detail)
        if not response.content:
            return None
        return response.json()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class SseEventSource:
    """Streams ``/api/retrospectives/{id}/events`` through an httpx client."""

    def __init__(
        self,
        identity: UserIdentity,
        *,
        base_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.identity = identity
        # No read timeout: the stream is expected to stay idle between events.
        self.client = client or httpx.AsyncClient(
            base_url=base_url, timeout=httpx.Timeout(10.0, read=None)
        )

    async def events(
        self, session_id: str, topics: Sequence[str]
    ) -> AsyncIterator[JSONCompatibleDict]:
        params = {"topics": ",".join(topics)} if topics else {}
        async with self.client.stream(
            "GET",
            f"/api/retrospectives/{session_id}/events",
            params=params,
            headers=identity_headers(self.identity),
        ) as response:
            response.raise_for_status()
            async for event in parse_sse(response.aiter_lines()):
                yield event

    async def aclose(self) -> None:
        await self.client.aclose()
