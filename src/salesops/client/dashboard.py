"""DashboardClient -- httpx consumer of /unified-data and its SSE stream.

``watch`` prefers the event stream and degrades to polling ``/unified-data``
when the stream cannot be opened or drops, retrying the stream after each poll.
Both paths yield the same ``data`` object, so callers never know which one
delivered a snapshot. Snapshots are full state; replaying one is harmless.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterable
from typing import Any

import httpx
import structlog

from src.salesops.records.schemas import ALL_RECIPIENTS, Role, parse_role

logger = structlog.get_logger(__name__)

SSE_DATA_PREFIX = "data:"


class DashboardClient:
    """Role-scoped client for one dashboard user.

    Args:
        base_url: API root, e.g. ``http://localhost:8000``.
        role: Requester role string (``manager``, ``team-leader``, ...).
        user_id: Requester user id.
        team: Managed team for team leaders.
        client: Optional pre-built httpx.AsyncClient (tests pass a mock transport).
        poll_interval_seconds: Delay between polls while the stream is down.
    """

    def __init__(
        self,
        base_url: str = "",
        role: str = "",
        user_id: str = "",
        team: str = "",
        client: httpx.AsyncClient | None = None,
        poll_interval_seconds: float = 5.0,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._owns_client = client is None
        self.role = role
        self.user_id = user_id
        self.team = team
        self.poll_interval_seconds = poll_interval_seconds

    async def __aenter__(self) -> DashboardClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _params(
        self,
        data_types: Iterable[str] | None = None,
        date_range: str = "all",
        limit: int | None = None,
        offset: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "userRole": self.role,
            "userId": self.user_id,
            "dateRange": date_range,
            "offset": offset,
        }
        if self.team:
            params["managedTeam"] = self.team
        if data_types:
            params["dataTypes"] = ",".join(data_types)
        if limit is not None:
            params["limit"] = limit
        return params

    # ── Reads ───────────────────────────────────────────────────────────

    async def fetch_unified(
        self,
        data_types: Iterable[str] | None = None,
        date_range: str = "all",
        limit: int | None = None,
        offset: int = 0,
    ) -> dict[str, Any]:
        """GET /unified-data and return the full response body.

        A 502 (every requested type failed) still carries a JSON body with
        ``success: false``, which is returned rather than raised.

        Raises:
            httpx.HTTPStatusError: For any other non-2xx status.
        """
        response = await self._client.get(
            "/unified-data", params=self._params(data_types, date_range, limit, offset)
        )
        if response.status_code != 502:
            response.raise_for_status()
        return response.json()

    async def stream(
        self,
        data_types: Iterable[str] | None = None,
        date_range: str = "all",
        limit: int | None = None,
        offset: int = 0,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield ``data`` objects from /unified-data/stream until it ends."""
        params = self._params(data_types, date_range, limit, offset)
        async with self._client.stream(
            "GET",
            "/unified-data/stream",
            params=params,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(None, connect=10.0),
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith(SSE_DATA_PREFIX):
                    continue
                try:
                    yield json.loads(line[len(SSE_DATA_PREFIX):].strip())
                except json.JSONDecodeError:
                    logger.warning("client.malformed_event", line=line[:200])

    async def watch(
        self,
        data_types: Iterable[str] | None = None,
        date_range: str = "all",
        limit: int | None = None,
        offset: int = 0,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield live ``data`` snapshots forever, polling while the stream is unavailable."""
        data_types = list(data_types) if data_types else None
        while True:
            try:
                async for snapshot in self.stream(data_types, date_range, limit, offset):
                    yield snapshot
                logger.info("client.stream_ended")
            except (httpx.HTTPError, httpx.StreamError) as exc:
                logger.warning("client.stream_unavailable", error=str(exc))

            try:
                body = await self.fetch_unified(data_types, date_range, limit, offset)
            except httpx.HTTPError as exc:
                logger.warning("client.poll_failed", error=str(exc))
            else:
                if body.get("success"):
                    yield body.get("data", {})
            await asyncio.sleep(self.poll_interval_seconds)


class NotificationTracker:
    """Remembers which notifications were already surfaced to one user.

    ``fresh`` returns only unread notifications addressed to the user (or to
    ``ALL``) that it has not returned before; managers are shown every
    notification. Replayed snapshots therefore never alert twice.
    """

    def __init__(self, user_id: str, role: str | Role | None = None) -> None:
        self.user_id = user_id
        self.role = role if isinstance(role, Role) else parse_role(role)
        self._seen: set[str] = set()

    def addressed(self, notification: dict[str, Any]) -> bool:
        if self.role is Role.MANAGER:
            return True
        recipients = notification.get("recipients") or []
        return ALL_RECIPIENTS in recipients or self.user_id in recipients

    def fresh(self, notifications: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        result = []
        for notification in notifications:
            notification_id = notification.get("id")
            if not notification_id or notification_id in self._seen:
                continue
            if notification.get("read") or not self.addressed(notification):
                continue
            self._seen.add(notification_id)
            result.append(notification)
        return result

    def forget(self, notification_id: str) -> None:
        self._seen.discard(notification_id)

    def __len__(self) -> int:
        return len(self._seen)
