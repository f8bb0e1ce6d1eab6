from __future__ import annotations

import datetime as dt
import json
import logging
from collections import Counter
from typing import Any, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from divine.auth.nip98 import HttpMethod, Nip98AuthService

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15
USER_AGENT = "OpenVine-Mobile/1.0"


class RelayNotification(BaseModel):
    id: str = ""
    source_pubkey: str = ""
    source_event_id: str = ""
    source_kind: int = 0
    referenced_event_id: Optional[str] = None
    notification_type: str = "unknown"
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    read: bool = False
    content: Optional[str] = None

    @field_validator("id", "source_pubkey", "source_event_id", mode="before")
    @classmethod
    def coerce_text(cls, value: Any):
        return "" if value is None else str(value)

    @field_validator("notification_type", mode="before")
    @classmethod
    def default_type(cls, value: Any):
        return "unknown" if value is None else str(value)

    @field_validator("source_kind", mode="before")
    @classmethod
    def coerce_kind(cls, value: Any):
        return value if isinstance(value, int) else 0

    @field_validator("read", mode="before")
    @classmethod
    def coerce_read(cls, value: Any):
        return value if isinstance(value, bool) else False

    @field_validator("created_at", mode="before")
    @classmethod
    def parse_created_at(cls, value: Any):
        # Unix seconds or ISO-8601; anything else means "now".
        if isinstance(value, bool):
            return dt.datetime.now(dt.timezone.utc)
        if isinstance(value, int):
            return dt.datetime.fromtimestamp(value, tz=dt.timezone.utc)
        if isinstance(value, str):
            try:
                return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                pass
        return dt.datetime.now(dt.timezone.utc)


class NotificationsResponse(BaseModel):
    notifications: List[RelayNotification] = Field(default_factory=list)
    unread_count: int = 0
    next_cursor: Optional[str] = None
    has_more: bool = False

    @field_validator("notifications", mode="before")
    @classmethod
    def default_list(cls, value: Any):
        return [] if value is None else value

    @field_validator("unread_count", mode="before")
    @classmethod
    def coerce_count(cls, value: Any):
        return value if isinstance(value, int) and not isinstance(value, bool) else 0

    @field_validator("has_more", mode="before")
    @classmethod
    def coerce_has_more(cls, value: Any):
        return value if isinstance(value, bool) else False

    @field_validator("next_cursor", mode="before")
    @classmethod
    def cursor_text(cls, value: Any):
        return None if value is None else str(value)

    @classmethod
    def empty(cls) -> "NotificationsResponse":
        return cls()


class MarkReadResponse(BaseModel):
    success: bool = False
    marked_count: int = 0
    error: Optional[str] = None


class RelayNotificationApiService:
    """Client for the relay's notifications REST API, authenticated with NIP-98."""

    def __init__(
        self,
        base_url: Optional[str],
        nip98_auth_service: Nip98AuthService,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.nip98 = nip98_auth_service
        self.timeout = timeout_seconds
        self._http = http_client

    @property
    def is_available(self) -> bool:
        return bool(self.base_url)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http is not None:
            return await self._http.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    def _headers(self, authorization: str) -> dict[str, str]:
        return {"Accept": "application/json", "User-Agent": USER_AGENT, "Authorization": authorization}

    async def get_notifications(
        self,
        pubkey: str,
        types: Optional[List[str]] = None,
        unread_only: bool = False,
        limit: int = 50,
        before: Optional[str] = None,
    ) -> NotificationsResponse:
        if not self.is_available:
            logger.debug("Notifications API not available (no base URL configured)")
            return NotificationsResponse.empty()
        if not pubkey:
            logger.warning("Cannot fetch notifications without pubkey")
            return NotificationsResponse.empty()

        params: dict[str, str] = {"limit": str(limit)}
        if types:
            params["types"] = ",".join(types)
        if unread_only:
            params["unread_only"] = "true"
        if before is not None:
            params["before"] = before
        url = str(httpx.URL(f"{self.base_url}/api/users/{pubkey}/notifications", params=params))

        token = await self.nip98.create_auth_token(url, HttpMethod.GET)
        if token is None:
            logger.warning("Failed to create NIP-98 token for notifications")
            return NotificationsResponse.empty()

        try:
            response = await self._send("GET", url, headers=self._headers(token.authorization_header))
        except httpx.HTTPError as exc:
            logger.warning("Error fetching notifications: %s", exc)
            return NotificationsResponse.empty()

        if response.status_code == 404:
            logger.debug("Notifications endpoint returned 404 (no notifications yet)")
            return NotificationsResponse.empty()
        if response.status_code == 401:
            logger.warning("Notifications API authentication failed (401) for %s", url)
            return NotificationsResponse.empty()
        if response.status_code != 200:
            logger.warning("Notifications API error %s: %s", response.status_code, response.text[:500])
            return NotificationsResponse.empty()

        try:
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("Expected a JSON object")
            result = NotificationsResponse.model_validate(data)
        except (ValueError, ValidationError) as exc:
            logger.warning("Malformed notifications response: %s", exc)
            return NotificationsResponse.empty()

        breakdown = Counter(n.notification_type for n in result.notifications)
        logger.debug(
            "Received %s notifications, unread: %s, has_more: %s, types: %s",
            len(result.notifications),
            result.unread_count,
            result.has_more,
            dict(breakdown),
        )
        return result

    async def mark_as_read(self, pubkey: str, notification_ids: Optional[List[str]] = None) -> MarkReadResponse:
        """Mark the given notifications read; no ids marks everything read."""

        if not self.is_available:
            return MarkReadResponse(success=False, error="API not available")
        if not pubkey:
            return MarkReadResponse(success=False, error="Missing pubkey")

        url = f"{self.base_url}/api/users/{pubkey}/notifications/read"
        body: dict[str, Any] = {}
        if notification_ids:
            body["notification_ids"] = list(notification_ids)
        payload = json.dumps(body)

        token = await self.nip98.create_auth_token(url, HttpMethod.POST, payload=payload)
        if token is None:
            return MarkReadResponse(success=False, error="Auth token creation failed")

        headers = self._headers(token.authorization_header)
        headers["Content-Type"] = "application/json"
        try:
            response = await self._send("POST", url, headers=headers, content=payload)
        except httpx.HTTPError as exc:
            logger.warning("Error marking notifications as read: %s", exc)
            return MarkReadResponse(success=False, error=str(exc))

        if response.status_code == 401:
            logger.warning("Mark as read API authentication failed (401)")
            return MarkReadResponse(success=False, error="Authentication failed")
        if response.status_code != 200:
            logger.warning("Mark as read API error: %s", response.status_code)
            return MarkReadResponse(success=False, error=f"HTTP {response.status_code}")
        try:
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("Expected a JSON object")
            return MarkReadResponse.model_validate(data)
        except (ValueError, ValidationError) as exc:
            logger.warning("Malformed mark-as-read response: %s", exc)
            return MarkReadResponse(success=False, error="Malformed response")

    async def get_unread_count(self, pubkey: str) -> int:
        response = await self.get_notifications(pubkey, limit=1, unread_only=True)
        return response.unread_count

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
