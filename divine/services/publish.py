from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Protocol

from divine.nostr.event import Event
from divine.services.results import PublishErrorKind, PublishResult

logger = logging.getLogger(__name__)


class Signer(Protocol):
    @property
    def is_authenticated(self) -> bool: ...

    @property
    def current_public_key_hex(self) -> Optional[str]: ...

    async def create_and_sign_event(self, kind: int, content: str, tags: List[List[str]]) -> Optional[Event]: ...


class Publisher(Protocol):
    async def publish_event(self, event: Event) -> Optional[Event]: ...


class AuthenticatedPublisher:
    """Sign as the current identity and broadcast, one publish per key at a time."""

    def __init__(self, auth_service: Signer, publisher: Publisher, timeout_seconds: float = 5):
        self.auth_service = auth_service
        self.publisher = publisher
        self.timeout = timeout_seconds
        self._in_flight: set[str] = set()

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def publish(
        self,
        kind: int,
        content: str,
        tags: List[List[str]],
        key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> PublishResult:
        if not self.auth_service.is_authenticated:
            return PublishResult.failure(
                PublishErrorKind.not_authenticated, "Not authenticated", errors={"auth": "Not authenticated"}
            )
        if key is not None and key in self._in_flight:
            return self._duplicate(key)
        if key is not None:
            self._in_flight.add(key)
        try:
            signed = await self.auth_service.create_and_sign_event(kind, content, tags)
            if signed is None:
                logger.error("Signing failed for kind %s event", kind)
                return PublishResult.failure(
                    PublishErrorKind.signing_failed, "Failed to sign event", errors={"signing": "Failed to sign event"}
                )
            return await self._broadcast(signed, timeout_seconds)
        finally:
            if key is not None:
                self._in_flight.discard(key)

    async def publish_signed(
        self, event: Event, key: Optional[str] = None, timeout_seconds: Optional[float] = None
    ) -> PublishResult:
        """Republish an event that was signed earlier, e.g. on retry."""

        if key is not None and key in self._in_flight:
            return self._duplicate(key)
        if key is not None:
            self._in_flight.add(key)
        try:
            return await self._broadcast(event, timeout_seconds)
        finally:
            if key is not None:
                self._in_flight.discard(key)

    def _duplicate(self, key: str) -> PublishResult:
        logger.debug("Publish for %s already in flight", key)
        message = "Publish already in progress"
        return PublishResult.failure(PublishErrorKind.duplicate_in_flight, message, errors={"duplicate": message})

    async def _broadcast(self, signed: Event, timeout_seconds: Optional[float]) -> PublishResult:
        bound = timeout_seconds if timeout_seconds is not None else self.timeout
        try:
            accepted = await asyncio.wait_for(self.publisher.publish_event(signed), timeout=bound)
        except asyncio.TimeoutError:
            message = f"Publish timed out after {bound:g}s"
            logger.warning("Event %s: %s", signed.id, message)
            return PublishResult.failure(PublishErrorKind.timeout, message, event=signed, errors={"timeout": message})
        except Exception as exc:  # noqa: BLE001
            message = f"Failed to publish: {exc}"
            logger.error("Event %s: %s", signed.id, message)
            return PublishResult.failure(PublishErrorKind.publish_failed, message, event=signed, errors={"publish": message})
        if accepted is None:
            message = "No relay accepted the event"
            logger.error("Event %s: %s", signed.id, message)
            return PublishResult.failure(PublishErrorKind.publish_failed, message, event=signed, errors={"publish": message})
        logger.info("Published kind %s event %s", signed.kind, signed.id)
        return PublishResult.ok(accepted)
