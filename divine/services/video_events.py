from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

from divine.models import VideoEvent, VideoEventError
from divine.nostr import kinds
from divine.nostr.event import Event, replace_tags
from divine.services.publish import AuthenticatedPublisher

logger = logging.getLogger(__name__)

DEFAULT_RELAY_HINT = "wss://relay.divine.video"


class ConfiguredRelays(Protocol):
    @property
    def configured_relays(self) -> List[str]: ...


class VideoEventService:
    """In-memory video index keyed by addressable coordinate.

    Locally published videos are inserted optimistically and stay pending
    until the relay stream confirms them via :meth:`reconcile`.
    """

    def __init__(self) -> None:
        self._videos: Dict[str, VideoEvent] = {}
        self._pending: set[str] = set()

    @property
    def videos(self) -> List[VideoEvent]:
        return sorted(self._videos.values(), key=lambda video: (-video.created_at, video.id))

    def get(self, addressable_id: str) -> Optional[VideoEvent]:
        return self._videos.get(addressable_id)

    def find_by_id(self, event_id: str) -> Optional[VideoEvent]:
        return next((video for video in self._videos.values() if video.id == event_id), None)

    def is_pending(self, addressable_id: str) -> bool:
        return addressable_id in self._pending

    def add_video_event(self, video: VideoEvent, optimistic: bool = True) -> None:
        key = video.addressable_id
        current = self._videos.get(key)
        if current and current.created_at > video.created_at:
            return
        self._videos[key] = video
        if optimistic:
            self._pending.add(key)
        else:
            self._pending.discard(key)

    def rollback(self, video: VideoEvent, previous: Optional[VideoEvent]) -> None:
        key = video.addressable_id
        if self._videos.get(key) is not video:
            return
        self._pending.discard(key)
        if previous is None:
            self._videos.pop(key, None)
        else:
            self._videos[key] = previous

    def reconcile(self, event: Event) -> Optional[VideoEvent]:
        """Apply an authoritative event unless the local copy is newer."""

        try:
            incoming = VideoEvent.from_event(event)
        except VideoEventError:
            return None
        key = incoming.addressable_id
        current = self._videos.get(key)
        if current and current.created_at > incoming.created_at:
            logger.debug("Keeping newer local copy of %s", key)
            return current
        self._videos[key] = incoming
        self._pending.discard(key)
        return incoming


class VideoEventPublisher:
    def __init__(
        self,
        relay_client: ConfiguredRelays,
        publisher: AuthenticatedPublisher,
        video_event_service: Optional[VideoEventService] = None,
    ):
        self.relay_client = relay_client
        self.publisher = publisher
        self.video_event_service = video_event_service

    def _relay_hint(self) -> str:
        configured = self.relay_client.configured_relays
        return configured[0] if configured else DEFAULT_RELAY_HINT

    async def republish_with_subtitles(
        self,
        existing_event: VideoEvent,
        text_track_ref: str,
        text_track_lang: str = "en",
    ) -> bool:
        """Republish a video with a ``text-track`` tag pointing at its subtitles."""

        tags = replace_tags(
            existing_event.tags,
            "text-track",
            ["text-track", text_track_ref, self._relay_hint(), "captions", text_track_lang],
        )

        signed = await self.publisher.auth_service.create_and_sign_event(kinds.VIDEO, existing_event.content, tags)
        if signed is None:
            logger.error("Failed to sign republished video %s with subtitles", existing_event.id)
            return False

        optimistic: Optional[VideoEvent] = None
        previous: Optional[VideoEvent] = None
        if self.video_event_service is not None:
            try:
                optimistic = VideoEvent.from_event(signed)
            except VideoEventError as exc:
                logger.warning("Could not index republished video: %s", exc)
            else:
                previous = self.video_event_service.get(optimistic.addressable_id)
                self.video_event_service.add_video_event(optimistic)

        result = await self.publisher.publish_signed(signed)
        if not result.success:
            logger.warning("Republish of %s with subtitles failed: %s", existing_event.id, result.error)
            if self.video_event_service is not None and optimistic is not None:
                self.video_event_service.rollback(optimistic, previous)
            return False
        return True
