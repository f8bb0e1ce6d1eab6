from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Tuple

from divine.models import VideoEvent
from divine.nostr import kinds
from divine.nostr.event import addressable_coordinate
from divine.services.publish import AuthenticatedPublisher

logger = logging.getLogger(__name__)

CLIENT_ID = "divine-mobile/1.0"
DEFAULT_RELAY_HINT = "wss://relay.divine.video"


class ViewTrafficSource(str, Enum):
    home = "home"
    discovery_new = "discovery:new"
    discovery_classic = "discovery:classic"
    discovery_for_you = "discovery:foryou"
    discovery_popular = "discovery:popular"
    profile = "profile"
    share = "share"
    search = "search"
    unknown = "unknown"


class ConnectedRelays(Protocol):
    @property
    def connected_relays(self) -> List[str]: ...


class ViewEventPublisher:
    """Publishes ephemeral kind 22236 watch-time events for creator analytics."""

    def __init__(
        self,
        relay_client: ConnectedRelays,
        publisher: AuthenticatedPublisher,
        default_relay_hint: str = DEFAULT_RELAY_HINT,
    ):
        self.relay_client = relay_client
        self.publisher = publisher
        self.default_relay_hint = default_relay_hint

    def _relay_hint(self) -> str:
        connected = self.relay_client.connected_relays
        return connected[0] if connected else self.default_relay_hint

    def _can_publish_for(self, video: VideoEvent) -> bool:
        auth = self.publisher.auth_service
        if not auth.is_authenticated:
            logger.warning("Cannot publish view event: user not authenticated")
            return False
        if auth.current_public_key_hex == video.pubkey:
            logger.debug("Skipping view event: self-view of %s", video.id)
            return False
        return True

    def _reference_tags(self, video: VideoEvent) -> List[List[str]]:
        hint = self._relay_hint()
        coordinate = addressable_coordinate(kinds.VIDEO, video.pubkey, video.vine_id or video.id)
        return [["a", coordinate, hint], ["e", video.id, hint]]

    @staticmethod
    def _source_tag(source: ViewTrafficSource, source_detail: Optional[str]) -> List[str]:
        if source_detail:
            return ["source", source.value, source_detail]
        return ["source", source.value]

    async def publish_view_event(
        self,
        video: VideoEvent,
        start_seconds: int,
        end_seconds: int,
        source: ViewTrafficSource = ViewTrafficSource.unknown,
        source_detail: Optional[str] = None,
        loop_count: Optional[int] = None,
    ) -> bool:
        if end_seconds <= start_seconds:
            logger.debug("Skipping view event: no watch time (%s-%s)", start_seconds, end_seconds)
            return False
        if end_seconds - start_seconds < 1:
            logger.debug("Skipping view event: less than 1 second watched")
            return False
        if not self._can_publish_for(video):
            return False

        tags = self._reference_tags(video)
        tags.append(["viewed", str(start_seconds), str(end_seconds)])
        tags.append(self._source_tag(source, source_detail))
        if loop_count is not None and loop_count > 0:
            tags.append(["loops", str(loop_count)])
        tags.append(["client", CLIENT_ID])

        result = await self.publisher.publish(kinds.VIDEO_VIEW, "", tags)
        if not result.success:
            logger.warning("View event publish failed for video %s: %s", video.id, result.error)
            return False
        logger.info("View event published: video=%s, watched=%ss", video.id, end_seconds - start_seconds)
        return True

    async def publish_view_event_with_segments(
        self,
        video: VideoEvent,
        segments: Sequence[Tuple[int, int]],
        source: ViewTrafficSource = ViewTrafficSource.unknown,
        source_detail: Optional[str] = None,
    ) -> bool:
        """One ``viewed`` tag per watched stretch, for viewers who skipped around."""

        valid = [(start, end) for start, end in segments if end > start and end - start >= 1]
        if not valid:
            logger.debug("Skipping view event: no valid segments")
            return False
        if not self._can_publish_for(video):
            return False

        tags = self._reference_tags(video)
        tags.extend(["viewed", str(start), str(end)] for start, end in valid)
        tags.append(self._source_tag(source, source_detail))
        tags.append(["client", CLIENT_ID])

        result = await self.publisher.publish(kinds.VIDEO_VIEW, "", tags)
        if not result.success:
            logger.warning("Segmented view event publish failed for video %s: %s", video.id, result.error)
            return False
        total = sum(end - start for start, end in valid)
        logger.info("View event published: video=%s, segments=%s, total=%ss", video.id, len(valid), total)
        return True
