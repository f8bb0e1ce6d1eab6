from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from divine.models import VideoEvent
from divine.nostr import kinds
from divine.services.publish import AuthenticatedPublisher
from divine.services.results import PublishResult

logger = logging.getLogger(__name__)

DEFAULT_RELAY_HINT = "wss://relay.divine.video"


class ConfiguredRelays(Protocol):
    @property
    def configured_relays(self) -> List[str]: ...


class EngagementService:
    """NIP-25 reactions and NIP-18 reposts of videos."""

    def __init__(self, publisher: AuthenticatedPublisher, relay_client: Optional[ConfiguredRelays] = None):
        self.publisher = publisher
        self.relay_client = relay_client

    def _relay_hint(self) -> str:
        configured = self.relay_client.configured_relays if self.relay_client else []
        return configured[0] if configured else DEFAULT_RELAY_HINT

    async def publish_reaction(self, video: VideoEvent, content: str = "+") -> PublishResult:
        tags = [
            ["e", video.id, self._relay_hint()],
            ["p", video.pubkey],
            ["k", str(video.kind)],
        ]
        if kinds.is_addressable(video.kind):
            tags.append(["a", video.addressable_id])
        result = await self.publisher.publish(kinds.REACTION, content, tags, key=f"reaction:{video.id}")
        if not result.success:
            logger.warning("Reaction to %s failed: %s", video.id, result.error)
        return result

    async def repost_video(self, video: VideoEvent) -> PublishResult:
        """Repost with kind 6; addressable videos also carry their ``a`` coordinate."""

        hint = self._relay_hint()
        tags = [["e", video.id, hint], ["p", video.pubkey], ["k", str(video.kind)]]
        if kinds.is_addressable(video.kind):
            tags.append(["a", video.addressable_id, hint])
        result = await self.publisher.publish(kinds.REPOST, "", tags, key=f"repost:{video.id}")
        if not result.success:
            logger.warning("Repost of %s failed: %s", video.id, result.error)
        return result
