from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from divine.auth.service import AuthService
from divine.nostr import kinds
from divine.nostr.event import Event, addressable_coordinate, first_tag_value
from divine.nostr.relay_client import Filter, build_filter
from divine.services.publish import AuthenticatedPublisher

logger = logging.getLogger(__name__)

DEFAULT_REASON = "User requested account deletion via diVine app"


class EventSource(Protocol):
    async def query_events(self, filters: List[Filter], timeout_seconds: float | None = None) -> List[Event]: ...


@dataclass(frozen=True)
class DeleteAccountResult:
    success: bool
    error: Optional[str] = None
    deleted_events_count: int = 0
    deletion_event: Optional[Event] = None


def build_nip09_tags(kind: int, events: List[Event]) -> List[List[str]]:
    """``e`` tag per event, ``a`` coordinates for addressable ones, then one ``k``."""

    tags: List[List[str]] = [["e", event.id] for event in events if event.id]
    if kinds.is_addressable(kind):
        for event in events:
            identifier = first_tag_value(event.tags, "d")
            if identifier is not None:
                tags.append(["a", addressable_coordinate(kind, event.pubkey, identifier)])
    tags.append(["k", str(kind)])
    return tags


def group_by_kind(events: List[Event]) -> Dict[int, List[Event]]:
    grouped: Dict[int, List[Event]] = {}
    for event in events:
        grouped.setdefault(event.kind, []).append(event)
    return grouped


class AccountDeletionService:
    """NIP-09 deletion of everything we authored followed by a NIP-62 vanish request."""

    def __init__(self, auth_service: AuthService, relay_client: EventSource, publisher: AuthenticatedPublisher):
        self.auth_service = auth_service
        self.relay_client = relay_client
        self.publisher = publisher

    async def create_nip62_event(self, reason: str = DEFAULT_REASON) -> Optional[Event]:
        return await self.auth_service.create_and_sign_event(
            kinds.ACCOUNT_DELETION, reason, [["relay", "ALL_RELAYS"]]
        )

    async def _fetch_own_events(self, pubkey: str) -> List[Event]:
        try:
            events = await self.relay_client.query_events([build_filter(authors=[pubkey])])
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not load own events before deletion: %s", exc)
            return []
        # Deleting the deletions would only add noise.
        return [event for event in events if event.pubkey == pubkey and event.kind != kinds.DELETION]

    async def delete_account(self, reason: str = DEFAULT_REASON) -> DeleteAccountResult:
        if not self.auth_service.is_authenticated:
            return DeleteAccountResult(success=False, error="Not authenticated")
        pubkey = self.auth_service.current_public_key_hex or ""

        deleted = 0
        for kind, events in group_by_kind(await self._fetch_own_events(pubkey)).items():
            result = await self.publisher.publish(kinds.DELETION, "Account deleted", build_nip09_tags(kind, events))
            if result.success:
                deleted += len(events)
            else:
                logger.warning("NIP-09 deletion for kind %s failed: %s", kind, result.error)

        deletion_event = await self.create_nip62_event(reason)
        if deletion_event is None:
            return DeleteAccountResult(
                success=False, error="Failed to create deletion event", deleted_events_count=deleted
            )
        result = await self.publisher.publish_signed(deletion_event)
        if not result.success:
            return DeleteAccountResult(
                success=False,
                error="Failed to publish deletion request",
                deleted_events_count=deleted,
                deletion_event=deletion_event,
            )
        logger.info("Account deletion request %s published (%s events deleted)", deletion_event.id, deleted)
        return DeleteAccountResult(success=True, deleted_events_count=deleted, deletion_event=deletion_event)
