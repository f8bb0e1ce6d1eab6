from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Protocol

from divine.models import NotificationModel, NotificationType, UserProfile, VideoEvent
from divine.nostr import kinds
from divine.nostr.event import Event, Tag
from divine.nostr.relay_client import Filter, build_filter

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown user"
NOTIFICATION_KINDS = [kinds.TEXT_NOTE, kinds.CONTACTS, kinds.REPOST, kinds.REACTION, kinds.GENERIC_REPOST, kinds.COMMENT]


def _first_with_value(tags: Iterable[Tag], name: str) -> Optional[str]:
    for tag in tags:
        if len(tag) > 1 and tag[0] == name and tag[1]:
            return tag[1]
    return None


def extract_video_event_id(tags: Iterable[Tag]) -> Optional[str]:
    """Root ``E`` (NIP-22 comments) first, then the first ``e`` tag."""

    tags = list(tags)
    return _first_with_value(tags, "E") or _first_with_value(tags, "e")


def extract_addressable_id(tags: Iterable[Tag]) -> Optional[str]:
    tags = list(tags)
    return _first_with_value(tags, "A") or _first_with_value(tags, "a")


@dataclass(frozen=True)
class AddressableId:
    kind: int
    pubkey: str
    d_tag: str


def parse_addressable_id(value: str) -> Optional[AddressableId]:
    parts = value.split(":", 2)
    if len(parts) < 3:
        return None
    kind_raw, pubkey, d_tag = parts
    try:
        kind = int(kind_raw)
    except ValueError:
        return None
    return AddressableId(kind=kind, pubkey=pubkey, d_tag=d_tag)


def resolve_actor_name(profile: Optional[UserProfile]) -> str:
    if profile is None:
        return UNKNOWN_USER
    if profile.name:
        return profile.name
    if profile.display_name:
        return profile.display_name
    if profile.nip05:
        local = profile.nip05.split("@", 1)[0]
        if local:
            return local
    return UNKNOWN_USER


def _timestamp(event: Event) -> dt.datetime:
    return dt.datetime.fromtimestamp(event.created_at, tz=dt.timezone.utc)


class NotificationEventParser:
    """Turns tagged events into notification models. Returns None when a required tag is missing."""

    def _build(
        self,
        event: Event,
        notification_type: NotificationType,
        action: str,
        actor_profile: Optional[UserProfile],
        video_event: Optional[VideoEvent] = None,
        target_event_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> NotificationModel:
        actor_name = resolve_actor_name(actor_profile)
        return NotificationModel(
            id=event.id,
            type=notification_type,
            actor_pubkey=event.pubkey,
            actor_name=actor_name,
            actor_picture_url=actor_profile.picture if actor_profile else None,
            message=f"{actor_name} {action}",
            timestamp=_timestamp(event),
            target_event_id=target_event_id,
            target_video_url=video_event.video_url if video_event else None,
            target_video_thumbnail=video_event.thumbnail_url if video_event else None,
            metadata=metadata or {},
        )

    def parse_reaction_event(
        self,
        event: Event,
        actor_profile: Optional[UserProfile] = None,
        video_event: Optional[VideoEvent] = None,
    ) -> Optional[NotificationModel]:
        if event.content.strip() == "-":
            return None
        target = extract_video_event_id(event.tags)
        if target is None:
            return None
        return self._build(event, NotificationType.like, "liked your video", actor_profile, video_event, target)

    def parse_comment_event(
        self,
        event: Event,
        actor_profile: Optional[UserProfile] = None,
        video_event: Optional[VideoEvent] = None,
    ) -> Optional[NotificationModel]:
        target = extract_video_event_id(event.tags)
        if target is None:
            return None
        return self._build(
            event,
            NotificationType.comment,
            "commented on your video",
            actor_profile,
            video_event,
            target,
            metadata={"comment": event.content},
        )

    def parse_follow_event(self, event: Event, actor_profile: Optional[UserProfile] = None) -> NotificationModel:
        return self._build(event, NotificationType.follow, "started following you", actor_profile)

    def parse_mention_event(self, event: Event, actor_profile: Optional[UserProfile] = None) -> NotificationModel:
        return self._build(
            event, NotificationType.mention, "mentioned you", actor_profile, metadata={"text": event.content}
        )

    def parse_repost_event(
        self,
        event: Event,
        actor_profile: Optional[UserProfile] = None,
        video_event: Optional[VideoEvent] = None,
    ) -> Optional[NotificationModel]:
        target = extract_video_event_id(event.tags)
        if target is None:
            return None
        return self._build(event, NotificationType.repost, "reposted your video", actor_profile, video_event, target)


class IdentitySource(Protocol):
    @property
    def current_public_key_hex(self) -> Optional[str]: ...


class EventStream(Protocol):
    def subscribe(self, filters: List[Filter]) -> AsyncIterator[Event]: ...


class VideoLookup(Protocol):
    def find_by_id(self, event_id: str) -> Optional[VideoEvent]: ...


class NotificationService:
    """Live notification feed built from events that tag our pubkey."""

    def __init__(
        self,
        auth_service: IdentitySource,
        relay_client: EventStream,
        parser: Optional[NotificationEventParser] = None,
        videos: Optional[VideoLookup] = None,
        profile_lookup: Optional[Callable[[str], Optional[UserProfile]]] = None,
    ):
        self.auth_service = auth_service
        self.relay_client = relay_client
        self.parser = parser or NotificationEventParser()
        self.videos = videos
        self.profile_lookup = profile_lookup
        self._notifications: Dict[str, NotificationModel] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def notifications(self) -> List[NotificationModel]:
        return sorted(self._notifications.values(), key=lambda n: (-n.timestamp.timestamp(), n.id))

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._notifications.values() if not n.is_read)

    def get_notifications_by_type(self, notification_type: NotificationType) -> List[NotificationModel]:
        return [n for n in self.notifications if n.type == notification_type]

    def mark_as_read(self, notification_id: str) -> bool:
        current = self._notifications.get(notification_id)
        if current is None:
            return False
        self._notifications[notification_id] = replace(current, is_read=True)
        return True

    def mark_all_as_read(self) -> int:
        unread = [key for key, n in self._notifications.items() if not n.is_read]
        for key in unread:
            self._notifications[key] = replace(self._notifications[key], is_read=True)
        return len(unread)

    def _profile(self, pubkey: str) -> Optional[UserProfile]:
        return self.profile_lookup(pubkey) if self.profile_lookup else None

    def _video(self, event_id: Optional[str]) -> Optional[VideoEvent]:
        if not event_id or self.videos is None:
            return None
        return self.videos.find_by_id(event_id)

    def handle_event(self, event: Event) -> Optional[NotificationModel]:
        own = self.auth_service.current_public_key_hex
        if not event.id or event.id in self._notifications:
            return None
        if own and event.pubkey == own:
            return None
        profile = self._profile(event.pubkey)
        video = self._video(extract_video_event_id(event.tags))
        if event.kind == kinds.REACTION:
            notification = self.parser.parse_reaction_event(event, profile, video)
        elif event.kind == kinds.COMMENT:
            notification = self.parser.parse_comment_event(event, profile, video)
        elif event.kind == kinds.CONTACTS:
            notification = self.parser.parse_follow_event(event, profile)
        elif event.kind == kinds.TEXT_NOTE:
            notification = self.parser.parse_mention_event(event, profile)
        elif event.kind in (kinds.REPOST, kinds.GENERIC_REPOST):
            notification = self.parser.parse_repost_event(event, profile, video)
        else:
            logger.debug("Ignoring kind %s event %s", event.kind, event.id)
            return None
        if notification is not None:
            self._notifications[notification.id] = notification
        return notification

    def start(self) -> Optional[asyncio.Task]:
        own = self.auth_service.current_public_key_hex
        if not own:
            logger.debug("Not subscribing to notifications without an identity")
            return None
        if self._task and not self._task.done():
            return self._task
        filters = [build_filter(kinds=NOTIFICATION_KINDS, p=[own])]

        async def _run() -> None:
            try:
                async for event in self.relay_client.subscribe(filters):
                    self.handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Notification subscription ended: %s", exc)

        self._task = asyncio.create_task(_run())
        return self._task

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
