from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from divine.nostr import kinds
from divine.nostr.event import Event, Tag, addressable_coordinate, first_tag_value


class VideoEventError(Exception):
    pass


def _imeta_field(tags: List[Tag], name: str) -> Optional[str]:
    # imeta packs "key value" pairs into one tag.
    prefix = f"{name} "
    for tag in tags:
        if tag and tag[0] == "imeta":
            for item in tag[1:]:
                if item.startswith(prefix):
                    return item[len(prefix):]
    return None


@dataclass(frozen=True)
class VideoEvent:
    id: str
    pubkey: str
    created_at: int
    kind: int = kinds.VIDEO
    content: str = ""
    vine_id: Optional[str] = None
    title: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    tags: List[Tag] = field(default_factory=list)

    @classmethod
    def from_event(cls, event: Event) -> "VideoEvent":
        if not kinds.is_video(event.kind):
            raise VideoEventError(f"Kind {event.kind} is not a video event")
        tags = [list(tag) for tag in event.tags]
        return cls(
            id=event.id,
            pubkey=event.pubkey,
            created_at=event.created_at,
            kind=event.kind,
            content=event.content,
            vine_id=first_tag_value(tags, "d"),
            title=first_tag_value(tags, "title"),
            video_url=first_tag_value(tags, "url") or _imeta_field(tags, "url"),
            thumbnail_url=first_tag_value(tags, "thumb") or _imeta_field(tags, "image"),
            tags=tags,
        )

    @property
    def addressable_id(self) -> str:
        return addressable_coordinate(self.kind, self.pubkey, self.vine_id or self.id)

    @property
    def timestamp(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.created_at, tz=dt.timezone.utc)


@dataclass(frozen=True)
class UserProfile:
    pubkey: str
    name: Optional[str] = None
    display_name: Optional[str] = None
    nip05: Optional[str] = None
    picture: Optional[str] = None


class NotificationType(str, Enum):
    like = "like"
    comment = "comment"
    follow = "follow"
    mention = "mention"
    repost = "repost"
    system = "system"


@dataclass(frozen=True)
class NotificationModel:
    id: str
    type: NotificationType
    actor_pubkey: str
    actor_name: str
    message: str
    timestamp: dt.datetime
    actor_picture_url: Optional[str] = None
    target_event_id: Optional[str] = None
    target_video_url: Optional[str] = None
    target_video_thumbnail: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    is_read: bool = False
