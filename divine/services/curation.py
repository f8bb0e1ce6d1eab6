from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Protocol

from divine.nostr import kinds
from divine.nostr.event import Event, first_tag_value, tag_values
from divine.nostr.relay_client import Filter, build_filter
from divine.services.publish import AuthenticatedPublisher
from divine.services.results import PublishResult

logger = logging.getLogger(__name__)

CLIENT_NAME = "diVine"
PUBLISH_TIMEOUT_SECONDS = 5
REFRESH_TIMEOUT_SECONDS = 10
MAX_BACKOFF_EXPONENT = 10


class CurationRelay(Protocol):
    @property
    def configured_relays(self) -> List[str]: ...

    @property
    def connected_relays(self) -> List[str]: ...

    def subscribe(self, filters: List[Filter]) -> AsyncIterator[Event]: ...


@dataclass(frozen=True)
class CurationSet:
    id: str
    curator_pubkey: str
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    video_ids: List[str] = field(default_factory=list)
    created_at: int = 0

    @classmethod
    def from_event(cls, event: Event) -> Optional["CurationSet"]:
        if event.kind != kinds.CURATION_SET:
            return None
        identifier = first_tag_value(event.tags, "d")
        if not identifier:
            return None
        return cls(
            id=identifier,
            curator_pubkey=event.pubkey,
            title=first_tag_value(event.tags, "title") or identifier,
            description=first_tag_value(event.tags, "description"),
            image_url=first_tag_value(event.tags, "image"),
            video_ids=tag_values(event.tags, "e"),
            created_at=event.created_at,
        )


SAMPLE_CURATION_SETS = (
    CurationSet(
        id="editors_picks",
        curator_pubkey="divine",
        title="Editor's Picks",
        description="Hand picked loops from the diVine team",
    ),
    CurationSet(
        id="trending",
        curator_pubkey="divine",
        title="Trending",
        description="What everyone is watching right now",
    ),
    CurationSet(
        id="classic_vines",
        curator_pubkey="divine",
        title="Classic Vines",
        description="Loops rescued from the original archive",
    ),
)


class PublishState(str, Enum):
    unpublished = "unpublished"
    publishing = "publishing"
    published = "published"
    failed = "failed"


@dataclass(frozen=True)
class CurationPublishStatus:
    curation_id: str
    is_publishing: bool = False
    is_published: bool = False
    last_published_at: Optional[dt.datetime] = None
    last_attempt_at: Optional[dt.datetime] = None
    failed_attempts: int = 0
    last_failure_reason: Optional[str] = None
    published_event_id: Optional[str] = None
    signed_event: Optional[Event] = None
    # unsigned content, kept so a set that never got signed can be retried
    content: Optional[str] = None
    tags: Optional[List[List[str]]] = None

    @property
    def state(self) -> PublishState:
        if self.is_publishing:
            return PublishState.publishing
        if self.is_published:
            return PublishState.published
        if self.failed_attempts:
            return PublishState.failed
        return PublishState.unpublished

    @property
    def is_error(self) -> bool:
        return self.state == PublishState.failed

    @property
    def status_text(self) -> str:
        if self.state == PublishState.publishing:
            return "Publishing..."
        if self.state == PublishState.published:
            return "Published"
        if self.state == PublishState.failed:
            return f"Error: {self.last_failure_reason or 'publish failed'}"
        return "Not published"


@dataclass(frozen=True)
class CurationPublishResult:
    success: bool
    success_count: int = 0
    total_relays: int = 0
    event_id: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)


def get_retry_delay(attempt: int) -> dt.timedelta:
    exponent = max(0, min(attempt, MAX_BACKOFF_EXPONENT))
    return dt.timedelta(seconds=2**exponent)


def build_curation_tags(
    curation_id: str,
    title: str,
    video_ids: List[str],
    description: Optional[str] = None,
    image_url: Optional[str] = None,
    client: str = CLIENT_NAME,
) -> List[List[str]]:
    tags = [["d", curation_id], ["title", title]]
    if description:
        tags.append(["description", description])
    if image_url:
        tags.append(["image", image_url])
    tags.append(["client", client])
    tags.extend(["e", video_id] for video_id in video_ids)
    return tags


class CurationService:
    """NIP-51 video curation sets: local index, publishing and retry."""

    def __init__(
        self,
        relay_client: CurationRelay,
        publisher: AuthenticatedPublisher,
        publish_timeout_seconds: float = PUBLISH_TIMEOUT_SECONDS,
        refresh_timeout_seconds: float = REFRESH_TIMEOUT_SECONDS,
        client_name: str = CLIENT_NAME,
    ):
        self.relay_client = relay_client
        self.publisher = publisher
        self.publish_timeout = publish_timeout_seconds
        self.refresh_timeout = refresh_timeout_seconds
        self.client_name = client_name
        self._sets: Dict[str, CurationSet] = {}
        self._status: Dict[str, CurationPublishStatus] = {}
        self._subscription: Optional[asyncio.Task] = None
        self._retry_worker: Optional[asyncio.Task] = None
        self._load_sample_data()

    def _load_sample_data(self) -> None:
        for sample in SAMPLE_CURATION_SETS:
            self._sets.setdefault(sample.id, sample)

    @property
    def curation_sets(self) -> List[CurationSet]:
        return list(self._sets.values())

    def get_curation_set(self, curation_id: str) -> Optional[CurationSet]:
        return self._sets.get(curation_id)

    def get_curation_publish_status(self, curation_id: str) -> CurationPublishStatus:
        return self._status.get(curation_id) or CurationPublishStatus(curation_id=curation_id)

    def apply_event(self, event: Event) -> Optional[CurationSet]:
        """Index a curation event; newer ``created_at`` wins over what we hold."""

        parsed = CurationSet.from_event(event)
        if parsed is None:
            return None
        current = self._sets.get(parsed.id)
        if current and current.created_at > parsed.created_at:
            logger.debug("Ignoring stale curation set %s", parsed.id)
            return current
        self._sets[parsed.id] = parsed
        return parsed

    async def _collect(self, filters: List[Filter]) -> None:
        async for event in self.relay_client.subscribe(filters):
            try:
                self.apply_event(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Skipping malformed curation event %s: %s", event.id, exc)

    async def refresh_curation_sets(self, curator_pubkeys: Optional[List[str]] = None) -> List[CurationSet]:
        filters = [build_filter(kinds=[kinds.CURATION_SET], authors=curator_pubkeys)]
        try:
            await asyncio.wait_for(self._collect(filters), timeout=self.refresh_timeout)
        except asyncio.TimeoutError:
            logger.debug("Curation refresh stopped after %ss", self.refresh_timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Curation refresh failed: %s", exc)
        self._load_sample_data()
        return self.curation_sets

    def subscribe_to_curation_sets(self, curator_pubkeys: Optional[List[str]] = None) -> asyncio.Task:
        if self._subscription and not self._subscription.done():
            return self._subscription
        filters = [build_filter(kinds=[kinds.CURATION_SET], authors=curator_pubkeys)]

        async def _run() -> None:
            try:
                await self._collect(filters)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Curation subscription ended: %s", exc)

        self._subscription = asyncio.create_task(_run())
        return self._subscription

    def _set_status(self, curation_id: str, **changes) -> CurationPublishStatus:
        status = replace(self.get_curation_publish_status(curation_id), **changes)
        self._status[curation_id] = status
        return status

    async def build_curation_event(
        self,
        curation_id: str,
        title: str,
        video_ids: List[str],
        description: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Optional[Event]:
        tags = build_curation_tags(curation_id, title, video_ids, description, image_url, self.client_name)
        return await self.publisher.auth_service.create_and_sign_event(
            kinds.CURATION_SET, description or title, tags
        )

    async def publish_curation(
        self,
        curation_id: str,
        title: str,
        video_ids: List[str],
        description: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> CurationPublishResult:
        total = len(self.relay_client.configured_relays)
        if self.publisher.is_in_flight(curation_id):
            return CurationPublishResult(
                success=False, total_relays=total, errors={"duplicate": "Publish already in progress"}
            )
        tags = build_curation_tags(curation_id, title, video_ids, description, image_url, self.client_name)
        content = description or title
        self._set_status(curation_id, is_publishing=True, last_attempt_at=_now(), content=content, tags=tags)
        result = await self.publisher.publish(
            kinds.CURATION_SET, content, tags, key=curation_id, timeout_seconds=self.publish_timeout
        )
        return self._record(curation_id, result, total)

    async def create_curation_set(
        self,
        curation_id: str,
        title: str,
        video_ids: List[str],
        description: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> bool:
        """Add the set locally right away, then publish it."""

        previous = self._sets.get(curation_id)
        self._sets[curation_id] = CurationSet(
            id=curation_id,
            curator_pubkey=self.publisher.auth_service.current_public_key_hex or "",
            title=title,
            description=description,
            image_url=image_url,
            video_ids=list(video_ids),
            created_at=int(_now().timestamp()),
        )
        result = await self.publish_curation(curation_id, title, video_ids, description, image_url)
        if not result.success and previous is None and "auth" in result.errors:
            self._sets.pop(curation_id, None)
        return result.success

    def _record(self, curation_id: str, result: PublishResult, total: int) -> CurationPublishResult:
        if result.success:
            self._set_status(
                curation_id,
                is_publishing=False,
                is_published=True,
                last_published_at=_now(),
                failed_attempts=0,
                last_failure_reason=None,
                published_event_id=result.event_id,
                signed_event=result.event,
            )
            if result.event is not None:
                self.apply_event(result.event)
            accepted = len(self.relay_client.connected_relays) or 1
            return CurationPublishResult(
                success=True,
                success_count=min(accepted, total) if total else accepted,
                total_relays=total,
                event_id=result.event_id,
            )
        if "duplicate" in result.errors:
            return CurationPublishResult(success=False, total_relays=total, errors=dict(result.errors))
        previous = self.get_curation_publish_status(curation_id)
        self._set_status(
            curation_id,
            is_publishing=False,
            is_published=False,
            failed_attempts=previous.failed_attempts + 1,
            last_failure_reason=result.error,
            signed_event=result.event or previous.signed_event,
        )
        logger.warning("Curation %s publish failed: %s", curation_id, result.error)
        return CurationPublishResult(
            success=False, total_relays=total, event_id=result.event_id, errors=dict(result.errors)
        )

    async def retry_failed_publishes(self, now: Optional[dt.datetime] = None) -> int:
        """Republish failed sets whose backoff has elapsed. Returns how many succeeded."""

        now = now or _now()
        succeeded = 0
        for curation_id, status in list(self._status.items()):
            if status.state != PublishState.failed:
                continue
            if status.signed_event is None and status.tags is None:
                continue
            last = status.last_attempt_at or now
            if now - last < get_retry_delay(status.failed_attempts):
                continue
            self._set_status(curation_id, is_publishing=True, last_attempt_at=now)
            if status.signed_event is not None:
                result = await self.publisher.publish_signed(
                    status.signed_event, key=curation_id, timeout_seconds=self.publish_timeout
                )
            else:
                result = await self.publisher.publish(
                    kinds.CURATION_SET,
                    status.content or "",
                    status.tags,
                    key=curation_id,
                    timeout_seconds=self.publish_timeout,
                )
            outcome = self._record(curation_id, result, len(self.relay_client.configured_relays))
            if outcome.success:
                succeeded += 1
        return succeeded

    def start_retry_worker(self, interval_seconds: float = 30) -> asyncio.Task:
        if self._retry_worker and not self._retry_worker.done():
            return self._retry_worker

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                try:
                    await self.retry_failed_publishes()
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Curation retry pass failed: %s", exc)

        self._retry_worker = asyncio.create_task(_loop())
        return self._retry_worker

    async def stop(self) -> None:
        for task in (self._subscription, self._retry_worker):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._subscription = None
        self._retry_worker = None


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)
