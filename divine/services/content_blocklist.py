from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from divine.nostr import kinds
from divine.nostr.event import Event, tag_values
from divine.nostr.relay_client import Filter, build_filter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventStream(Protocol):
    def subscribe(self, filters: List[Filter]) -> AsyncIterator[Event]: ...


class ContentBlocklistService:
    """Pubkeys hidden from feeds: our own blocks plus people who muted us."""

    def __init__(self, internal_blocklist: Iterable[str] = ()):
        self._internal: set[str] = set(internal_blocklist)
        self._runtime: set[str] = set()
        self._mutual: set[str] = set()
        # Newest mute list timestamp seen per author; replaceable events supersede.
        self._mute_list_versions: Dict[str, int] = {}
        self._sync_task: Optional[asyncio.Task] = None
        self._our_pubkey: Optional[str] = None

    @property
    def total_blocked_count(self) -> int:
        return len(self._internal | self._runtime)

    @property
    def blocking_stats(self) -> dict[str, int]:
        return {
            "total_blocks": self.total_blocked_count,
            "runtime_blocks": len(self._runtime),
            "internal_blocks": len(self._internal),
            "mutual_mutes": len(self._mutual),
        }

    def block_user(self, pubkey: str, our_pubkey: Optional[str] = None) -> None:
        if our_pubkey is not None and pubkey == our_pubkey:
            logger.warning("Ignoring attempt to block our own pubkey")
            return
        self._runtime.add(pubkey)

    def unblock_user(self, pubkey: str) -> None:
        self._runtime.discard(pubkey)

    def is_blocked(self, pubkey: str) -> bool:
        return pubkey in self._runtime or pubkey in self._internal

    def has_muted_us(self, pubkey: str) -> bool:
        return pubkey in self._mutual

    def should_filter_from_feeds(self, pubkey: str) -> bool:
        return self.is_blocked(pubkey) or self.has_muted_us(pubkey)

    def filter_content(self, items: Iterable[T], key: Callable[[T], Optional[str]]) -> List[T]:
        kept = []
        for item in items:
            pubkey = key(item)
            if pubkey and self.should_filter_from_feeds(pubkey):
                continue
            kept.append(item)
        return kept

    def handle_mute_list_event(self, event: Event, our_pubkey: Optional[str] = None) -> None:
        our_pubkey = our_pubkey or self._our_pubkey
        if event.kind != kinds.MUTE_LIST or not our_pubkey:
            return
        seen = self._mute_list_versions.get(event.pubkey)
        if seen is not None and event.created_at < seen:
            logger.debug("Ignoring stale mute list from %s", event.pubkey)
            return
        self._mute_list_versions[event.pubkey] = event.created_at
        if our_pubkey in tag_values(event.tags, "p"):
            self._mutual.add(event.pubkey)
        else:
            self._mutual.discard(event.pubkey)

    def sync_mute_lists_in_background(self, client: EventStream, our_pubkey: str) -> Optional[asyncio.Task]:
        """Follow mute lists that mention us. Calls while a sync is running return it."""

        if self._sync_task and not self._sync_task.done():
            return self._sync_task
        self._our_pubkey = our_pubkey
        stream = client.subscribe([build_filter(kinds=[kinds.MUTE_LIST], p=[our_pubkey])])

        async def _run() -> None:
            try:
                async for event in stream:
                    self.handle_mute_list_event(event, our_pubkey)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Mute list sync ended: %s", exc)

        self._sync_task = asyncio.create_task(_run())
        return self._sync_task

    async def stop(self) -> None:
        if self._sync_task and not self._sync_task.done():
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
        self._sync_task = None
