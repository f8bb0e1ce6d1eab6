import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import websockets

from divine.nostr.event import Event, NostrEventError

logger = logging.getLogger(__name__)

Filter = Dict[str, Any]

_DONE = object()

BASE_COOLDOWN_SECONDS = 5
MAX_COOLDOWN_SECONDS = 120


def build_filter(
    kinds: Optional[Iterable[int]] = None,
    authors: Optional[Iterable[str]] = None,
    ids: Optional[Iterable[str]] = None,
    p: Optional[Iterable[str]] = None,
    e: Optional[Iterable[str]] = None,
    d: Optional[Iterable[str]] = None,
    since: Optional[int] = None,
    until: Optional[int] = None,
    limit: Optional[int] = None,
) -> Filter:
    """Build a NIP-01 filter dict, leaving out unset constraints."""

    flt: Filter = {}
    if kinds is not None:
        flt["kinds"] = list(kinds)
    if authors is not None:
        flt["authors"] = list(authors)
    if ids is not None:
        flt["ids"] = list(ids)
    if p is not None:
        flt["#p"] = list(p)
    if e is not None:
        flt["#e"] = list(e)
    if d is not None:
        flt["#d"] = list(d)
    if since is not None:
        flt["since"] = since
    if until is not None:
        flt["until"] = until
    if limit is not None:
        flt["limit"] = limit
    return flt


@dataclass
class RelayHealth:
    """Failure streak for one relay. Each failure doubles the quiet period, capped at two minutes."""

    failures: int = 0
    retry_after: float = 0.0

    def available(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.retry_after

    def failed(self, now: Optional[float] = None) -> float:
        self.failures += 1
        delay = min(MAX_COOLDOWN_SECONDS, BASE_COOLDOWN_SECONDS * 2 ** (self.failures - 1))
        self.retry_after = (now if now is not None else time.time()) + delay
        return delay

    def succeeded(self) -> None:
        self.failures = 0
        self.retry_after = 0.0


class QueryCache:
    """Results of recent queries keyed by their filters. Any publish clears it."""

    def __init__(self, ttl_seconds: int = 30) -> None:
        self.ttl = ttl_seconds
        self._entries: Dict[str, tuple[float, List[Event]]] = {}

    @staticmethod
    def key(filters: List[Filter]) -> str:
        return json.dumps(filters, sort_keys=True)

    def lookup(self, filters: List[Filter]) -> Optional[List[Event]]:
        key = self.key(filters)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, events = entry
        if time.time() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return list(events)

    def store(self, filters: List[Filter], events: List[Event]) -> None:
        self._entries[self.key(filters)] = (time.time(), list(events))

    def clear(self) -> None:
        self._entries.clear()


class RelayClient:
    """Pool of relays shared by every service. Failing relays rest before they are tried again."""

    def __init__(
        self,
        relays: Iterable[str],
        max_concurrent: int = 5,
        timeout_seconds: float = 5,
        cache_ttl_seconds: int = 30,
    ) -> None:
        self._relays = list(dict.fromkeys(r for r in relays if r))
        self._sem = asyncio.Semaphore(max_concurrent)
        self.timeout = timeout_seconds
        self.health: Dict[str, RelayHealth] = {}
        self.cache = QueryCache(ttl_seconds=cache_ttl_seconds)
        self._connected: set[str] = set()

    @property
    def configured_relays(self) -> List[str]:
        return list(self._relays)

    @property
    def connected_relays(self) -> List[str]:
        """Relays whose most recent exchange succeeded, in configured order."""

        return [relay for relay in self._relays if relay in self._connected]

    def _health(self, relay: str) -> RelayHealth:
        return self.health.setdefault(relay, RelayHealth())

    def available_relays(self) -> List[str]:
        return [relay for relay in self._relays if self._health(relay).available()]

    def _mark(self, relay: str, ok: bool) -> None:
        health = self._health(relay)
        if ok:
            health.succeeded()
            self._connected.add(relay)
            return
        delay = health.failed()
        self._connected.discard(relay)
        logger.warning("Relay %s failed %d time(s), skipping it for %ss", relay, health.failures, delay)

    async def publish_event(self, event: Event) -> Optional[Event]:
        """Broadcast to every configured relay; the event if any relay accepted it, else None."""

        self.cache.clear()
        statuses = await self.publish_with_status(event)
        accepted = [relay for relay, status in statuses.items() if status == "ok"]
        if not accepted:
            logger.warning("No relay accepted event %s: %s", event.id, statuses)
            return None
        return event

    async def publish_with_status(self, event: Event) -> Dict[str, str]:
        """Per-relay outcome: ok, rejected:<reason>, error:<exc> or skipped while a relay rests."""

        statuses = {relay: "skipped" for relay in self._relays}
        targets = self.available_relays()
        outcomes = await asyncio.gather(*(self._send_event(relay, event) for relay in targets))
        statuses.update(zip(targets, outcomes))
        return statuses

    def _connect(self, relay: str, timeout: Optional[float] = None):
        limit = timeout or self.timeout
        return websockets.connect(relay, open_timeout=limit, close_timeout=limit)

    async def _send_event(self, relay: str, event: Event) -> str:
        started = time.monotonic()
        async with self._sem:
            try:
                async with self._connect(relay) as ws:
                    await ws.send(json.dumps(["EVENT", event.to_dict()]))
                    ack = await self._await_ok(ws, event.id)
            except Exception as exc:  # noqa: BLE001
                self._mark(relay, False)
                logger.warning("Could not publish %s to %s: %s", event.id, relay, exc)
                return f"error:{exc}"
        self._mark(relay, True)
        logger.info("%s answered %s for %s after %.0fms", relay, ack, event.id, (time.monotonic() - started) * 1000)
        # relays that never send OK are treated as accepting
        return "ok" if ack == "unconfirmed" else ack

    async def _await_ok(self, ws, event_id: str) -> str:
        try:
            async with asyncio.timeout(self.timeout):
                async for raw in ws:
                    msg = _decode(raw)
                    if msg and msg[0] == "OK" and len(msg) >= 3 and msg[1] == event_id:
                        return "ok" if msg[2] is True else f"rejected:{msg[3] if len(msg) > 3 else ''}"
        except TimeoutError:
            pass
        return "unconfirmed"

    async def query_events(self, filters: List[Filter], timeout_seconds: float | None = None) -> List[Event]:
        """Fetch stored events matching filters from every relay until EOSE, deduplicated by id."""

        cached = self.cache.lookup(filters)
        if cached is not None:
            return cached

        timeout = timeout_seconds or self.timeout
        found: Dict[str, Event] = {}

        async def _drain(relay: str) -> None:
            sub_id = f"query-{secrets.token_hex(4)}"
            async with self._sem:
                try:
                    async with self._connect(relay, timeout) as ws:
                        await ws.send(json.dumps(["REQ", sub_id, *filters]))
                        async with asyncio.timeout(timeout):
                            async for raw in ws:
                                msg = _decode(raw)
                                if msg and msg[0] == "EOSE":
                                    break
                                event = _event_from(msg)
                                if event is not None:
                                    found.setdefault(event.id, event)
                        await ws.send(json.dumps(["CLOSE", sub_id]))
                except Exception as exc:  # noqa: BLE001
                    self._mark(relay, False)
                    logger.warning("Query against %s failed: %s", relay, exc)
                    return
            self._mark(relay, True)

        await asyncio.gather(*(_drain(relay) for relay in self.available_relays()))
        events = sorted(found.values(), key=lambda ev: ev.created_at, reverse=True)
        logger.debug("Query %s returned %d events", filters, len(events))
        self.cache.store(filters, events)
        return events

    async def subscribe(self, filters: List[Filter]) -> AsyncIterator[Event]:
        """Long-lived subscription across all relays. Ends when every relay connection closes."""

        inbox: asyncio.Queue = asyncio.Queue()
        sub_id = f"divine-{secrets.token_hex(4)}"

        async def _listen(relay: str) -> None:
            try:
                async with self._connect(relay) as ws:
                    await ws.send(json.dumps(["REQ", sub_id, *filters]))
                    self._mark(relay, True)
                    async for raw in ws:
                        event = _event_from(_decode(raw))
                        if event is not None:
                            inbox.put_nowait(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._mark(relay, False)
                logger.warning("Subscription %s on %s dropped: %s", sub_id, relay, exc)
            finally:
                inbox.put_nowait(_DONE)

        listeners = [asyncio.create_task(_listen(relay)) for relay in self.available_relays()]
        open_count = len(listeners)
        seen: set[str] = set()
        try:
            while open_count:
                item = await inbox.get()
                if item is _DONE:
                    open_count -= 1
                elif item.id not in seen:
                    seen.add(item.id)
                    yield item
        finally:
            for listener in listeners:
                listener.cancel()


def _decode(raw: Any) -> Optional[list]:
    try:
        msg = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None
    return msg if isinstance(msg, list) and msg else None


def _event_from(msg: Optional[list]) -> Optional[Event]:
    if not msg or msg[0] != "EVENT" or len(msg) < 3:
        return None
    try:
        return Event.from_dict(msg[2])
    except NostrEventError:
        return None
