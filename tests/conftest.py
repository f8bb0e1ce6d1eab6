import asyncio
import hashlib
import json
from typing import List, Optional

import pytest

from divine.nostr.event import Event
from divine.services.publish import AuthenticatedPublisher

OUR_PUBKEY = "a" * 64
OTHER_PUBKEY = "b" * 64


class FakeAuth:
    """Signer double that records every request."""

    def __init__(self, pubkey: Optional[str] = OUR_PUBKEY, authenticated: bool = True, fail_kinds=()):
        self.pubkey = pubkey
        self.authenticated = authenticated
        self.fail_kinds = set(fail_kinds)
        self.signed: List[Event] = []
        self.clock = 1700000000

    @property
    def is_authenticated(self) -> bool:
        return self.authenticated

    @property
    def current_public_key_hex(self) -> Optional[str]:
        return self.pubkey

    async def create_and_sign_event(self, kind, content, tags) -> Optional[Event]:
        if not self.authenticated or kind in self.fail_kinds:
            return None
        self.clock += 1
        digest = hashlib.sha256(json.dumps([kind, content, tags, self.clock]).encode()).hexdigest()
        event = Event(
            pubkey=self.pubkey or "",
            kind=kind,
            tags=[list(tag) for tag in tags],
            content=content,
            created_at=self.clock,
            id=digest,
            sig="sig",
        )
        self.signed.append(event)
        return event


class FakeRelay:
    """Relay pool double: records publishes and replays canned events."""

    def __init__(self, relays=("wss://relay.one", "wss://relay.two")):
        self.configured_relays = list(relays)
        self.connected_relays = list(relays)
        self.published: List[Event] = []
        self.accept = True
        self.raise_on_publish: Optional[Exception] = None
        self.publish_delay = 0.0
        self.stored: List[Event] = []
        self.stream: List[Event] = []
        self.subscribed_filters: List[list] = []
        self.queried_filters: List[list] = []
        self.hold_stream_open = False

    async def publish_event(self, event: Event) -> Optional[Event]:
        if self.publish_delay:
            await asyncio.sleep(self.publish_delay)
        self.published.append(event)
        if self.raise_on_publish is not None:
            raise self.raise_on_publish
        return event if self.accept else None

    async def query_events(self, filters, timeout_seconds=None) -> List[Event]:
        self.queried_filters.append(filters)
        return list(self.stored)

    async def subscribe(self, filters):
        self.subscribed_filters.append(filters)
        for event in self.stream:
            yield event
        if self.hold_stream_open:
            await asyncio.Event().wait()


@pytest.fixture()
def auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture()
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture()
def publisher(auth, relay) -> AuthenticatedPublisher:
    return AuthenticatedPublisher(auth, relay, timeout_seconds=1)
