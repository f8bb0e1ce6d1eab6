import pytest

from conftest import OTHER_PUBKEY, OUR_PUBKEY, FakeAuth
from divine.models import VideoEvent
from divine.nostr.event import first_tag, has_tag, tag_values
from divine.services.publish import AuthenticatedPublisher
from divine.services.view_events import ViewEventPublisher, ViewTrafficSource


def _video(pubkey=OTHER_PUBKEY, vine_id="v1") -> VideoEvent:
    return VideoEvent(id="video-event-id", pubkey=pubkey, created_at=1, vine_id=vine_id)


def _views(auth, relay, **kwargs) -> ViewEventPublisher:
    return ViewEventPublisher(relay, AuthenticatedPublisher(auth, relay, timeout_seconds=1), **kwargs)


@pytest.mark.asyncio
async def test_view_event_tags(auth, relay):
    ok = await _views(auth, relay).publish_view_event(
        _video(), 0, 10, source=ViewTrafficSource.discovery_for_you, loop_count=3
    )
    assert ok
    event = relay.published[0]
    assert event.kind == 22236
    assert event.content == ""
    assert has_tag(event.tags, ["a", f"34236:{OTHER_PUBKEY}:v1", "wss://relay.one"])
    assert has_tag(event.tags, ["e", "video-event-id", "wss://relay.one"])
    assert has_tag(event.tags, ["viewed", "0", "10"])
    assert has_tag(event.tags, ["source", "discovery:foryou"])
    assert has_tag(event.tags, ["loops", "3"])
    assert has_tag(event.tags, ["client", "divine-mobile/1.0"])


@pytest.mark.asyncio
async def test_source_detail_and_fallbacks(auth, relay):
    relay.connected_relays = []
    views = _views(auth, relay, default_relay_hint="wss://fallback")
    assert await views.publish_view_event(_video(vine_id=None), 2, 4, source=ViewTrafficSource.search, source_detail="#cats", loop_count=0)
    event = relay.published[0]
    assert first_tag(event.tags, "a") == ["a", f"34236:{OTHER_PUBKEY}:video-event-id", "wss://fallback"]
    assert has_tag(event.tags, ["source", "search", "#cats"])
    assert first_tag(event.tags, "loops") is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "start,end",
    [(5, 5), (10, 3)],
)
async def test_no_watch_time_is_skipped(auth, relay, start, end):
    assert not await _views(auth, relay).publish_view_event(_video(), start, end)
    assert relay.published == []


@pytest.mark.asyncio
async def test_unauthenticated_and_self_views_are_skipped(relay):
    assert not await _views(FakeAuth(authenticated=False), relay).publish_view_event(_video(), 0, 10)
    assert not await _views(FakeAuth(), relay).publish_view_event(_video(pubkey=OUR_PUBKEY), 0, 10)
    assert relay.published == []


@pytest.mark.asyncio
async def test_failed_publish_returns_false(auth, relay):
    relay.accept = False
    assert not await _views(auth, relay).publish_view_event(_video(), 0, 10)


def test_traffic_source_wire_values():
    assert [source.value for source in ViewTrafficSource] == [
        "home",
        "discovery:new",
        "discovery:classic",
        "discovery:foryou",
        "discovery:popular",
        "profile",
        "share",
        "search",
        "unknown",
    ]


@pytest.mark.asyncio
async def test_segments_keep_only_valid_ranges(auth, relay):
    views = _views(auth, relay)
    assert await views.publish_view_event_with_segments(_video(), [(0, 3), (5, 5), (8, 6), (10, 15)])
    event = relay.published[0]
    assert [tag[1:] for tag in event.tags if tag[0] == "viewed"] == [["0", "3"], ["10", "15"]]
    assert tag_values(event.tags, "source") == ["unknown"]

    assert not await views.publish_view_event_with_segments(_video(), [(4, 4)])
    assert len(relay.published) == 1
