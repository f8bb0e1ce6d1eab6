import pytest

from conftest import OUR_PUBKEY, FakeAuth
from divine.nostr.event import Event, has_tag, tag_values
from divine.services.account_deletion import AccountDeletionService, build_nip09_tags
from divine.services.publish import AuthenticatedPublisher


def _event(event_id: str, kind: int, tags=None) -> Event:
    return Event(pubkey=OUR_PUBKEY, kind=kind, tags=tags or [], id=event_id, created_at=1)


def _service(auth, relay) -> AccountDeletionService:
    return AccountDeletionService(auth, relay, AuthenticatedPublisher(auth, relay, timeout_seconds=1))


@pytest.mark.asyncio
async def test_nip62_event_targets_all_relays(auth, relay):
    event = await _service(auth, relay).create_nip62_event("bye")
    assert event.kind == 62
    assert event.content == "bye"
    assert has_tag(event.tags, ["relay", "ALL_RELAYS"])


@pytest.mark.asyncio
async def test_one_deletion_per_kind_then_vanish_request(auth, relay):
    relay.stored = [
        _event("v1", 34236, [["d", "loop-1"]]),
        _event("n1", 1),
        _event("n2", 1),
        _event("r1", 7),
    ]
    result = await _service(auth, relay).delete_account("leaving")

    assert result.success
    assert result.deleted_events_count == 4
    kinds_published = [event.kind for event in relay.published]
    assert kinds_published == [5, 5, 5, 62]

    by_k = {tag_values(event.tags, "k")[0]: event for event in relay.published[:3]}
    assert tag_values(by_k["1"].tags, "e") == ["n1", "n2"]
    assert tag_values(by_k["34236"].tags, "a") == [f"34236:{OUR_PUBKEY}:loop-1"]
    assert relay.queried_filters[0][0]["authors"] == [OUR_PUBKEY]
    assert result.deletion_event is relay.published[-1]


@pytest.mark.asyncio
async def test_vanish_request_sent_even_without_events(auth, relay):
    result = await _service(auth, relay).delete_account()
    assert result.success
    assert result.deleted_events_count == 0
    assert [event.kind for event in relay.published] == [62]


@pytest.mark.asyncio
async def test_not_authenticated(relay):
    result = await _service(FakeAuth(authenticated=False), relay).delete_account()
    assert not result.success
    assert result.error == "Not authenticated"
    assert relay.published == []
    assert relay.queried_filters == []


@pytest.mark.asyncio
async def test_signing_failure_of_vanish_request(relay):
    result = await _service(FakeAuth(fail_kinds={62}), relay).delete_account()
    assert not result.success
    assert result.error == "Failed to create deletion event"


@pytest.mark.asyncio
async def test_publish_failure_of_vanish_request(auth, relay):
    relay.accept = False
    result = await _service(auth, relay).delete_account()
    assert not result.success
    assert "Failed to publish" in result.error


def test_nip09_tags_end_with_kind():
    tags = build_nip09_tags(1, [_event("a", 1), _event("b", 1)])
    assert tags == [["e", "a"], ["e", "b"], ["k", "1"]]
