import asyncio

import pytest

from conftest import OUR_PUBKEY
from divine.nostr.event import Event
from divine.services.content_blocklist import ContentBlocklistService

MUTER = "d" * 64
STRANGER = "e" * 64


def _mute_list(pubkey, muted, created_at=1, event_id=None) -> Event:
    return Event(
        pubkey=pubkey,
        kind=10000,
        tags=[["p", key] for key in muted],
        created_at=created_at,
        id=event_id or f"{pubkey[:4]}-{created_at}",
    )


def test_starts_without_hardcoded_blocks():
    service = ContentBlocklistService()
    assert service.total_blocked_count == 0


def test_runtime_block_and_unblock():
    service = ContentBlocklistService()
    service.block_user(MUTER)
    service.block_user(STRANGER)
    assert service.total_blocked_count == 2
    assert service.is_blocked(MUTER)

    service.unblock_user(MUTER)
    assert not service.is_blocked(MUTER)
    assert service.should_filter_from_feeds(STRANGER)


def test_self_block_is_ignored():
    service = ContentBlocklistService()
    service.block_user(OUR_PUBKEY, our_pubkey=OUR_PUBKEY)
    assert not service.is_blocked(OUR_PUBKEY)
    service.block_user(MUTER, our_pubkey=OUR_PUBKEY)
    service.block_user(STRANGER, our_pubkey=None)
    assert service.total_blocked_count == 2


def test_filter_content_and_stats():
    service = ContentBlocklistService(internal_blocklist=[STRANGER])
    service.block_user(MUTER)
    items = [{"pubkey": MUTER, "content": "blocked"}, {"pubkey": OUR_PUBKEY, "content": "allowed"}, {"pubkey": STRANGER}]
    filtered = service.filter_content(items, lambda item: item["pubkey"])
    assert [item.get("content") for item in filtered] == ["allowed"]

    stats = service.blocking_stats
    assert stats["total_blocks"] == 2
    assert stats["runtime_blocks"] == 1
    assert stats["internal_blocks"] == 1


def test_mutual_mute_tracks_latest_list():
    service = ContentBlocklistService()
    service.block_user(STRANGER)
    service.handle_mute_list_event(_mute_list(MUTER, [OUR_PUBKEY], created_at=10), OUR_PUBKEY)
    assert service.has_muted_us(MUTER)
    assert service.should_filter_from_feeds(MUTER)
    assert not service.is_blocked(MUTER)
    assert not service.has_muted_us(STRANGER)
    assert service.should_filter_from_feeds(STRANGER)

    service.handle_mute_list_event(_mute_list(MUTER, [STRANGER], created_at=5), OUR_PUBKEY)
    assert service.has_muted_us(MUTER)

    service.handle_mute_list_event(_mute_list(MUTER, [STRANGER], created_at=20), OUR_PUBKEY)
    assert not service.should_filter_from_feeds(MUTER)


@pytest.mark.asyncio
async def test_background_sync_subscribes_once(relay):
    relay.stream = [_mute_list(MUTER, [OUR_PUBKEY])]
    service = ContentBlocklistService()
    task = service.sync_mute_lists_in_background(relay, OUR_PUBKEY)
    assert service.sync_mute_lists_in_background(relay, OUR_PUBKEY) is task
    await asyncio.wait_for(task, timeout=1)

    assert len(relay.subscribed_filters) == 1
    flt = relay.subscribed_filters[0][0]
    assert flt["kinds"] == [10000]
    assert flt["#p"] == [OUR_PUBKEY]
    assert service.should_filter_from_feeds(MUTER)
    await service.stop()


@pytest.mark.asyncio
async def test_sync_restarts_after_stream_ends_or_stop(relay):
    service = ContentBlocklistService()
    first = service.sync_mute_lists_in_background(relay, OUR_PUBKEY)
    await asyncio.wait_for(first, timeout=1)

    relay.stream = [_mute_list(MUTER, [OUR_PUBKEY])]
    second = service.sync_mute_lists_in_background(relay, OUR_PUBKEY)
    assert second is not first
    await asyncio.wait_for(second, timeout=1)
    assert service.has_muted_us(MUTER)

    await service.stop()
    third = service.sync_mute_lists_in_background(relay, OUR_PUBKEY)
    assert third is not None and third is not second
    await asyncio.wait_for(third, timeout=1)
    assert len(relay.subscribed_filters) == 3
