import base64
import json

import httpx
import pytest

from conftest import OUR_PUBKEY, FakeAuth
from divine.auth.nip98 import Nip98AuthService, hash_payload
from divine.nostr.event import first_tag_value
from divine.services.relay_notifications import RelayNotificationApiService

BASE = "https://relay.divine.video"


def _api(handler, auth=None, base_url=BASE) -> RelayNotificationApiService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RelayNotificationApiService(base_url, Nip98AuthService(auth or FakeAuth()), http_client=client)


def _signed_event(request: httpx.Request) -> dict:
    scheme, token = request.headers["Authorization"].split(" ", 1)
    assert scheme == "Nostr"
    return json.loads(base64.b64decode(token))


@pytest.mark.asyncio
async def test_get_notifications_parses_response():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "notifications": [
                    {
                        "id": "n1",
                        "source_pubkey": "c" * 64,
                        "source_event_id": "e1",
                        "source_kind": 7,
                        "referenced_event_id": "v1",
                        "notification_type": "reaction",
                        "created_at": 1700000000,
                        "read": False,
                    },
                    {"id": 2, "notification_type": "follow", "created_at": "2024-01-02T03:04:05Z", "read": True},
                ],
                "unread_count": 5,
                "next_cursor": 1699999999,
                "has_more": True,
            },
        )

    api = _api(handler)
    response = await api.get_notifications(OUR_PUBKEY, types=["reaction", "follow"], unread_only=True, limit=20, before="c1")

    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == f"/api/users/{OUR_PUBKEY}/notifications"
    assert request.url.params["limit"] == "20"
    assert request.url.params["types"] == "reaction,follow"
    assert request.url.params["unread_only"] == "true"
    assert request.url.params["before"] == "c1"
    assert request.headers["Accept"] == "application/json"
    signed = _signed_event(request)
    assert first_tag_value(signed["tags"], "u") == f"{BASE}/api/users/{OUR_PUBKEY}/notifications"
    assert first_tag_value(signed["tags"], "method") == "GET"

    assert response.unread_count == 5
    assert response.next_cursor == "1699999999"
    assert response.has_more
    first, second = response.notifications
    assert first.source_kind == 7
    assert first.referenced_event_id == "v1"
    assert first.created_at.year == 2023
    assert second.id == "2"
    assert second.read
    assert second.created_at.month == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 404, 500])
async def test_error_statuses_give_empty_response(status):
    api = _api(lambda request: httpx.Response(status, text="nope"))
    response = await api.get_notifications(OUR_PUBKEY)
    assert response.notifications == []
    assert response.unread_count == 0
    assert not response.has_more


@pytest.mark.asyncio
async def test_malformed_and_network_failures_give_empty_response():
    api = _api(lambda request: httpx.Response(200, text="<html>"))
    assert (await api.get_notifications(OUR_PUBKEY)).notifications == []

    api = _api(lambda request: httpx.Response(200, json={"notifications": ["bogus"]}))
    assert (await api.get_notifications(OUR_PUBKEY)).notifications == []

    def boom(request):
        raise httpx.ConnectError("offline", request=request)

    assert (await _api(boom).get_notifications(OUR_PUBKEY)).unread_count == 0


@pytest.mark.asyncio
async def test_unavailable_or_unauthenticated_skip_http():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    assert (await _api(handler, base_url=None).get_notifications(OUR_PUBKEY)).notifications == []
    assert (await _api(handler).get_notifications("")).notifications == []
    assert (await _api(handler, auth=FakeAuth(authenticated=False)).get_notifications(OUR_PUBKEY)).notifications == []
    assert calls == []


@pytest.mark.asyncio
async def test_mark_as_read_posts_ids_with_payload_hash():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "marked_count": 2})

    result = await _api(handler).mark_as_read(OUR_PUBKEY, ["n1", "n2"])

    assert result.success
    assert result.marked_count == 2
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == f"/api/users/{OUR_PUBKEY}/notifications/read"
    body = request.content.decode()
    assert json.loads(body) == {"notification_ids": ["n1", "n2"]}
    signed = _signed_event(request)
    assert first_tag_value(signed["tags"], "method") == "POST"
    assert first_tag_value(signed["tags"], "payload") == hash_payload(body)


@pytest.mark.asyncio
async def test_mark_all_as_read_sends_empty_body():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "marked_count": 9})

    result = await _api(handler).mark_as_read(OUR_PUBKEY)
    assert result.marked_count == 9
    assert json.loads(seen[0].content) == {}


@pytest.mark.asyncio
async def test_mark_as_read_failures():
    assert (await _api(lambda r: httpx.Response(200), base_url="").mark_as_read(OUR_PUBKEY)).error == "API not available"
    assert (await _api(lambda r: httpx.Response(200)).mark_as_read("")).error == "Missing pubkey"
    unauthenticated = _api(lambda r: httpx.Response(200), auth=FakeAuth(authenticated=False))
    assert (await unauthenticated.mark_as_read(OUR_PUBKEY)).error == "Auth token creation failed"
    assert (await _api(lambda r: httpx.Response(401)).mark_as_read(OUR_PUBKEY)).error == "Authentication failed"
    assert (await _api(lambda r: httpx.Response(503)).mark_as_read(OUR_PUBKEY)).error == "HTTP 503"
    server_error = _api(lambda r: httpx.Response(200, json={"success": False, "error": "rate limited"}))
    assert (await server_error.mark_as_read(OUR_PUBKEY)).error == "rate limited"


@pytest.mark.asyncio
async def test_unread_count_uses_minimal_request():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"notifications": [], "unread_count": 12})

    assert await _api(handler).get_unread_count(OUR_PUBKEY) == 12
    assert seen[0].url.params["limit"] == "1"
    assert seen[0].url.params["unread_only"] == "true"


@pytest.mark.asyncio
async def test_each_mark_as_read_body_gets_its_own_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "marked_count": 1})

    api = _api(handler)
    await api.mark_as_read(OUR_PUBKEY, ["n1"])
    await api.mark_as_read(OUR_PUBKEY, ["n2"])

    assert len(seen) == 2
    for request in seen:
        assert first_tag_value(_signed_event(request)["tags"], "payload") == hash_payload(request.content.decode())
