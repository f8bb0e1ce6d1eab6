from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from conftest import OUR_PUBKEY, FakeAuth
from divine.models import VideoEvent
from divine.nostr.event import Event, first_tag, has_tag, tag_values
from divine.services.publish import AuthenticatedPublisher
from divine.services.subtitles import (
    SubtitleCue,
    SubtitleGenerationError,
    SubtitleGenerationService,
    SubtitleGenerationStage,
    generate_vtt,
    parse_vtt,
)
from divine.services.video_events import VideoEventPublisher, VideoEventService


def _video() -> VideoEvent:
    event = Event(
        pubkey=OUR_PUBKEY,
        kind=34236,
        tags=[["d", "test-vine-id"], ["title", "Test Video"], ["url", "https://cdn/v.mp4"], ["text-track", "old"]],
        content="caption",
        created_at=1757385263,
        id="test-event-id",
    )
    return VideoEvent.from_event(event)


def _transcriber(cues):
    transcriber = AsyncMock()
    transcriber.extract_audio.return_value = "/tmp/audio.wav"
    transcriber.transcribe.return_value = cues
    return transcriber


def _service(auth, relay, transcriber, video_events=None):
    publisher = AuthenticatedPublisher(auth, relay, timeout_seconds=1)
    video_publisher = VideoEventPublisher(relay, publisher, video_events or VideoEventService())
    return SubtitleGenerationService(transcriber, publisher, video_publisher)


def test_vtt_format():
    vtt = generate_vtt([SubtitleCue(500, 3000, "Hello")])
    assert vtt == "WEBVTT\n\n1\n00:00:00.500 --> 00:00:03.000\nHello\n\n"


def test_vtt_round_trip():
    cues = [
        SubtitleCue(0, 1200, "First"),
        SubtitleCue(1500, 61_000, "Second line\nwith a break"),
        SubtitleCue(3_600_000, 3_601_500, "An hour in"),
    ]
    assert parse_vtt(generate_vtt(cues)) == cues


@pytest.mark.parametrize(
    "raw, stored",
    [
        ("trailing space ", "trailing space"),
        ("para one\n\npara two", "para one\npara two"),
        ("ends with newline\n", "ends with newline"),
        ("windows\r\nline  \r\n", "windows\nline"),
    ],
)
def test_cue_text_survives_round_trip(raw, stored):
    cues = [SubtitleCue(0, 1000, raw), SubtitleCue(1000, 2000, "after")]
    assert cues[0].text == stored
    assert parse_vtt(generate_vtt(cues)) == cues


def test_parse_vtt_skips_malformed_cues():
    text = "WEBVTT\n\nNOTE written by hand\n\n00:01.000 --> 00:02.000 align:start\nShort form\n\nbad --> worse\nNope\n"
    assert parse_vtt(text) == [SubtitleCue(1000, 2000, "Short form")]


@pytest.mark.asyncio
async def test_generate_and_publish_flow(auth, relay):
    video_events = VideoEventService()
    stages = []
    cues = [SubtitleCue(500, 3000, "Hello")]
    service = _service(auth, relay, _transcriber(cues), video_events)

    result = await service.generate_and_publish(_video(), "/path/to/video.mp4", on_stage=stages.append)

    assert result == cues
    assert stages == [
        SubtitleGenerationStage.downloading_model,
        SubtitleGenerationStage.extracting_audio,
        SubtitleGenerationStage.transcribing,
        SubtitleGenerationStage.publishing_subtitles,
        SubtitleGenerationStage.publishing_event,
        SubtitleGenerationStage.done,
    ]
    subtitle_event, video_event = relay.published
    assert subtitle_event.kind == 39307
    assert subtitle_event.content == generate_vtt(cues)
    assert has_tag(subtitle_event.tags, ["d", "subtitles:test-vine-id"])
    assert has_tag(subtitle_event.tags, ["a", f"34236:{OUR_PUBKEY}:test-vine-id"])
    assert has_tag(subtitle_event.tags, ["m", "text/vtt"])
    assert has_tag(subtitle_event.tags, ["l", "en", "ISO-639-1"])

    assert video_event.kind == 34236
    assert video_event.content == "caption"
    assert tag_values(video_event.tags, "text-track") == [f"39307:{OUR_PUBKEY}:subtitles:test-vine-id"]
    assert first_tag(video_event.tags, "text-track") == [
        "text-track",
        f"39307:{OUR_PUBKEY}:subtitles:test-vine-id",
        "wss://relay.one",
        "captions",
        "en",
    ]
    assert has_tag(video_event.tags, ["title", "Test Video"])
    assert video_events.find_by_id(video_event.id) is not None


@pytest.mark.asyncio
async def test_no_speech_detected(auth, relay):
    service = _service(auth, relay, _transcriber([]))
    with pytest.raises(SubtitleGenerationError) as exc:
        await service.generate_and_publish(_video(), "/path/to/video.mp4")
    assert exc.value.message == "No speech detected"
    assert relay.published == []


@pytest.mark.asyncio
async def test_signing_failure(relay):
    service = _service(FakeAuth(fail_kinds={39307}), relay, _transcriber([SubtitleCue(0, 1000, "Hi")]))
    with pytest.raises(SubtitleGenerationError, match="Failed to sign subtitle event"):
        await service.generate_and_publish(_video(), "/path/to/video.mp4")


@pytest.mark.asyncio
async def test_publish_failure(auth, relay):
    relay.accept = False
    service = _service(auth, relay, _transcriber([SubtitleCue(0, 1000, "Hi")]))
    with pytest.raises(SubtitleGenerationError, match="Failed to publish subtitle event"):
        await service.generate_and_publish(_video(), "/path/to/video.mp4")


@pytest.mark.asyncio
async def test_republish_failure_rolls_back_local_copy(relay):
    video_events = VideoEventService()
    original = replace(_video(), created_at=1)
    video_events.add_video_event(original, optimistic=False)
    publisher = VideoEventPublisher(relay, AuthenticatedPublisher(FakeAuth(), relay, timeout_seconds=1), video_events)
    relay.accept = False

    assert not await publisher.republish_with_subtitles(original, "39307:x:subtitles:y", "de")
    assert video_events.get(original.addressable_id) is original
    assert not video_events.is_pending(original.addressable_id)


@pytest.mark.asyncio
async def test_republish_signing_failure(relay):
    publisher = VideoEventPublisher(relay, AuthenticatedPublisher(FakeAuth(fail_kinds={34236}), relay))
    assert not await publisher.republish_with_subtitles(_video(), "ref")
    assert relay.published == []
