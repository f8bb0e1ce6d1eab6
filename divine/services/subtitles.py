from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol

from divine.models import VideoEvent
from divine.nostr import kinds
from divine.nostr.event import addressable_coordinate
from divine.services.publish import AuthenticatedPublisher
from divine.services.video_events import VideoEventPublisher

logger = logging.getLogger(__name__)

_TIMESTAMP = re.compile(r"(?:(\d+):)?(\d{1,2}):(\d{2})[.,](\d{3})")


class SubtitleGenerationError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class SubtitleCue:
    start: int  # ms
    end: int  # ms
    text: str

    def __post_init__(self):
        # a blank line ends a cue in WebVTT, so cue text never carries one
        lines = (line.rstrip() for line in self.text.replace("\r\n", "\n").replace("\r", "\n").split("\n"))
        object.__setattr__(self, "text", "\n".join(line for line in lines if line).strip())


class SubtitleGenerationStage(str, Enum):
    downloading_model = "downloading_model"
    extracting_audio = "extracting_audio"
    transcribing = "transcribing"
    publishing_subtitles = "publishing_subtitles"
    publishing_event = "publishing_event"
    done = "done"


class Transcriber(Protocol):
    async def ensure_model(self, on_progress: Optional[Callable[[float], None]] = None) -> None: ...

    async def extract_audio(self, video_file_path: str) -> str: ...

    async def transcribe(self, audio_path: str) -> List[SubtitleCue]: ...


def format_timestamp(ms: int) -> str:
    hours, rest = divmod(max(ms, 0), 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    seconds, millis = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def parse_timestamp(value: str) -> int:
    match = _TIMESTAMP.fullmatch(value.strip())
    if not match:
        raise ValueError(f"Bad VTT timestamp: {value!r}")
    hours, minutes, seconds, millis = match.groups()
    return ((int(hours or 0) * 60 + int(minutes)) * 60 + int(seconds)) * 1000 + int(millis)


def generate_vtt(cues: List[SubtitleCue]) -> str:
    lines = ["WEBVTT", ""]
    for index, cue in enumerate(cues, start=1):
        lines.append(str(index))
        lines.append(f"{format_timestamp(cue.start)} --> {format_timestamp(cue.end)}")
        lines.append(cue.text)
        lines.append("")
    return "\n".join(lines) + "\n"


def parse_vtt(text: str) -> List[SubtitleCue]:
    """Parse WebVTT cues. Headers, notes and malformed blocks are skipped."""

    cues: List[SubtitleCue] = []
    blocks = re.split(r"\n\s*\n", text.replace("\r\n", "\n").strip())
    for block in blocks:
        lines = block.split("\n")
        timing_index = next((i for i, line in enumerate(lines) if "-->" in line), None)
        if timing_index is None:
            continue
        start_raw, _, end_raw = lines[timing_index].partition("-->")
        try:
            start = parse_timestamp(start_raw)
            # Cue settings may follow the end time.
            end = parse_timestamp(end_raw.strip().split(" ")[0])
        except ValueError:
            logger.debug("Skipping malformed VTT cue: %s", lines[timing_index])
            continue
        cues.append(SubtitleCue(start=start, end=end, text="\n".join(lines[timing_index + 1:])))
    return cues


def subtitle_identifier(vine_id: str) -> str:
    return f"subtitles:{vine_id}"


class SubtitleGenerationService:
    """Transcribe a video, publish its captions and link them from the video."""

    def __init__(
        self,
        transcriber: Transcriber,
        publisher: AuthenticatedPublisher,
        video_event_publisher: VideoEventPublisher,
    ):
        self.transcriber = transcriber
        self.publisher = publisher
        self.video_event_publisher = video_event_publisher

    async def generate_and_publish(
        self,
        video: VideoEvent,
        video_file_path: str,
        on_stage: Optional[Callable[[SubtitleGenerationStage], Optional[Awaitable[None]]]] = None,
        language: str = "en",
    ) -> List[SubtitleCue]:
        async def stage(value: SubtitleGenerationStage) -> None:
            logger.debug("Subtitles for %s: %s", video.id, value.value)
            if on_stage is not None:
                outcome = on_stage(value)
                if outcome is not None:
                    await outcome

        await stage(SubtitleGenerationStage.downloading_model)
        await self.transcriber.ensure_model()
        await stage(SubtitleGenerationStage.extracting_audio)
        audio_path = await self.transcriber.extract_audio(video_file_path)
        await stage(SubtitleGenerationStage.transcribing)
        cues = await self.transcriber.transcribe(audio_path)
        if not cues:
            raise SubtitleGenerationError("No speech detected")

        await stage(SubtitleGenerationStage.publishing_subtitles)
        vine_id = video.vine_id or video.id
        tags = [
            ["d", subtitle_identifier(vine_id)],
            ["a", addressable_coordinate(kinds.VIDEO, video.pubkey, vine_id)],
            ["m", "text/vtt"],
            ["l", language, "ISO-639-1"],
        ]
        signed = await self.publisher.auth_service.create_and_sign_event(kinds.TEXT_TRACK, generate_vtt(cues), tags)
        if signed is None:
            raise SubtitleGenerationError("Failed to sign subtitle event")
        result = await self.publisher.publish_signed(signed)
        if not result.success:
            raise SubtitleGenerationError("Failed to publish subtitle event")

        await stage(SubtitleGenerationStage.publishing_event)
        text_track_ref = addressable_coordinate(kinds.TEXT_TRACK, video.pubkey, subtitle_identifier(vine_id))
        republished = await self.video_event_publisher.republish_with_subtitles(
            existing_event=video, text_track_ref=text_track_ref, text_track_lang=language
        )
        if not republished:
            raise SubtitleGenerationError("Failed to republish video with subtitles")

        await stage(SubtitleGenerationStage.done)
        logger.info("Published %s subtitle cues for video %s", len(cues), video.id)
        return cues
