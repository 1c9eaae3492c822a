"""Relay control-plane messages.

Server to client frames are JSON objects.  Control frames carry a ``type`` of
``ready``, ``error`` or ``closed``; provider results are recognised by
their ``channel`` object.  Everything is parsed into one of the message
classes below so the stream client can dispatch on ``kind`` instead of
probing dictionaries.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Union

from lecturepulse.models import SpeakerSegment, TranscriptEvent

CLOSE_STREAM = {"type": "CloseStream"}


class MessageKind(str, Enum):
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"
    TRANSCRIPT = "transcript"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReadyMessage:
    kind: ClassVar[MessageKind] = MessageKind.READY
    message: str = ""


@dataclass(frozen=True)
class ErrorMessage:
    kind: ClassVar[MessageKind] = MessageKind.ERROR
    message: str
    can_retry: bool = False


@dataclass(frozen=True)
class ClosedMessage:
    kind: ClassVar[MessageKind] = MessageKind.CLOSED
    message: str = ""


@dataclass(frozen=True)
class TranscriptMessage:
    kind: ClassVar[MessageKind] = MessageKind.TRANSCRIPT
    event: TranscriptEvent


@dataclass(frozen=True)
class UnknownMessage:
    kind: ClassVar[MessageKind] = MessageKind.UNKNOWN
    raw_type: str | None = None
    note: str = ""


RelayMessage = Union[ReadyMessage, ErrorMessage, ClosedMessage, TranscriptMessage, UnknownMessage]


def parse_relay_message(raw: str | bytes) -> RelayMessage:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return UnknownMessage(note="invalid json")
    if not isinstance(data, dict):
        return UnknownMessage(note="not an object")

    msg_type = data.get("type")
    if msg_type == "ready":
        return ReadyMessage(message=str(data.get("message", "")))
    if msg_type == "error":
        return ErrorMessage(
            message=str(data.get("message", "Transcription service error")),
            can_retry=bool(data.get("canRetry", False)),
        )
    if msg_type == "closed":
        return ClosedMessage(message=str(data.get("message", "")))

    # Provider results are "Results" frames (older relays omit the type) with a
    # channel object; UtteranceEnd and SpeechStarted carry a channel list instead
    if msg_type in (None, "Results") and isinstance(data.get("channel"), dict):
        event = extract_transcript(data)
        if event is None:
            return UnknownMessage(raw_type=msg_type, note="empty transcript")
        return TranscriptMessage(event=event)

    return UnknownMessage(raw_type=msg_type)


def extract_transcript(data: dict) -> TranscriptEvent | None:
    """Build a TranscriptEvent from a provider result, grouping words by speaker.

    Returns None when the result has no alternative or only whitespace.
    """
    channel = data.get("channel")
    if not isinstance(channel, dict):
        return None
    alternatives = channel.get("alternatives") or []
    if not alternatives:
        return None
    best = alternatives[0]
    text = (best.get("transcript") or "").strip()
    if not text:
        return None

    # Preserve first-seen speaker order
    grouped: dict[int, tuple[list[str], list[float]]] = {}
    for word in best.get("words") or []:
        speaker = word.get("speaker")
        speaker = 0 if speaker is None else int(speaker)
        words, confidences = grouped.setdefault(speaker, ([], []))
        words.append(word.get("punctuated_word") or word.get("word", ""))
        confidences.append(float(word.get("confidence", 0.0)))

    segments = [
        SpeakerSegment(
            speaker_id=speaker,
            text=" ".join(words),
            avg_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
        )
        for speaker, (words, confidences) in grouped.items()
    ]
    return TranscriptEvent(
        text=text,
        is_final=bool(data.get("is_final", False)),
        confidence=float(best.get("confidence", 0.0) or 0.0),
        speaker_segments=segments,
    )
