import logging
import re
import time
from difflib import SequenceMatcher
from enum import Enum
from typing import Callable

from lecturepulse.config import settings

logger = logging.getLogger(__name__)


class CommandType(str, Enum):
    SEND_QUESTION = "send_question"
    SEND_SLIDE_QUESTION = "send_slide_question"


# Slide commands are more specific and are always checked first
SLIDE_PATTERNS = [
    re.compile(r"\bsend (this )?slide( question)?( now)?\b"),
    re.compile(r"\bslide question now\b"),
    re.compile(r"\bthis slide question\b"),
]

QUESTION_PATTERNS = [
    re.compile(r"\bsend (the |a |this |that )?question( now)?( please)?\b"),
    re.compile(r"\bsend out (the )?question\b"),
    re.compile(r"\b(push|submit|post) (the |this )?question\b"),
    re.compile(r"\bquestion now\b"),
    re.compile(r"\bsend now\b"),
]

FUZZY_SLIDE_PHRASES = [
    "send slide question",
    "send this slide",
    "send the slide",
    "this slide question",
]

FUZZY_QUESTION_PHRASES = [
    "send question now",
    "send the question",
    "send a question",
    "send question",
    "submit question",
]

FUZZY_THRESHOLD = 0.85

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    return _SPACE_RE.sub(" ", _PUNCT_RE.sub(" ", text.lower())).strip()


def fuzzy_contains(text: str, phrase: str, threshold: float = FUZZY_THRESHOLD) -> bool:
    """True if some run of words in *text* is at least *threshold* similar to *phrase*."""
    words = text.split()
    size = len(phrase.split())
    for i in range(len(words) - size + 1):
        segment = " ".join(words[i:i + size])
        if SequenceMatcher(None, segment, phrase).ratio() >= threshold:
            return True
    return False


def match_command(text: str) -> CommandType | None:
    normalized = normalize(text)
    if not normalized:
        return None
    checks = (
        (CommandType.SEND_SLIDE_QUESTION, SLIDE_PATTERNS, FUZZY_SLIDE_PHRASES),
        (CommandType.SEND_QUESTION, QUESTION_PATTERNS, FUZZY_QUESTION_PHRASES),
    )
    for command, patterns, phrases in checks:
        if any(p.search(normalized) for p in patterns):
            return command
        if any(fuzzy_contains(normalized, phrase) for phrase in phrases):
            return command
    return None


class VoiceCommandDetector:
    """Watches the growing transcript for spoken "send question" commands.

    Only text appended since the last detection is considered, and only its
    last ``window_chars`` characters, so a command is recognised while it is
    still being spoken and never again afterwards.  After a detection the
    detector stays quiet for ``debounce_seconds``; text arriving in that
    window is consumed without matching.  Nothing is ever removed from the
    transcript itself.
    """

    def __init__(
        self,
        debounce_seconds: float | None = None,
        window_chars: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.debounce_seconds = (
            settings.voice_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.window_chars = window_chars or settings.voice_window_chars
        self._clock = clock
        self._consumed = 0
        self._last_fired: float | None = None
        self.detections = 0

    @property
    def armed(self) -> bool:
        if self._last_fired is None:
            return True
        return self._clock() - self._last_fired >= self.debounce_seconds

    def check(self, buffer: str) -> CommandType | None:
        if len(buffer) < self._consumed:
            # buffer was replaced underneath us
            self._consumed = 0
        if len(buffer) == self._consumed:
            return None

        if not self.armed:
            self._consumed = len(buffer)
            return None

        start = max(self._consumed, len(buffer) - self.window_chars)
        command = match_command(buffer[start:])
        if command is None:
            return None

        self._last_fired = self._clock()
        self._consumed = len(buffer)
        self.detections += 1
        logger.info("Voice command detected: %s", command.value)
        return command

    def reset(self) -> None:
        self._consumed = 0
        self._last_fired = None
        self.detections = 0
