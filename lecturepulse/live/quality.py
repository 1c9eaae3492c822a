"""Content-quality heuristics for deciding whether transcript text is worth a question."""

import re
from dataclasses import dataclass

QUESTION_WORDS = frozenset({
    "what", "how", "why", "when", "where", "who", "which", "whose", "whom",
    "can", "could", "would", "should", "is", "are", "do", "does", "will",
})

FILLER_WORDS = frozenset({
    "um", "uh", "erm", "like", "basically", "literally", "actually",
    "just", "really", "very", "quite", "okay", "so",
})
FILLER_PHRASES = ("you know", "i mean", "sort of", "kind of")

EXPECTED_WPM = 150
TTR_WINDOW = 50  # words per type-token window
MIN_WORDS_FOR_FULL_SCORE = 25

_WORD_RE = re.compile(r"[a-z0-9']+")
_SENTENCE_RE = re.compile(r"[.!?]+")


@dataclass
class ContentQuality:
    word_count: int
    sentence_count: int
    words_per_minute: int
    filler_ratio: float
    lexical_density: float
    has_question_words: bool
    is_pause: bool
    score: float  # 0..1


def words_of(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def moving_type_token_ratio(words: list[str], window: int = TTR_WINDOW) -> float:
    """Mean unique/total ratio over sliding windows, so long texts are not penalised."""
    if not words:
        return 0.0
    if len(words) <= window:
        return len(set(words)) / len(words)
    ratios = [
        len(set(words[i:i + window])) / window
        for i in range(0, len(words) - window + 1, max(1, window // 5))
    ]
    return sum(ratios) / len(ratios)


def filler_ratio(words: list[str]) -> float:
    if not words:
        return 0.0
    lowered = " ".join(words)
    count = sum(1 for w in words if w in FILLER_WORDS)
    count += sum(len(re.findall(rf"\b{phrase}\b", lowered)) * 2 for phrase in FILLER_PHRASES)
    return min(1.0, count / len(words))


def analyze_content_quality(text: str, duration_seconds: float = 60.0) -> ContentQuality:
    words = words_of(text)
    word_count = len(words)
    minutes = duration_seconds / 60
    wpm = round(word_count / minutes) if minutes > 0 else 0
    fillers = filler_ratio(words)
    density = (1 - fillers) * moving_type_token_ratio(words)
    score = density * min(1.0, word_count / MIN_WORDS_FOR_FULL_SCORE)
    return ContentQuality(
        word_count=word_count,
        sentence_count=len([s for s in _SENTENCE_RE.split(text) if s.strip()]),
        words_per_minute=wpm,
        filler_ratio=fillers,
        lexical_density=density,
        has_question_words=any(w in QUESTION_WORDS for w in words),
        is_pause=wpm < 50 or density < 0.3 or word_count < 5,
        score=max(0.0, min(1.0, score)),
    )


def recent_words(text: str, max_words: int) -> str:
    """The last *max_words* whitespace-separated words of *text*."""
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[-max_words:])


def detect_topic_change(previous: str, current: str) -> bool:
    """Low vocabulary overlap between two segments means the lecturer moved on."""

    def primary(text: str) -> set[str]:
        return {w for w in words_of(text) if len(w) > 4 and w not in FILLER_WORDS}

    prev_words = primary(previous)
    if len(prev_words) <= 5:
        return False
    overlap = len(prev_words & primary(current)) / len(prev_words)
    return overlap < 0.3
