"""Cognitive-load based placement of comprehension questions in recorded lectures.

Placement is deterministic for a given transcript, count and domain profile;
only question generation talks to the outside world.
"""

import asyncio
import logging
import re
from dataclasses import dataclass

import aiosqlite

from lecturepulse.config import settings
from lecturepulse.database import replace_pause_points
from lecturepulse.live.dispatch import QuestionGenerator
from lecturepulse.live.quality import detect_topic_change, words_of
from lecturepulse.models import DomainProfile, PausePoint, TranscriptSegment
from lecturepulse.services.entities import extract_entities, key_entities
from lecturepulse.services.questions import fallback_question

logger = logging.getLogger(__name__)

CONTEXT_WINDOW_SECONDS = 120.0
CONTEXT_MAX_CHARS = 1500
SYNTHETIC_REASON = "Main takeaway checkpoint"
_EPS = 1e-6

CONCEPT_RE = re.compile(
    r"\b(is defined as|we define|definition of|the concept of|introduc\w+|is called|"
    r"known as|refers to|key idea|principle of|theorem|law of)\b"
)
FORMULA_RE = re.compile(
    r"(=|\b(equals|equation|formula|derivative|integral|squared|divided by|"
    r"proportional to|deriv\w+|sum of|log of)\b|\d+\s*[+\-*/^]\s*\d+)"
)
TRANSITION_RE = re.compile(
    r"\b(moving on|next we|now let's|let's turn to|in summary|to summarize|so far|"
    r"another important|the second|finally)\b"
)
PROFILE_CUES = {
    DomainProfile.STEM: re.compile(r"\b(step \w+|algorithm|proof|code|process)\b"),
    DomainProfile.HUMANITIES: re.compile(
        r"\b(however|therefore|consequently|in contrast|argues|the author|this led to)\b"
    ),
    DomainProfile.MEDICAL: re.compile(
        r"\b(presents with|differential|diagnosis|first-line|contraindicated|prognosis)\b"
    ),
}


@dataclass
class SegmentScore:
    score: int
    reasons: list[str]
    question_type: str


def format_time(seconds: float) -> str:
    return f"{int(seconds // 60)}:{int(seconds % 60):02d}"


class CognitiveLoadPlacementEngine:
    """Choose exactly N pause points in a timestamped transcript.

    1. Score each segment 1-10 from new-concept cues, formulas, terminology
       density, topic transitions and domain entities.
    2. Segments scoring at least ``candidate_threshold`` become candidates,
       timed at the end of their segment, never before the minimum start.
    3. Candidates are kept greedily by score while respecting the minimum
       spacing, then cut to N.
    4. Missing points are synthesised on an even grid in unused time,
       shifting colliding slots forward (then backward from the end).  If a
       real candidate makes the layout impossible it is dropped.
    """

    def __init__(
        self,
        generator: QuestionGenerator,
        *,
        min_start_seconds: float | None = None,
        min_start_fraction: float | None = None,
        min_spacing_seconds: float | None = None,
        shift_step_seconds: float | None = None,
        candidate_threshold: int | None = None,
    ) -> None:
        self.generator = generator
        self.min_start_seconds = (
            settings.placement_min_start_seconds if min_start_seconds is None else min_start_seconds
        )
        self.min_start_fraction = (
            settings.placement_min_start_fraction if min_start_fraction is None
            else min_start_fraction
        )
        self.min_spacing = min_spacing_seconds or settings.placement_min_spacing_seconds
        self.shift_step = shift_step_seconds or settings.placement_shift_step_seconds
        self.candidate_threshold = candidate_threshold or settings.placement_candidate_threshold

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def min_start_time(self, duration: float) -> float:
        return max(self.min_start_seconds, self.min_start_fraction * duration)

    def score_segment(
        self,
        segment: TranscriptSegment,
        previous: TranscriptSegment | None,
        profile: DomainProfile,
        lecture_entities: set[str],
    ) -> SegmentScore:
        text = segment.text.lower()
        score = 1
        reasons: list[str] = []
        question_type = "multiple_choice"

        if CONCEPT_RE.search(text):
            score += 3
            reasons.append("New concept introduced")
        if FORMULA_RE.search(text):
            score += 3
            reasons.append("Formula or derivation")
            question_type = "short_answer"

        words = words_of(text)
        if words:
            long_ratio = sum(1 for w in words if len(w) >= 9) / len(words)
            if long_ratio >= 0.15:
                score += 2
                reasons.append("Dense terminology")
            elif long_ratio >= 0.08:
                score += 1

        transition = 0
        if TRANSITION_RE.search(text):
            transition += 1
        if previous is not None and detect_topic_change(previous.text, segment.text):
            transition += 1
        if transition:
            score += transition
            reasons.append("Topic transition")

        if PROFILE_CUES[profile].search(text):
            score += 1

        mentioned = [
            e.name for e in extract_entities(segment.text, profile) if e.name in lecture_entities
        ]
        if mentioned:
            cap = 3 if profile is DomainProfile.MEDICAL else 2
            score += min(cap, len(mentioned))
            reasons.append("Key terms: " + ", ".join(mentioned[:3]))

        return SegmentScore(
            score=max(1, min(10, score)),
            reasons=reasons,
            question_type=question_type,
        )

    def score_segments(
        self, segments: list[TranscriptSegment], profile: DomainProfile
    ) -> list[tuple[TranscriptSegment, SegmentScore]]:
        lecture_entities = key_entities([s.text for s in segments], profile)
        scored = []
        previous = None
        for segment in segments:
            scored.append((segment, self.score_segment(segment, previous, profile, lecture_entities)))
            previous = segment
        return scored

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    def place(
        self,
        segments: list[TranscriptSegment],
        count: int,
        profile: DomainProfile = DomainProfile.STEM,
    ) -> list[PausePoint]:
        """Exactly *count* pause points ordered by time, without questions."""
        if count <= 0:
            return []
        segments = sorted(segments, key=lambda s: s.start)
        duration = max((s.end for s in segments), default=0.0)
        lo = self.min_start_time(duration)
        hi = max(duration, lo)
        spacing = self.min_spacing
        if count > 1 and (count - 1) * spacing > hi - lo:
            if hi - lo > 0:
                # Too short for full spacing: spread as widely as possible
                spacing = (hi - lo) / (count - 1)
            else:
                hi = lo + (count - 1) * spacing

        scored = self.score_segments(segments, profile)
        candidates = [
            PausePoint(
                timestamp_seconds=round(seg.end, 2),
                cognitive_load_score=result.score,
                reason="; ".join(result.reasons) or "High cognitive load",
                suggested_question_type=result.question_type,
            )
            for seg, result in scored
            if result.score >= self.candidate_threshold and lo - _EPS <= seg.end <= hi + _EPS
        ]

        # Highest score first; earlier wins a tie
        candidates.sort(key=lambda p: (-p.cognitive_load_score, p.timestamp_seconds))
        real: list[PausePoint] = []
        for point in candidates:
            if self._fits(point.timestamp_seconds, [p.timestamp_seconds for p in real], spacing):
                real.append(point)
        real = real[:count]

        while True:
            slots = self._fill_slots(real, count, lo, hi, spacing)
            if slots is not None:
                break
            dropped = min(real, key=lambda p: (p.cognitive_load_score, -p.timestamp_seconds))
            real.remove(dropped)
            logger.debug("Dropped candidate at %.1fs to make room", dropped.timestamp_seconds)

        synthetic = [
            PausePoint(
                timestamp_seconds=round(t, 2),
                cognitive_load_score=self._score_at(scored, t),
                reason=SYNTHETIC_REASON,
                suggested_question_type="multiple_choice",
                is_synthetic=True,
            )
            for t in slots
        ]
        points = sorted(real + synthetic, key=lambda p: p.timestamp_seconds)
        for index, point in enumerate(points):
            point.order_index = index
            point.context_summary = self.context_for(segments, point.timestamp_seconds)
        logger.info(
            "Placed %d pause points (%d detected, %d synthetic) over %.0fs",
            len(points), len(real), len(synthetic), duration,
        )
        return points

    def _grid(self, lo: float, hi: float, n: int, spacing: float) -> list[float]:
        span = hi - lo
        if n == 1:
            return [lo + span / 2]
        step = max(spacing, span / n)
        offset = (span - step * (n - 1)) / 2
        return [lo + offset + i * step for i in range(n)]

    def _fill_slots(
        self,
        real: list[PausePoint],
        count: int,
        lo: float,
        hi: float,
        spacing: float,
    ) -> list[float] | None:
        """Times for the synthetic points, or None if *real* blocks a valid layout."""
        missing = count - len(real)
        if missing == 0:
            return []
        grid = self._grid(lo, hi, count, spacing)

        # Each real point takes the grid slot nearest to it
        free = list(grid)
        for point in sorted(real, key=lambda p: -p.cognitive_load_score):
            nearest = min(free, key=lambda s: abs(s - point.timestamp_seconds))
            free.remove(nearest)

        placed = [p.timestamp_seconds for p in real]
        slots: list[float] = []
        for slot in free:
            t = self._find_time(slot, placed, lo, hi, spacing)
            if t is None:
                return None
            placed.append(t)
            slots.append(t)
        return slots

    def _find_time(
        self, slot: float, placed: list[float], lo: float, hi: float, spacing: float
    ) -> float | None:
        t = slot
        while t <= hi + _EPS:
            if self._fits(t, placed, spacing):
                return t
            t += self.shift_step
        t = hi
        while t >= lo - _EPS:
            if self._fits(t, placed, spacing):
                return t
            t -= self.shift_step
        return None

    @staticmethod
    def _fits(t: float, placed: list[float], spacing: float) -> bool:
        return all(abs(t - p) >= spacing - _EPS for p in placed)

    @staticmethod
    def _score_at(scored: list[tuple[TranscriptSegment, SegmentScore]], t: float) -> int:
        before = [result.score for seg, result in scored if seg.start <= t]
        return before[-1] if before else 1

    @staticmethod
    def context_for(segments: list[TranscriptSegment], t: float) -> str:
        """Transcript covering the two minutes before *t*."""
        window = [s.text for s in segments if s.end > t - CONTEXT_WINDOW_SECONDS and s.start <= t]
        if not window:
            window = [s.text for s in segments if s.start <= t][-3:]
        return " ".join(window)[-CONTEXT_MAX_CHARS:]

    # ------------------------------------------------------------------
    # Questions and persistence
    # ------------------------------------------------------------------

    async def analyze(
        self,
        segments: list[TranscriptSegment],
        count: int,
        profile: DomainProfile = DomainProfile.STEM,
    ) -> list[PausePoint]:
        """Place points and attach one generated question to each, concurrently."""
        points = self.place(segments, count, profile)
        results = await asyncio.gather(
            *(self._generate_for(p) for p in points), return_exceptions=True
        )
        for point, result in zip(points, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Question generation failed at %s, using fallback: %s",
                    format_time(point.timestamp_seconds), result,
                )
                prompt = (
                    "What is the main takeaway from this part of the lecture?"
                    if point.is_synthetic else "What was the main concept discussed?"
                )
                point.question = fallback_question(point.suggested_question_type, prompt)
            else:
                point.question = result
        return points

    async def _generate_for(self, point: PausePoint):
        context = point.context_summary
        if point.is_synthetic:
            context = f"Summarize the main takeaway of this lecture section.\n{context}"
        return await self.generator.generate(context, point.suggested_question_type)

    async def analyze_and_store(
        self,
        conn: aiosqlite.Connection,
        lecture_id: int,
        segments: list[TranscriptSegment],
        count: int,
        profile: DomainProfile = DomainProfile.STEM,
    ) -> list[PausePoint]:
        """Full re-analysis: the lecture's previous point set is replaced, never merged."""
        logger.info(
            "Analyzing lecture %d: %d segments, %d questions, profile %s",
            lecture_id, len(segments), count, profile.value,
        )
        points = await self.analyze(segments, count, profile)
        await replace_pause_points(conn, lecture_id, points)
        return points
