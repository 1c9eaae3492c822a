import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from lecturepulse.config import settings
from lecturepulse.errors import (
    ConfigurationError,
    DeliveryError,
    QuestionGenerationError,
    SendRejected,
)
from lecturepulse.live.accumulator import TranscriptAccumulator
from lecturepulse.live.dispatch import QuestionDispatcher, SentQuestion
from lecturepulse.live.quality import EXPECTED_WPM, analyze_content_quality, recent_words
from lecturepulse.live.timers import PeriodicTask
from lecturepulse.models import AutoQuestionMetrics, QuestionOrigin

logger = logging.getLogger(__name__)

VALID_INTERVALS = (5, 10, 15, 20, 30)

# Skip reasons, in gate order
RECORDING_STOPPED = "Recording stopped"
NO_STUDENTS = "No students connected"
DISABLED = "Auto-questions disabled"
QUOTA_REACHED = "Daily quota reached"
INSUFFICIENT_CONTENT = "Insufficient content"
QUALITY_TOO_LOW = "Quality too low"
RATE_LIMITED = "Rate limit active"
GENERATION_FAILED = "Generation failed"

_WORD_RE = re.compile(r"\S+")


@dataclass
class TickResult:
    sent: bool
    reason: str = ""
    detail: str = ""
    quality_score: float | None = None


def validate_interval(minutes: int) -> int:
    if minutes not in VALID_INTERVALS:
        raise ConfigurationError(
            f"Auto-question interval must be one of {VALID_INTERVALS}, got {minutes}"
        )
    return minutes


class AutoQuestionScheduler:
    """Sends a question from each interval's transcript if the content earns one.

    The interval window starts when recording starts and restarts after every
    sent question, whatever triggered it.  Gates are evaluated in a fixed
    order and the first failure is the recorded skip reason.
    """

    def __init__(
        self,
        dispatcher: QuestionDispatcher,
        accumulator: TranscriptAccumulator,
        recording_active: Callable[[], bool],
        student_count: Callable[[], int],
        *,
        enabled: bool = True,
        interval_minutes: int | None = None,
        min_content_chars: int | None = None,
        min_quality_score: float | None = None,
        notify: Callable[[str, dict], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.dispatcher = dispatcher
        self.accumulator = accumulator
        self._recording_active = recording_active
        self._student_count = student_count
        self.enabled = enabled
        self.interval_minutes = validate_interval(
            interval_minutes or settings.auto_question_interval_minutes
        )
        self.min_content_chars = min_content_chars or settings.auto_question_min_chars
        self.min_quality_score = (
            settings.auto_question_min_quality if min_quality_score is None else min_quality_score
        )
        self._notify = notify
        self._clock = clock

        self.metrics = AutoQuestionMetrics()
        self._interval_offset = 0
        self._interval_started_at = clock()
        self._timer = PeriodicTask(
            self.interval_minutes * 60, self.tick, sleep=sleep, name="auto-questions"
        )
        self._timer_started_at: float | None = None

        dispatcher.on_sent(self._on_question_sent)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.begin_interval()
        self._timer.start()
        self._timer_started_at = self._clock()
        logger.info("Auto-questions scheduled every %d min", self.interval_minutes)

    def stop(self) -> None:
        self._timer.cancel()
        self._timer_started_at = None
        self.metrics.reset()

    def set_interval(self, minutes: int) -> None:
        self.interval_minutes = validate_interval(minutes)
        self._timer.reset(minutes * 60)
        if self._timer.running:
            self._timer_started_at = self._clock()

    def begin_interval(self) -> None:
        self._interval_offset = len(self.accumulator)
        self._interval_started_at = self._clock()

    @property
    def interval_text(self) -> str:
        return self.accumulator.since(self._interval_offset)

    def seconds_until_next(self) -> float | None:
        if self._timer_started_at is None:
            return None
        elapsed = (self._clock() - self._timer_started_at) % self._timer.interval
        return self._timer.interval - elapsed

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickResult:
        if self._timer.running:
            self._timer_started_at = self._clock()

        text = self.interval_text.strip()
        elapsed = max(1.0, self._clock() - self._interval_started_at)
        expected_words = self.interval_minutes * EXPECTED_WPM
        # Long-running intervals are judged on their most recent content only
        window = recent_words(text, expected_words) if len(text.split()) > expected_words * 2 else text

        failed = self._check_gates(text)
        if failed is not None:
            return self._skip(*failed)

        quality = analyze_content_quality(window, elapsed)
        if quality.score < self.min_quality_score:
            return self._skip(
                QUALITY_TOO_LOW,
                f"{quality.score:.2f} (need {self.min_quality_score:.2f}+)",
                quality.score,
            )
        remaining = self.dispatcher.rate_limit.seconds_remaining()
        if remaining > 0 or self.dispatcher.in_flight:
            return self._skip(RATE_LIMITED, f"{remaining:.0f}s remaining", quality.score)

        try:
            await self.dispatcher.send(QuestionOrigin.AUTO_INTERVAL, window)
        except SendRejected as e:
            return self._skip(e.reason, e.detail, quality.score)
        except (QuestionGenerationError, DeliveryError) as e:
            logger.warning("Auto-question failed: %s", e)
            result = self._skip(GENERATION_FAILED, str(e), quality.score)
            self._emit("generation_failed", {"origin": QuestionOrigin.AUTO_INTERVAL.value, "error": str(e)})
            return result

        self.metrics.record_sent(quality.score)
        return TickResult(sent=True, quality_score=quality.score)

    def _check_gates(self, text: str) -> tuple[str, str] | None:
        """First failing gate before content quality, as (reason, detail)."""
        if not self._recording_active():
            return RECORDING_STOPPED, ""
        if self._student_count() <= 0:
            return NO_STUDENTS, "0 connected"
        if not self.enabled:
            return DISABLED, ""
        quota = self.dispatcher.quota
        if quota.exhausted:
            return QUOTA_REACHED, f"{quota.used}/{quota.limit}"
        if len(text) < self.min_content_chars:
            return INSUFFICIENT_CONTENT, f"{len(text)}/{self.min_content_chars} chars"
        return None

    def _skip(self, reason: str, detail: str, quality_score: float | None = None) -> TickResult:
        skip = self.metrics.record_skip(reason, detail)
        logger.info("Auto-question skipped: %s (%s)", reason, detail)
        self._trim_interval()
        self._emit("auto_question_skipped", {
            "reason": reason,
            "detail": detail,
            "timestamp": skip.timestamp.isoformat(),
        })
        return TickResult(sent=False, reason=reason, detail=detail, quality_score=quality_score)

    def _trim_interval(self) -> None:
        """Keep only the expected amount of words once the interval grows past 1.5x."""
        text = self.interval_text
        expected = self.interval_minutes * EXPECTED_WPM
        words = list(_WORD_RE.finditer(text))
        if len(words) <= expected * 1.5:
            return
        keep_from = words[len(words) - expected].start()
        self._interval_offset += keep_from
        logger.debug("Trimmed interval transcript from %d to %d words", len(words), expected)

    def _on_question_sent(self, sent: SentQuestion) -> None:
        self.begin_interval()
        if sent.origin is not QuestionOrigin.AUTO_INTERVAL and self._timer.running:
            # Voice and manual questions restart the countdown
            self._timer.reset()
            self._timer_started_at = self._clock()

    def _emit(self, kind: str, payload: dict) -> None:
        if self._notify is None:
            return
        try:
            self._notify(kind, payload)
        except Exception:
            logger.exception("Scheduler notice %s failed", kind)

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "interval_minutes": self.interval_minutes,
            "interval_chars": len(self.interval_text.strip()),
            "seconds_until_next": self.seconds_until_next(),
            "metrics": self.metrics.to_dict(),
        }
