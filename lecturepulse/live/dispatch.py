import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Protocol

from lecturepulse.config import settings
from lecturepulse.errors import SendRejected
from lecturepulse.models import DeliveryAck, GeneratedQuestion, QuestionOrigin

logger = logging.getLogger(__name__)


class QuestionGenerator(Protocol):
    async def generate(self, context_text: str, question_type: str) -> GeneratedQuestion: ...


class QuestionDelivery(Protocol):
    async def deliver(
        self, question: GeneratedQuestion, origin: QuestionOrigin = QuestionOrigin.MANUAL
    ) -> DeliveryAck: ...


class RateLimitWindow:
    """Minimum spacing between any two sent questions."""

    def __init__(self, cooldown_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = (
            settings.question_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self._clock = clock
        self._allowed_at = 0.0

    def seconds_remaining(self) -> float:
        return max(0.0, self._allowed_at - self._clock())

    @property
    def active(self) -> bool:
        return self.seconds_remaining() > 0

    def start(self) -> None:
        self._allowed_at = self._clock() + self.cooldown_seconds

    def clear(self) -> None:
        self._allowed_at = 0.0


class DailyQuota:
    """Questions sent today by one instructor against a fixed limit."""

    def __init__(
        self,
        limit: int | None = None,
        used: int = 0,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.limit = settings.daily_question_limit if limit is None else limit
        self._today = today
        self._day = today()
        self._used = used

    def _roll(self) -> None:
        current = self._today()
        if current != self._day:
            logger.info("Daily quota reset for %s", current.isoformat())
            self._day = current
            self._used = 0

    @property
    def used(self) -> int:
        self._roll()
        return self._used

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def record(self) -> None:
        self._roll()
        self._used += 1


@dataclass
class SentQuestion:
    origin: QuestionOrigin
    question: GeneratedQuestion
    ack: DeliveryAck


class QuestionDispatcher:
    """The single send path shared by voice, interval and manual triggers.

    Whoever calls ``send()`` first wins; a concurrent or too-early second
    caller is rejected with ``SendRejected`` and nothing is generated.
    """

    def __init__(
        self,
        generator: QuestionGenerator,
        delivery: QuestionDelivery,
        rate_limit: RateLimitWindow | None = None,
        quota: DailyQuota | None = None,
        question_type: str | None = None,
    ) -> None:
        self.generator = generator
        self.delivery = delivery
        self.rate_limit = rate_limit or RateLimitWindow()
        self.quota = quota or DailyQuota()
        self.question_type = question_type or settings.question_format
        self.in_flight = False
        self._sent_callbacks: list[Callable[[SentQuestion], None]] = []

    def on_sent(self, fn: Callable[[SentQuestion], None]) -> None:
        self._sent_callbacks.append(fn)

    def check(self) -> None:
        """Raise ``SendRejected`` if a send would be refused right now."""
        if self.in_flight:
            raise SendRejected("Send in progress", "another question is being generated")
        remaining = self.rate_limit.seconds_remaining()
        if remaining > 0:
            raise SendRejected("Rate limit active", f"{remaining:.0f}s remaining")
        if self.quota.exhausted:
            raise SendRejected("Daily quota reached", f"{self.quota.used}/{self.quota.limit}")

    async def send(
        self,
        origin: QuestionOrigin,
        context_text: str,
        question_type: str | None = None,
    ) -> SentQuestion:
        self.check()
        self.in_flight = True
        try:
            question = await self.generator.generate(context_text, question_type or self.question_type)
            ack = await self.delivery.deliver(question, origin=origin)
            self.rate_limit.start()
            self.quota.record()
        finally:
            self.in_flight = False

        sent = SentQuestion(origin=origin, question=question, ack=ack)
        logger.info(
            "Question sent (origin=%s, delivered_to=%d, quota %d/%d)",
            origin.value, ack.delivered_to, self.quota.used, self.quota.limit,
        )
        for fn in list(self._sent_callbacks):
            try:
                fn(sent)
            except Exception:
                logger.exception("on_sent callback failed")
        return sent
