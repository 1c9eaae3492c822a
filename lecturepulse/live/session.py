import asyncio
import logging
from typing import Callable

from lecturepulse.config import settings
from lecturepulse.errors import DeliveryError, QuestionGenerationError, SendRejected
from lecturepulse.live.accumulator import TranscriptAccumulator
from lecturepulse.live.dispatch import QuestionDispatcher, SentQuestion
from lecturepulse.live.scheduler import AutoQuestionScheduler
from lecturepulse.live.voice_commands import CommandType, VoiceCommandDetector
from lecturepulse.models import ConnectionState, QuestionOrigin, TranscriptEvent
from lecturepulse.streaming.client import TranscriptionStreamClient
from lecturepulse.streaming.pubsub import BusMessage, EventBus, presenter_topic, students_topic

logger = logging.getLogger(__name__)

_COMMAND_ORIGINS = {
    CommandType.SEND_QUESTION: QuestionOrigin.VOICE_COMMAND,
    CommandType.SEND_SLIDE_QUESTION: QuestionOrigin.SLIDE_COMMAND,
}


class LiveLectureSession:
    """One recording session: stream client, transcript, triggers and send path.

    Every piece of cross-callback state for the session lives on this object.
    Presenter-facing events (transcripts, state changes, notices) are
    published on the presenter topic; questions go to the students topic.
    """

    def __init__(
        self,
        session_id: str,
        instructor_id: str,
        bus: EventBus,
        client: TranscriptionStreamClient,
        dispatcher: QuestionDispatcher,
        *,
        auto_questions_enabled: bool = False,
        interval_minutes: int | None = None,
        voice_context_chars: int | None = None,
        detector: VoiceCommandDetector | None = None,
        scheduler_factory: Callable[..., AutoQuestionScheduler] = AutoQuestionScheduler,
    ) -> None:
        self.session_id = session_id
        self.instructor_id = instructor_id
        self.bus = bus
        self.client = client
        self.dispatcher = dispatcher
        self.voice_context_chars = voice_context_chars or settings.voice_context_chars

        self.recording = False
        self.slide_context = ""
        self.accumulator = TranscriptAccumulator()
        self.detector = detector or VoiceCommandDetector()
        self.scheduler = scheduler_factory(
            dispatcher,
            self.accumulator,
            recording_active=lambda: self.recording,
            student_count=self.student_count,
            enabled=auto_questions_enabled,
            interval_minutes=interval_minutes,
            notify=self._notice,
        )
        self._pending: set[asyncio.Task] = set()

        client.on_transcript(self._on_transcript)
        client.on_state_change(self._on_state_change)
        client.on_error(lambda message: self._notice("stream_error", {"message": message}))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin a fresh recording. Errors from ``connect()`` propagate."""
        self.accumulator.reset()
        self.detector.reset()
        self.recording = True
        try:
            await self.client.connect()
        except Exception:
            self.recording = False
            raise
        self.scheduler.start()
        self._publish_presenter("recording_status", {"status": "recording"})
        logger.info("Live session %s started", self.session_id)

    async def stop(self) -> None:
        self.recording = False
        self.scheduler.stop()
        for task in list(self._pending):
            task.cancel()
        try:
            await self.client.disconnect()
        finally:
            self._publish_presenter("recording_status", {"status": "stopped"})
            logger.info(
                "Live session %s stopped (%d chars transcribed)",
                self.session_id, len(self.accumulator),
            )

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def student_count(self) -> int:
        return self.bus.subscriber_count(students_topic(self.session_id))

    def set_slide_context(self, text: str) -> None:
        self.slide_context = text.strip()

    def context_for(self, origin: QuestionOrigin) -> str:
        recent = self.accumulator.tail(self.voice_context_chars)
        if origin is QuestionOrigin.SLIDE_COMMAND and self.slide_context:
            return f"Slide content:\n{self.slide_context}\n\nLecturer said:\n{recent}"
        return recent

    async def send_question(
        self,
        origin: QuestionOrigin = QuestionOrigin.MANUAL,
        context_text: str | None = None,
        question_type: str | None = None,
    ) -> SentQuestion:
        """Generate and deliver one question through the shared send path."""
        context = context_text if context_text is not None else self.context_for(origin)
        if not context.strip():
            raise SendRejected("Insufficient content", "no transcript yet")
        return await self.dispatcher.send(origin, context, question_type)

    async def _handle_command(self, command: CommandType) -> None:
        origin = _COMMAND_ORIGINS[command]
        try:
            await self.send_question(origin)
        except SendRejected as e:
            logger.info("Voice command ignored: %s", e)
            self._notice("voice_command_ignored", {"reason": e.reason, "detail": e.detail})
        except (QuestionGenerationError, DeliveryError) as e:
            logger.warning("Voice-triggered question failed: %s", e)
            self._notice("generation_failed", {"origin": origin.value, "error": str(e)})

    # ------------------------------------------------------------------
    # Stream callbacks
    # ------------------------------------------------------------------

    def _on_transcript(self, event: TranscriptEvent) -> None:
        self._publish_presenter("transcript", {
            "text": event.text,
            "is_final": event.is_final,
            "confidence": event.confidence,
            "speakers": [
                {"speaker_id": s.speaker_id, "text": s.text, "confidence": s.avg_confidence}
                for s in event.speaker_segments
            ],
        })
        if not self.recording or not self.accumulator.add(event):
            return
        command = self.detector.check(self.accumulator.text)
        if command is None:
            return
        self._publish_presenter("voice_command", {"command": command.value})
        task = asyncio.create_task(self._handle_command(command))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        self._publish_presenter("connection_state", {"from": old.value, "to": new.value})

    def _notice(self, kind: str, payload: dict) -> None:
        self._publish_presenter(kind, payload)

    def _publish_presenter(self, kind: str, payload: dict) -> None:
        self.bus.publish(presenter_topic(self.session_id), BusMessage(kind, payload))

    def status(self) -> dict:
        quota = self.dispatcher.quota
        return {
            "session_id": self.session_id,
            "instructor_id": self.instructor_id,
            "recording": self.recording,
            "connection_state": self.client.get_state().value,
            "students_connected": self.student_count(),
            "transcript_chars": len(self.accumulator),
            "cooldown_seconds": round(self.dispatcher.rate_limit.seconds_remaining(), 1),
            "quota": {"used": quota.used, "limit": quota.limit, "remaining": quota.remaining},
            "auto_questions": self.scheduler.status(),
            "stream": self.client.stats.to_dict(),
        }
