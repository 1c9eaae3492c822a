import logging
import sqlite3
from datetime import datetime
from typing import Awaitable, Callable

import aiosqlite

from lecturepulse.database import get_async_conn, insert_live_question
from lecturepulse.errors import DeliveryError
from lecturepulse.models import DeliveryAck, GeneratedQuestion, QuestionOrigin
from lecturepulse.streaming.pubsub import (
    BusMessage,
    EventBus,
    presenter_topic,
    students_topic,
)

logger = logging.getLogger(__name__)


class DeliveryService:
    """Record a live question and push it to every student of one session."""

    def __init__(
        self,
        bus: EventBus,
        instructor_id: str,
        session_id: str,
        connect: Callable[[], Awaitable[aiosqlite.Connection]] = get_async_conn,
    ) -> None:
        self.bus = bus
        self.instructor_id = instructor_id
        self.session_id = session_id
        self._connect = connect

    async def deliver(
        self,
        question: GeneratedQuestion,
        origin: QuestionOrigin = QuestionOrigin.MANUAL,
    ) -> DeliveryAck:
        sent_at = datetime.now()
        conn = await self._connect()
        try:
            question_id = await insert_live_question(
                conn, self.instructor_id, self.session_id, origin.value, question, sent_at
            )
        except sqlite3.Error as e:
            raise DeliveryError(f"Failed to record question: {e}") from e
        finally:
            await conn.close()

        payload = {
            "question_id": question_id,
            "origin": origin.value,
            "sent_at": sent_at.isoformat(),
            **question.to_dict(),
        }
        # Students never see the answer before responding
        student_payload = {
            k: v for k, v in payload.items() if k not in ("correct_answer", "explanation")
        }
        delivered = self.bus.publish(
            students_topic(self.session_id), BusMessage("question", student_payload)
        )
        self.bus.publish(presenter_topic(self.session_id), BusMessage("question_sent", payload))
        logger.info(
            "Delivered question %d to %d students (session %s)",
            question_id, delivered, self.session_id,
        )
        return DeliveryAck(question_id=question_id, delivered_to=delivered, sent_at=sent_at.isoformat())
