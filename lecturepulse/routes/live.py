import asyncio
import logging
from datetime import date

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from lecturepulse.database import (
    count_questions_sent_on,
    get_async_conn,
    get_instructor_settings,
    upsert_instructor_settings,
)
from lecturepulse.errors import (
    AudioCaptureError,
    AudioPermissionError,
    ConfigurationError,
    CredentialValidationError,
    DeliveryError,
    QuestionGenerationError,
    SendRejected,
)
from lecturepulse.live.dispatch import DailyQuota, QuestionDispatcher
from lecturepulse.live.scheduler import validate_interval
from lecturepulse.live.session import LiveLectureSession
from lecturepulse.models import QuestionOrigin
from lecturepulse.recording import AudioCaptureSession
from lecturepulse.services.delivery import DeliveryService
from lecturepulse.services.questions import QUESTION_TYPES, get_question_service
from lecturepulse.streaming.client import TranscriptionStreamClient
from lecturepulse.streaming.pubsub import (
    BusMessage,
    EventBus,
    Subscription,
    presenter_topic,
    students_topic,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])

bus = EventBus()

# session_id -> LiveLectureSession (recording or stopped, until restarted)
_sessions: dict[str, LiveLectureSession] = {}

# instructor_id -> DailyQuota shared by all of that instructor's sessions
_quotas: dict[str, DailyQuota] = {}


class StartLiveRequest(BaseModel):
    instructor_id: str


class SendQuestionRequest(BaseModel):
    question_type: str | None = None
    context_text: str | None = None


class SlideContextRequest(BaseModel):
    text: str


class AutoQuestionSettingsRequest(BaseModel):
    enabled: bool
    interval_minutes: int = 15
    daily_question_limit: int = Field(default=200, ge=1)
    question_format: str = "multiple_choice"


def build_session(
    session_id: str, instructor_id: str, prefs: dict, quota: DailyQuota
) -> LiveLectureSession:
    """Wire a live session from the instructor's saved preferences."""
    dispatcher = QuestionDispatcher(
        get_question_service(),
        DeliveryService(bus, instructor_id, session_id),
        quota=quota,
        question_type=prefs["question_format"],
    )
    client = TranscriptionStreamClient(capture=AudioCaptureSession())
    return LiveLectureSession(
        session_id,
        instructor_id,
        bus,
        client,
        dispatcher,
        auto_questions_enabled=prefs["auto_question_enabled"],
        interval_minutes=prefs["auto_question_interval"],
    )


def _get_session(session_id: str) -> LiveLectureSession:
    session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Live session {session_id} not found")
    return session


# ==================================================================
# REST endpoints
# ==================================================================


@router.post("/api/live/{session_id}/start")
async def start_live(session_id: str, body: StartLiveRequest) -> dict:
    """Open the microphone and the transcription stream for a live lecture."""
    existing = _sessions.get(session_id)
    if existing is not None and existing.recording:
        raise HTTPException(status_code=409, detail="Recording already active for this session.")

    quota = _quotas.get(body.instructor_id)
    conn = await get_async_conn()
    try:
        prefs = await get_instructor_settings(conn, body.instructor_id)
        if quota is None:
            used_today = await count_questions_sent_on(conn, body.instructor_id, date.today())
            quota = _quotas[body.instructor_id] = DailyQuota(used=used_today)
    finally:
        await conn.close()
    quota.limit = prefs["daily_question_limit"]

    session = build_session(session_id, body.instructor_id, prefs, quota)
    try:
        await session.start()
    except CredentialValidationError as e:
        raise HTTPException(
            status_code=400, detail={"error_code": e.error_code, "message": str(e)}
        )
    except AudioPermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except AudioCaptureError as e:
        raise HTTPException(status_code=500, detail=str(e))

    _sessions[session_id] = session
    return {"session_id": session_id, "status": "recording"}


@router.post("/api/live/{session_id}/stop")
async def stop_live(session_id: str) -> dict:
    session = _get_session(session_id)
    if not session.recording:
        raise HTTPException(status_code=400, detail="No active recording for this session.")
    metrics = session.scheduler.metrics.to_dict()
    await session.stop()
    return {"session_id": session_id, "status": "stopped", "auto_questions": metrics}


@router.post("/api/live/{session_id}/send")
async def send_question(session_id: str, body: SendQuestionRequest) -> dict:
    """Manual "send now"; shares the cooldown and quota with every other trigger."""
    session = _get_session(session_id)
    if body.question_type is not None and body.question_type not in QUESTION_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown question type {body.question_type}")
    try:
        sent = await session.send_question(
            QuestionOrigin.MANUAL, body.context_text, body.question_type
        )
    except SendRejected as e:
        raise HTTPException(status_code=429, detail={"reason": e.reason, "detail": e.detail})
    except (QuestionGenerationError, DeliveryError) as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "question_id": sent.ack.question_id,
        "delivered_to": sent.ack.delivered_to,
        "sent_at": sent.ack.sent_at,
        "question": sent.question.to_dict(),
    }


@router.post("/api/live/{session_id}/slide-context")
async def set_slide_context(session_id: str, body: SlideContextRequest) -> dict:
    session = _get_session(session_id)
    session.set_slide_context(body.text)
    return {"session_id": session_id, "slide_context_chars": len(session.slide_context)}


@router.get("/api/live/{session_id}/status")
async def live_status(session_id: str) -> dict:
    return _get_session(session_id).status()


@router.put("/api/instructors/{instructor_id}/auto-questions")
async def update_auto_questions(instructor_id: str, body: AutoQuestionSettingsRequest) -> dict:
    try:
        validate_interval(body.interval_minutes)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if body.question_format not in QUESTION_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown question type {body.question_format}")

    data = {
        "instructor_id": instructor_id,
        "auto_question_enabled": body.enabled,
        "auto_question_interval": body.interval_minutes,
        "daily_question_limit": body.daily_question_limit,
        "question_format": body.question_format,
    }
    conn = await get_async_conn()
    try:
        await upsert_instructor_settings(conn, data)
    finally:
        await conn.close()

    # Running sessions pick the change up immediately
    if instructor_id in _quotas:
        _quotas[instructor_id].limit = body.daily_question_limit
    for session in _sessions.values():
        if session.instructor_id != instructor_id:
            continue
        session.scheduler.enabled = body.enabled
        if session.scheduler.interval_minutes != body.interval_minutes:
            session.scheduler.set_interval(body.interval_minutes)
        session.dispatcher.question_type = body.question_format
    return data


# ==================================================================
# WebSocket endpoints
# ==================================================================


@router.websocket("/ws/live/{session_id}/students")
async def students_socket(websocket: WebSocket, session_id: str) -> None:
    """Question delivery. Each open socket counts as one connected student."""
    await websocket.accept()
    with bus.subscribe(students_topic(session_id)) as sub:
        await _pump(websocket, sub)


@router.websocket("/ws/live/{session_id}/presenter")
async def presenter_socket(websocket: WebSocket, session_id: str) -> None:
    """Transcripts, connection state and notices for the presenter view."""
    await websocket.accept()
    session = _sessions.get(session_id)
    await websocket.send_json(
        BusMessage("status", session.status() if session else {"recording": False}).to_dict()
    )
    with bus.subscribe(presenter_topic(session_id)) as sub:
        await _pump(websocket, sub)


async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    forward = asyncio.create_task(_forward(websocket, sub))
    try:
        while True:
            await websocket.receive_text()  # keep-alive; client sends pings
    except WebSocketDisconnect:
        logger.debug("Socket left %s", sub.topic)
    finally:
        forward.cancel()


async def _forward(websocket: WebSocket, sub: Subscription) -> None:
    while True:
        message = await sub.get()
        await websocket.send_json(message.to_dict())
