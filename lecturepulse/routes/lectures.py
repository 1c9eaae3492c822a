from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from lecturepulse.config import settings
from lecturepulse.database import fetch_pause_points, get_async_conn
from lecturepulse.errors import PersistenceError
from lecturepulse.models import DomainProfile, TranscriptSegment
from lecturepulse.services.placement import CognitiveLoadPlacementEngine
from lecturepulse.services.questions import get_question_service
from lecturepulse.services.storage import StorageService

router = APIRouter(prefix="/api", tags=["lectures"])


class SegmentIn(BaseModel):
    text: str
    start: float = Field(ge=0)
    end: float = Field(ge=0)


class CreateLectureRequest(BaseModel):
    title: str
    duration_seconds: float | None = None
    transcript: list[SegmentIn] | None = None


class AnalyzeRequest(BaseModel):
    transcript: list[SegmentIn] | None = None
    question_count: int = Field(default=settings.default_question_count, ge=1, le=20)
    domain_profile: DomainProfile = DomainProfile.STEM


def get_placement_engine() -> CognitiveLoadPlacementEngine:
    return CognitiveLoadPlacementEngine(get_question_service())


def _segments(items: list[SegmentIn]) -> list[TranscriptSegment]:
    return [TranscriptSegment(text=s.text, start=s.start, end=s.end) for s in items]


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------


@router.post("/lectures")
async def create_lecture(
    body: CreateLectureRequest,
    x_instructor_id: str = Header(...),
) -> dict:
    """Register a recorded lecture, optionally with its timestamped transcript."""
    conn = await get_async_conn()
    try:
        lecture_id = await StorageService.create_lecture(
            conn, x_instructor_id, body.title, body.duration_seconds
        )
        if body.transcript:
            await StorageService.save_transcript(conn, lecture_id, _segments(body.transcript))
        return await StorageService.get_lecture(conn, lecture_id)
    finally:
        await conn.close()


@router.post("/lectures/{lecture_id}/analyze")
async def analyze_lecture(
    lecture_id: int,
    body: AnalyzeRequest,
    x_instructor_id: str = Header(...),
    engine: CognitiveLoadPlacementEngine = Depends(get_placement_engine),
) -> dict:
    """Place pause points and generate their questions, replacing any previous set."""
    conn = await get_async_conn()
    try:
        lecture = await StorageService.get_lecture(conn, lecture_id)
        if not lecture:
            raise HTTPException(status_code=404, detail=f"Lecture {lecture_id} not found")
        if not await StorageService.is_instructor_for(conn, x_instructor_id, lecture_id):
            raise HTTPException(
                status_code=403, detail="Only the lecture's instructor can analyze it."
            )

        if body.transcript:
            segments = _segments(body.transcript)
            await StorageService.save_transcript(conn, lecture_id, segments)
        else:
            segments = await StorageService.get_transcript(conn, lecture_id)
        if not segments:
            raise HTTPException(
                status_code=400, detail="No transcript available for this lecture."
            )

        try:
            points = await engine.analyze_and_store(
                conn, lecture_id, segments, body.question_count, body.domain_profile
            )
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=str(e))

        return {
            "lecture_id": lecture_id,
            "question_count": len(points),
            "pause_points": [p.to_dict() for p in points],
        }
    finally:
        await conn.close()


@router.get("/lectures/{lecture_id}/pause-points")
async def get_pause_points(lecture_id: int) -> dict:
    conn = await get_async_conn()
    try:
        lecture = await StorageService.get_lecture(conn, lecture_id)
        if not lecture:
            raise HTTPException(status_code=404, detail=f"Lecture {lecture_id} not found")
        points = await fetch_pause_points(conn, lecture_id)
        return {
            "lecture_id": lecture_id,
            "status": lecture["status"],
            "cognitive_analysis": lecture["cognitive_analysis"],
            "pause_points": [p.to_dict() for p in points],
        }
    finally:
        await conn.close()
