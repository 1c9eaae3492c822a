import json

import aiosqlite

from lecturepulse.models import TranscriptSegment


class StorageService:
    """Lecture and stored-transcript access. All methods take an open connection."""

    @staticmethod
    async def create_lecture(
        conn: aiosqlite.Connection,
        instructor_id: str,
        title: str,
        duration_seconds: float | None = None,
    ) -> int:
        cursor = await conn.execute(
            "INSERT INTO lectures (instructor_id, title, duration_seconds) VALUES (?, ?, ?)",
            (instructor_id, title, duration_seconds),
        )
        await conn.commit()
        return cursor.lastrowid

    @staticmethod
    async def get_lecture(conn: aiosqlite.Connection, lecture_id: int) -> dict | None:
        row = await conn.execute("SELECT * FROM lectures WHERE id = ?", (lecture_id,))
        found = await row.fetchone()
        if not found:
            return None
        lecture = dict(found)
        raw = lecture.pop("cognitive_analysis_json", None)
        lecture["cognitive_analysis"] = json.loads(raw) if raw else None
        return lecture

    @staticmethod
    async def is_instructor_for(
        conn: aiosqlite.Connection, instructor_id: str, lecture_id: int
    ) -> bool:
        row = await conn.execute(
            "SELECT 1 FROM lectures WHERE id = ? AND instructor_id = ?",
            (lecture_id, instructor_id),
        )
        return await row.fetchone() is not None

    @staticmethod
    async def save_transcript(
        conn: aiosqlite.Connection, lecture_id: int, segments: list[TranscriptSegment]
    ) -> None:
        data = [{"text": s.text, "start": s.start, "end": s.end} for s in segments]
        await conn.execute(
            """INSERT INTO lecture_transcripts (lecture_id, segments_json) VALUES (?, ?)
               ON CONFLICT(lecture_id) DO UPDATE SET segments_json = excluded.segments_json""",
            (lecture_id, json.dumps(data)),
        )
        await conn.commit()

    @staticmethod
    async def get_transcript(
        conn: aiosqlite.Connection, lecture_id: int
    ) -> list[TranscriptSegment]:
        """Stored segments ordered by start time; empty if none were saved."""
        row = await conn.execute(
            "SELECT segments_json FROM lecture_transcripts WHERE lecture_id = ?",
            (lecture_id,),
        )
        found = await row.fetchone()
        if not found:
            return []
        segments = [
            TranscriptSegment(text=s["text"], start=float(s["start"]), end=float(s["end"]))
            for s in json.loads(found["segments_json"])
        ]
        return sorted(segments, key=lambda s: s.start)
