import json
import sqlite3
from datetime import date, datetime, timezone

import aiosqlite

from lecturepulse.config import settings
from lecturepulse.errors import PersistenceError
from lecturepulse.models import GeneratedQuestion, PausePoint

CREATE_LECTURES = """
CREATE TABLE IF NOT EXISTS lectures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instructor_id TEXT NOT NULL,
    title TEXT NOT NULL,
    duration_seconds REAL,
    status TEXT NOT NULL DEFAULT 'uploaded',
    cognitive_analysis_json TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

CREATE_LECTURE_TRANSCRIPTS = """
CREATE TABLE IF NOT EXISTS lecture_transcripts (
    lecture_id INTEGER PRIMARY KEY,
    segments_json TEXT NOT NULL DEFAULT '[]',
    FOREIGN KEY (lecture_id) REFERENCES lectures(id)
)
"""

CREATE_PAUSE_POINTS = """
CREATE TABLE IF NOT EXISTS pause_points (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lecture_id INTEGER NOT NULL,
    order_index INTEGER NOT NULL,
    timestamp_seconds REAL NOT NULL,
    cognitive_load_score INTEGER NOT NULL,
    reason TEXT NOT NULL,
    question_type TEXT NOT NULL,
    question_json TEXT NOT NULL,
    is_synthetic INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (lecture_id) REFERENCES lectures(id),
    UNIQUE(lecture_id, order_index)
)
"""

CREATE_LIVE_QUESTIONS = """
CREATE TABLE IF NOT EXISTS live_questions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instructor_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    origin TEXT NOT NULL,
    question_json TEXT NOT NULL,
    sent_at TIMESTAMP NOT NULL
)
"""

CREATE_INSTRUCTOR_SETTINGS = """
CREATE TABLE IF NOT EXISTS instructor_settings (
    instructor_id TEXT PRIMARY KEY,
    auto_question_enabled INTEGER NOT NULL DEFAULT 0,
    auto_question_interval INTEGER NOT NULL DEFAULT 15,
    daily_question_limit INTEGER NOT NULL DEFAULT 200,
    question_format TEXT NOT NULL DEFAULT 'multiple_choice'
)
"""

_DDL = [
    CREATE_LECTURES,
    CREATE_LECTURE_TRANSCRIPTS,
    CREATE_PAUSE_POINTS,
    CREATE_LIVE_QUESTIONS,
    CREATE_INSTRUCTOR_SETTINGS,
]


async def init_db() -> None:
    """Create all tables. Called once at server startup via FastAPI lifespan."""
    async with aiosqlite.connect(settings.database_path) as db:
        for stmt in _DDL:
            await db.execute(stmt)
        await db.commit()


async def get_async_conn() -> aiosqlite.Connection:
    """Async connection for use in FastAPI route handlers and services."""
    conn = await aiosqlite.connect(settings.database_path)
    await conn.execute("PRAGMA busy_timeout = 5000")
    conn.row_factory = aiosqlite.Row
    return conn


# ------------------------------------------------------------------
# Pause points
# ------------------------------------------------------------------


async def replace_pause_points(
    conn: aiosqlite.Connection, lecture_id: int, points: list[PausePoint]
) -> None:
    """Delete the lecture's point set and insert *points* in one transaction.

    Readers never observe a partially written set: either the old rows or
    the new rows are visible.
    """
    analysis = {
        "analyzed_at": datetime.now(timezone.utc).isoformat(),
        "total_pause_points": len(points),
        "avg_cognitive_load": (
            sum(p.cognitive_load_score for p in points) / len(points) if points else 0
        ),
    }
    try:
        await conn.execute("BEGIN IMMEDIATE")
        await conn.execute("DELETE FROM pause_points WHERE lecture_id = ?", (lecture_id,))
        await conn.executemany(
            """INSERT INTO pause_points
               (lecture_id, order_index, timestamp_seconds, cognitive_load_score,
                reason, question_type, question_json, is_synthetic)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    lecture_id,
                    p.order_index,
                    p.timestamp_seconds,
                    p.cognitive_load_score,
                    p.reason,
                    p.suggested_question_type,
                    json.dumps(p.question.to_dict() if p.question else {}),
                    int(p.is_synthetic),
                )
                for p in points
            ],
        )
        await conn.execute(
            "UPDATE lectures SET status = 'ready', cognitive_analysis_json = ? WHERE id = ?",
            (json.dumps(analysis), lecture_id),
        )
        await conn.commit()
    except sqlite3.Error as e:
        await conn.rollback()
        raise PersistenceError(f"Failed to save pause points: {e}") from e


async def fetch_pause_points(conn: aiosqlite.Connection, lecture_id: int) -> list[PausePoint]:
    rows = await conn.execute(
        "SELECT * FROM pause_points WHERE lecture_id = ? ORDER BY order_index",
        (lecture_id,),
    )
    points = []
    for row in await rows.fetchall():
        question = json.loads(row["question_json"])
        points.append(
            PausePoint(
                timestamp_seconds=row["timestamp_seconds"],
                cognitive_load_score=row["cognitive_load_score"],
                reason=row["reason"],
                suggested_question_type=row["question_type"],
                order_index=row["order_index"],
                is_synthetic=bool(row["is_synthetic"]),
                question=GeneratedQuestion.from_dict(question) if question else None,
            )
        )
    return points


# ------------------------------------------------------------------
# Live questions / quota / settings
# ------------------------------------------------------------------


async def insert_live_question(
    conn: aiosqlite.Connection,
    instructor_id: str,
    session_id: str,
    origin: str,
    question: GeneratedQuestion,
    sent_at: datetime,
) -> int:
    cursor = await conn.execute(
        """INSERT INTO live_questions (instructor_id, session_id, origin, question_json, sent_at)
           VALUES (?, ?, ?, ?, ?)""",
        (instructor_id, session_id, origin, json.dumps(question.to_dict()), sent_at.isoformat()),
    )
    await conn.commit()
    return cursor.lastrowid


async def count_questions_sent_on(
    conn: aiosqlite.Connection, instructor_id: str, day: date
) -> int:
    row = await conn.execute(
        "SELECT COUNT(*) AS n FROM live_questions WHERE instructor_id = ? AND substr(sent_at, 1, 10) = ?",
        (instructor_id, day.isoformat()),
    )
    result = await row.fetchone()
    return result["n"] if result else 0


async def get_instructor_settings(conn: aiosqlite.Connection, instructor_id: str) -> dict:
    row = await conn.execute(
        "SELECT * FROM instructor_settings WHERE instructor_id = ?", (instructor_id,)
    )
    found = await row.fetchone()
    if not found:
        return {
            "instructor_id": instructor_id,
            "auto_question_enabled": False,
            "auto_question_interval": settings.auto_question_interval_minutes,
            "daily_question_limit": settings.daily_question_limit,
            "question_format": settings.question_format,
        }
    data = dict(found)
    data["auto_question_enabled"] = bool(data["auto_question_enabled"])
    return data


async def upsert_instructor_settings(conn: aiosqlite.Connection, data: dict) -> None:
    await conn.execute(
        """INSERT INTO instructor_settings
           (instructor_id, auto_question_enabled, auto_question_interval,
            daily_question_limit, question_format)
           VALUES (?, ?, ?, ?, ?)
           ON CONFLICT(instructor_id) DO UPDATE SET
             auto_question_enabled = excluded.auto_question_enabled,
             auto_question_interval = excluded.auto_question_interval,
             daily_question_limit = excluded.daily_question_limit,
             question_format = excluded.question_format""",
        (
            data["instructor_id"],
            int(data["auto_question_enabled"]),
            data["auto_question_interval"],
            data["daily_question_limit"],
            data["question_format"],
        ),
    )
    await conn.commit()
