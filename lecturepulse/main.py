import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from lecturepulse import __version__
from lecturepulse.config import settings
from lecturepulse.database import init_db
from lecturepulse.logging_config import setup_logging
from lecturepulse.routes import lectures, live
from lecturepulse.services.questions import close_question_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create SQLite tables on startup. On shutdown stop live sessions and close the Groq client."""
    setup_logging()
    await init_db()
    yield
    for session in list(live._sessions.values()):
        if session.recording:
            logger.info("Stopping live session %s on shutdown", session.session_id)
            await session.stop()
    await close_question_service()


app = FastAPI(
    title="lecture-pulse",
    description="Live lecture transcription with adaptive comprehension questions",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(live.router)
app.include_router(lectures.router)


def run() -> None:
    uvicorn.run("lecturepulse.main:app", host=settings.host, port=settings.port)
