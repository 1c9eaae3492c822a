import logging

from lecturepulse.clients import GroqClient
from lecturepulse.errors import QuestionGenerationError
from lecturepulse.models import GeneratedQuestion

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("multiple_choice", "short_answer", "true_false")

# ---------------------------------------------------------------------------
# JSON Schema
# ---------------------------------------------------------------------------

QUESTION_SCHEMA = {
    "type": "object",
    "properties": {
        "question": {"type": "string"},
        "options": {
            "type": "array",
            "items": {"type": "string"},
        },
        "correct_answer": {"type": "string"},
        "explanation": {"type": "string"},
    },
    "required": ["question", "options", "correct_answer", "explanation"],
    "additionalProperties": False,
}

_TYPE_INSTRUCTIONS = {
    "multiple_choice": (
        "Write one multiple-choice question with exactly 4 options labelled "
        '"A. ", "B. ", "C. ", "D. ". correct_answer is the letter of the right option.'
    ),
    "short_answer": (
        "Write one short-answer question answerable in one or two sentences. "
        "options must be an empty list; correct_answer is the expected answer."
    ),
    "true_false": (
        'Write one true/false statement. options must be ["True", "False"]; '
        "correct_answer is True or False."
    ),
}


def fallback_question(
    question_type: str = "multiple_choice",
    prompt: str = "What was the main concept discussed?",
) -> GeneratedQuestion:
    """Deterministic placeholder used when generation fails for a pause point."""
    if question_type == "multiple_choice":
        return GeneratedQuestion(
            question=prompt,
            options=["A. Option 1", "B. Option 2", "C. Option 3", "D. Option 4"],
            correct_answer="A",
            explanation="Review the lecture content for details.",
            question_type=question_type,
        )
    return GeneratedQuestion(
        question=prompt,
        options=None,
        correct_answer="Answer based on lecture content",
        explanation="Review the lecture content for details.",
        question_type=question_type,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class QuestionService:
    """Turn a window of lecture text into one comprehension question via Groq."""

    def __init__(self, groq: GroqClient | None = None) -> None:
        self.groq = groq or GroqClient()

    async def generate(
        self,
        context_text: str,
        question_type: str = "multiple_choice",
    ) -> GeneratedQuestion:
        context_text = context_text.strip()
        if not context_text:
            raise QuestionGenerationError("No lecture content to generate a question from")
        if question_type not in QUESTION_TYPES:
            raise QuestionGenerationError(f"Unsupported question type: {question_type}")

        messages = [
            {
                "role": "system",
                "content": (
                    "You are an expert educator writing live comprehension checks. "
                    "Given a stretch of lecture transcript, write a question that tests "
                    "understanding of what was just taught, not trivia. "
                    + _TYPE_INSTRUCTIONS[question_type]
                ),
            },
            {
                "role": "user",
                "content": f"Lecture transcript:\n{context_text}\n\nWrite the question.",
            },
        ]
        result = await self.groq.chat_json(
            messages, QUESTION_SCHEMA, schema_name="question", temperature=0.4
        )

        question = (result.get("question") or "").strip()
        if not question:
            raise QuestionGenerationError("Generated question is empty")
        options = [o for o in result.get("options") or [] if o.strip()]
        if question_type == "multiple_choice" and len(options) < 2:
            raise QuestionGenerationError("Multiple-choice question came back without options")

        logger.debug("Generated %s question (%d chars of context)", question_type, len(context_text))
        return GeneratedQuestion(
            question=question,
            options=options or None,
            correct_answer=result.get("correct_answer", ""),
            explanation=result.get("explanation", ""),
            question_type=question_type,
        )

    async def close(self) -> None:
        await self.groq.close()


# One Groq connection pool for the whole app; closed by the lifespan hook
_shared_service: QuestionService | None = None


def get_question_service() -> QuestionService:
    global _shared_service
    if _shared_service is None:
        _shared_service = QuestionService()
    return _shared_service


async def close_question_service() -> None:
    global _shared_service
    service, _shared_service = _shared_service, None
    if service is not None:
        await service.close()
