from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ConnectionState(str, Enum):
    IDLE = "idle"
    VALIDATING_CREDENTIALS = "validating_credentials"
    CONNECTING = "connecting"
    AWAITING_READY = "awaiting_ready"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    FAILED = "failed"


class QuestionOrigin(str, Enum):
    VOICE_COMMAND = "voice_command"
    SLIDE_COMMAND = "slide_command"
    AUTO_INTERVAL = "auto_interval"
    MANUAL = "manual"


class DomainProfile(str, Enum):
    STEM = "stem"
    HUMANITIES = "humanities"
    MEDICAL = "medical"


@dataclass
class AudioChunk:
    data: bytes
    sequence: int
    captured_at: float = 0.0

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class SpeakerSegment:
    speaker_id: int
    text: str
    avg_confidence: float


@dataclass
class TranscriptEvent:
    text: str
    is_final: bool
    confidence: float
    speaker_segments: list[SpeakerSegment] = field(default_factory=list)


@dataclass
class TranscriptSegment:
    """One row of a stored, timestamped transcript (seconds from start)."""

    text: str
    start: float
    end: float


@dataclass
class GeneratedQuestion:
    question: str
    correct_answer: str
    explanation: str
    question_type: str = "multiple_choice"
    options: list[str] | None = None

    def to_dict(self) -> dict:
        return {
            "question": self.question,
            "options": self.options,
            "correct_answer": self.correct_answer,
            "explanation": self.explanation,
            "question_type": self.question_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GeneratedQuestion":
        return cls(
            question=data["question"],
            options=data.get("options"),
            correct_answer=data.get("correct_answer", ""),
            explanation=data.get("explanation", ""),
            question_type=data.get("question_type", "multiple_choice"),
        )


@dataclass
class PausePoint:
    timestamp_seconds: float
    cognitive_load_score: int  # 1..10
    reason: str
    suggested_question_type: str
    order_index: int = 0
    context_summary: str = ""
    is_synthetic: bool = False
    question: GeneratedQuestion | None = None

    def to_dict(self) -> dict:
        return {
            "timestamp_seconds": self.timestamp_seconds,
            "cognitive_load_score": self.cognitive_load_score,
            "reason": self.reason,
            "suggested_question_type": self.suggested_question_type,
            "order_index": self.order_index,
            "is_synthetic": self.is_synthetic,
            "question": self.question.to_dict() if self.question else None,
        }


@dataclass
class SkipReason:
    timestamp: datetime
    reason: str
    detail: str = ""


@dataclass
class AutoQuestionMetrics:
    """Per recording session. Reset when the session stops."""

    sent_count: int = 0
    skipped_count: int = 0
    average_quality_score: float = 0.0
    skip_reasons: list[SkipReason] = field(default_factory=list)

    def record_sent(self, quality_score: float) -> None:
        self.sent_count += 1
        # running mean over sent questions only
        self.average_quality_score += (
            quality_score - self.average_quality_score
        ) / self.sent_count

    def record_skip(self, reason: str, detail: str = "") -> SkipReason:
        skip = SkipReason(timestamp=datetime.now(), reason=reason, detail=detail)
        self.skipped_count += 1
        self.skip_reasons.append(skip)
        return skip

    @property
    def success_rate(self) -> float:
        total = self.sent_count + self.skipped_count
        return self.sent_count / total if total else 0.0

    def reset(self) -> None:
        self.sent_count = 0
        self.skipped_count = 0
        self.average_quality_score = 0.0
        self.skip_reasons = []

    def to_dict(self, recent: int = 5) -> dict:
        return {
            "sent_count": self.sent_count,
            "skipped_count": self.skipped_count,
            "average_quality_score": round(self.average_quality_score, 3),
            "success_rate": round(self.success_rate, 3),
            "recent_skips": [
                {
                    "timestamp": s.timestamp.isoformat(),
                    "reason": s.reason,
                    "detail": s.detail,
                }
                for s in reversed(self.skip_reasons[-recent:])
            ],
        }


@dataclass
class DeliveryAck:
    question_id: int
    delivered_to: int
    sent_at: str
