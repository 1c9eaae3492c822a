from lecturepulse.live.accumulator import TranscriptAccumulator
from lecturepulse.live.dispatch import DailyQuota, QuestionDispatcher, RateLimitWindow
from lecturepulse.live.scheduler import AutoQuestionScheduler
from lecturepulse.live.session import LiveLectureSession
from lecturepulse.live.voice_commands import CommandType, VoiceCommandDetector

__all__ = [
    "AutoQuestionScheduler",
    "CommandType",
    "DailyQuota",
    "LiveLectureSession",
    "QuestionDispatcher",
    "RateLimitWindow",
    "TranscriptAccumulator",
    "VoiceCommandDetector",
]
