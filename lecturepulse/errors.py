class LecturePulseError(Exception):
    """Base class for every error raised by lecturepulse."""


class ConfigurationError(LecturePulseError):
    pass


class CredentialValidationError(LecturePulseError):
    """Relay credentials are missing or rejected. Never retried."""

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message)
        self.error_code = error_code


class RelayConnectionError(LecturePulseError):
    """Transient failure opening or using the relay channel."""


class InvalidTransitionError(LecturePulseError):
    pass


class AudioCaptureError(LecturePulseError):
    pass


class AudioPermissionError(AudioCaptureError):
    """The OS refused microphone access. Fatal until the user grants it."""


class QuestionGenerationError(LecturePulseError):
    pass


class DeliveryError(LecturePulseError):
    pass


class PersistenceError(LecturePulseError):
    pass


class SendRejected(LecturePulseError):
    """A question send was gated (cooldown, quota, in-flight send)."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail
