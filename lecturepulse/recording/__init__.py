from lecturepulse.recording.capture import AudioCaptureSession

__all__ = ["AudioCaptureSession"]
