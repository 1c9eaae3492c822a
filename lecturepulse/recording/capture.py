import asyncio
import logging
import threading
import time
from typing import Callable

import numpy as np

from lecturepulse.config import settings
from lecturepulse.errors import AudioCaptureError, AudioPermissionError
from lecturepulse.models import AudioChunk
from lecturepulse.recording.audio_utils import (
    chunk_byte_size,
    float_to_pcm16,
    split_complete_chunks,
)

logger = logging.getLogger(__name__)

_PERMISSION_MARKERS = ("permission", "not allowed", "denied")


class AudioCaptureSession:
    """Owns the microphone and emits fixed-duration PCM chunks.

    Threading model (two contexts, never blur them):

    1. **Audio callback** runs in sounddevice's internal C audio thread.
       It only converts and slices the block, then hands finished chunks to
       the event loop with ``loop.call_soon_threadsafe``.  No I/O, no awaiting.

    2. **Event loop** receives each ``AudioChunk`` through ``on_chunk``.
       The session never touches any other component's state.
    """

    def __init__(
        self,
        sample_rate: int | None = None,
        chunk_ms: int | None = None,
        stream_factory: Callable[..., object] | None = None,
    ) -> None:
        self.sample_rate = sample_rate or settings.sample_rate
        self.chunk_ms = chunk_ms or settings.audio_chunk_ms
        self.chunk_bytes = chunk_byte_size(self.sample_rate, self.chunk_ms)
        self._stream_factory = stream_factory

        # Pending bytes: guarded by _lock
        self._pending = b""
        self._sequence = 0
        self._lock = threading.Lock()

        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_chunk: Callable[[AudioChunk], None] | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(
        self,
        on_chunk: Callable[[AudioChunk], None],
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Open the microphone. ``on_chunk`` is always called on *loop*."""
        if self._stream is not None:
            return
        self._loop = loop or asyncio.get_running_loop()
        self._on_chunk = on_chunk
        # PortAudio is loaded on first use so the package imports on hosts without it
        try:
            import sounddevice as sd
        except OSError as e:
            raise AudioCaptureError(f"Audio backend unavailable: {e}") from e

        factory = self._stream_factory or sd.InputStream
        try:
            stream = factory(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                callback=self._audio_callback,
                blocksize=1024,
            )
            stream.start()
        except sd.PortAudioError as e:
            if any(marker in str(e).lower() for marker in _PERMISSION_MARKERS):
                raise AudioPermissionError(
                    "Microphone access denied. Please allow microphone permissions."
                ) from e
            raise AudioCaptureError(f"Failed to access microphone: {e}") from e
        self._stream = stream
        logger.info(
            "Audio capture started (%d Hz, %d ms chunks)", self.sample_rate, self.chunk_ms
        )

    def stop(self) -> None:
        """Release the device. Safe to call repeatedly and from any state."""
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
            logger.info("Audio capture stopped after %d chunks", self._sequence)
        with self._lock:
            self._pending = b""  # less than one chunk: not worth sending

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    @property
    def chunks_emitted(self) -> int:
        return self._sequence

    # ------------------------------------------------------------------
    # Audio callback: C audio thread
    # ------------------------------------------------------------------

    def _audio_callback(
        self,
        indata: np.ndarray,
        frames: int,
        timeinfo,  # noqa: ANN001
        status,
    ) -> None:
        """sounddevice callback.  Must be fast: slice and hand off only."""
        with self._lock:
            ready, self._pending = split_complete_chunks(
                self._pending + float_to_pcm16(indata), self.chunk_bytes
            )
            chunks = []
            for data in ready:
                chunks.append(AudioChunk(data=data, sequence=self._sequence, captured_at=time.time()))
                self._sequence += 1

        loop, on_chunk = self._loop, self._on_chunk
        if loop is None or on_chunk is None or loop.is_closed():
            return
        for chunk in chunks:
            loop.call_soon_threadsafe(on_chunk, chunk)
