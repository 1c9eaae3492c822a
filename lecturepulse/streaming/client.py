import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from lecturepulse.config import settings
from lecturepulse.errors import (
    AudioCaptureError,
    CredentialValidationError,
    InvalidTransitionError,
    RelayConnectionError,
)
from lecturepulse.models import AudioChunk, ConnectionState, TranscriptEvent
from lecturepulse.recording import AudioCaptureSession
from lecturepulse.streaming.messages import (
    CLOSE_STREAM,
    MessageKind,
    RelayMessage,
    parse_relay_message,
)
from lecturepulse.streaming.relay import (
    CredentialCheck,
    RelayChannel,
    RelayTransport,
    WebSocketRelayTransport,
    validate_relay_credentials,
)

logger = logging.getLogger(__name__)

S = ConnectionState

ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    S.IDLE: frozenset({S.VALIDATING_CREDENTIALS, S.CLOSED}),
    S.VALIDATING_CREDENTIALS: frozenset({S.CONNECTING, S.FAILED, S.CLOSED}),
    S.CONNECTING: frozenset({S.AWAITING_READY, S.RECONNECTING, S.FAILED, S.CLOSED}),
    S.AWAITING_READY: frozenset({S.STREAMING, S.RECONNECTING, S.FAILED, S.CLOSED}),
    # streaming -> connecting is the proactive reconnect path
    S.STREAMING: frozenset({S.CONNECTING, S.RECONNECTING, S.FAILED, S.CLOSED}),
    S.RECONNECTING: frozenset({S.CONNECTING, S.FAILED, S.CLOSED}),
    S.CLOSED: frozenset({S.IDLE}),
    S.FAILED: frozenset({S.IDLE, S.CLOSED}),
}

# States in which captured audio is kept for later transmission
_QUEUEING_STATES = frozenset(
    {S.VALIDATING_CREDENTIALS, S.CONNECTING, S.AWAITING_READY, S.STREAMING, S.RECONNECTING}
)


@dataclass
class StreamStats:
    chunks_captured: int = 0
    chunks_sent: int = 0
    chunks_discarded: int = 0
    chunks_dropped: int = 0
    proactive_reconnects: int = 0
    reconnects: int = 0

    def to_dict(self) -> dict:
        return {
            "chunks_captured": self.chunks_captured,
            "chunks_sent": self.chunks_sent,
            "chunks_discarded": self.chunks_discarded,
            "chunks_dropped": self.chunks_dropped,
            "proactive_reconnects": self.proactive_reconnects,
            "reconnects": self.reconnects,
        }


@dataclass
class StreamSessionState:
    """Everything that lives for one connect() .. disconnect() cycle."""

    state: ConnectionState = S.IDLE
    reconnect_attempts: int = 0
    saved_reconnect_attempts: int = 0
    should_reconnect: bool = True
    is_proactive_reconnect: bool = False
    connected_at: float | None = None
    queue: deque[AudioChunk] = field(default_factory=deque)
    stats: StreamStats = field(default_factory=StreamStats)


class TranscriptionStreamClient:
    """Long-lived connection to the transcription relay.

    Lifecycle::

        idle -> validating_credentials -> connecting -> awaiting_ready -> streaming
                                              ^                              |
                                              +------ reconnecting <---------+

    Audio produced while not streaming is queued and flushed, in order, the
    moment the relay reports ready.  ``disconnect()`` is the only way to stop
    the client for good; it is valid from every state.

    All methods must be called on the event loop that owns the client.
    """

    def __init__(
        self,
        transport: RelayTransport | None = None,
        capture: AudioCaptureSession | None = None,
        validator: Callable[[], Awaitable[CredentialCheck]] = validate_relay_credentials,
        *,
        max_reconnect_attempts: int | None = None,
        reconnect_base_delay: float | None = None,
        reconnect_backoff_factor: float | None = None,
        proactive_reconnect_after: float | None = settings.proactive_reconnect_after_seconds,
        connection_age_check_interval: float | None = None,
        min_chunk_bytes: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport or WebSocketRelayTransport()
        self._capture = capture
        self._validator = validator
        self.max_reconnect_attempts = (
            settings.max_reconnect_attempts if max_reconnect_attempts is None
            else max_reconnect_attempts
        )
        self.reconnect_base_delay = reconnect_base_delay or settings.reconnect_base_delay_seconds
        self.reconnect_backoff_factor = (
            reconnect_backoff_factor or settings.reconnect_backoff_factor
        )
        # None disables the connection-age watchdog
        self.proactive_reconnect_after = proactive_reconnect_after
        self.connection_age_check_interval = (
            connection_age_check_interval or settings.connection_age_check_seconds
        )
        self.min_chunk_bytes = (
            settings.min_audio_chunk_bytes if min_chunk_bytes is None else min_chunk_bytes
        )
        self._clock = clock
        self._sleep = sleep

        self._session = StreamSessionState()
        self._channel: RelayChannel | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._drain_task: asyncio.Task | None = None

        # Callback registries
        self._transcript_callbacks: list[Callable[[TranscriptEvent], object]] = []
        self._ready_callbacks: list[Callable[[], object]] = []
        self._error_callbacks: list[Callable[[str], object]] = []
        self._close_callbacks: list[Callable[[str], object]] = []
        self._state_callbacks: list[Callable[[ConnectionState, ConnectionState], object]] = []

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_transcript(self, fn: Callable[[TranscriptEvent], object]) -> None:
        """Interim and final events alike; consumers filter on ``is_final``."""
        self._transcript_callbacks.append(fn)

    def on_ready(self, fn: Callable[[], object]) -> None:
        self._ready_callbacks.append(fn)

    def on_error(self, fn: Callable[[str], object]) -> None:
        self._error_callbacks.append(fn)

    def on_close(self, fn: Callable[[str], object]) -> None:
        self._close_callbacks.append(fn)

    def on_state_change(
        self, fn: Callable[[ConnectionState, ConnectionState], object]
    ) -> None:
        """``fn(old, new)`` after every transition."""
        self._state_callbacks.append(fn)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Validate credentials, open the microphone and the relay channel.

        Raises ``CredentialValidationError`` or ``AudioCaptureError`` after
        moving to ``failed``; neither is retried.
        """
        s = self._session
        if s.state in (S.CLOSED, S.FAILED):
            self._reset()
            s = self._session
        elif s.state is not S.IDLE:
            logger.warning("connect() ignored in state %s", s.state.value)
            return

        s.should_reconnect = True
        self._transition(S.VALIDATING_CREDENTIALS)
        check = await self._validator()
        if s.state is not S.VALIDATING_CREDENTIALS:
            # disconnect() won the race
            return
        if not check.valid:
            self._fail(check.remediation)
            raise CredentialValidationError(
                check.remediation, check.error_code or "VALIDATION_ERROR"
            )

        if self._capture is not None:
            try:
                self._capture.start(self.send_audio)
            except AudioCaptureError as e:
                self._fail(str(e))
                raise

        self._transition(S.CONNECTING)
        if self.proactive_reconnect_after is not None:
            self._watchdog_task = asyncio.create_task(self._watch_connection_age())
        await self._open_channel()

    def send_audio(self, chunk: AudioChunk | bytes) -> None:
        """Accept one captured chunk. Transmits now if streaming, queues otherwise."""
        if isinstance(chunk, (bytes, bytearray)):
            chunk = AudioChunk(data=bytes(chunk), sequence=self._session.stats.chunks_captured)
        s = self._session
        if chunk.size < self.min_chunk_bytes:
            s.stats.chunks_discarded += 1
            return
        if s.state not in _QUEUEING_STATES:
            s.stats.chunks_dropped += 1
            logger.debug("Dropping audio chunk %d in state %s", chunk.sequence, s.state.value)
            return
        s.stats.chunks_captured += 1
        s.queue.append(chunk)
        if s.state is S.STREAMING:
            self._ensure_drain()

    async def disconnect(self) -> None:
        """Terminal, user-initiated stop. Safe from any state."""
        s = self._session
        s.should_reconnect = False
        s.is_proactive_reconnect = False
        self._cancel_tasks()

        channel, self._channel = self._channel, None
        try:
            if channel is not None:
                await self._close_channel(channel, 1000, "Client disconnect", graceful=True)
        finally:
            if self._capture is not None:
                self._capture.stop()
            s.queue.clear()
            s.connected_at = None
            if s.state is not S.CLOSED:
                self._transition(S.CLOSED)
                self._emit(self._close_callbacks, "Disconnected")
        logger.info(
            "Stream client closed (captured=%d sent=%d proactive=%d)",
            s.stats.chunks_captured, s.stats.chunks_sent, s.stats.proactive_reconnects,
        )

    def is_connected(self) -> bool:
        return self._session.state is S.STREAMING

    def get_state(self) -> ConnectionState:
        return self._session.state

    @property
    def reconnect_attempts(self) -> int:
        return self._session.reconnect_attempts

    @property
    def queued_chunks(self) -> int:
        return len(self._session.queue)

    @property
    def stats(self) -> StreamStats:
        return self._session.stats

    def connection_age(self) -> float | None:
        connected_at = self._session.connected_at
        if connected_at is None:
            return None
        return self._clock() - connected_at

    async def check_connection_age(self) -> bool:
        """Start a proactive reconnect if the channel is close to the provider limit.

        Returns True when a reconnect was started.
        """
        s = self._session
        if self.proactive_reconnect_after is None:
            return False
        if s.state is not S.STREAMING or s.is_proactive_reconnect:
            return False
        age = self.connection_age()
        if age is None or age < self.proactive_reconnect_after:
            return False
        logger.info("Connection age %.1fs, reconnecting proactively", age)
        await self._proactive_reconnect()
        return True

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new: ConnectionState) -> None:
        old = self._session.state
        if new not in ALLOWED_TRANSITIONS[old]:
            raise InvalidTransitionError(f"{old.value} -> {new.value}")
        self._session.state = new
        logger.info("Stream state %s -> %s", old.value, new.value)
        self._emit(self._state_callbacks, old, new)

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._watchdog_task, self._drain_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reconnect_task = self._watchdog_task = self._drain_task = self._reader_task = None

    def _reset(self) -> None:
        self._cancel_tasks()
        self._session = StreamSessionState(state=self._session.state)
        self._channel = None
        self._transition(S.IDLE)

    def _fail(self, message: str) -> None:
        s = self._session
        s.should_reconnect = False
        s.is_proactive_reconnect = False
        s.connected_at = None
        if s.state is not S.FAILED:
            self._transition(S.FAILED)
        logger.error("Stream failed: %s", message)
        self._emit(self._error_callbacks, message)

    # ------------------------------------------------------------------
    # Channel handling
    # ------------------------------------------------------------------

    async def _open_channel(self) -> None:
        """Open a channel from ``connecting``; failures go to the backoff path."""
        s = self._session
        try:
            channel = await self._transport.open()
        except RelayConnectionError as e:
            logger.warning("Relay connection failed: %s", e)
            if not s.should_reconnect or s.state is not S.CONNECTING:
                return
            if s.is_proactive_reconnect:
                s.reconnect_attempts = s.saved_reconnect_attempts
                s.is_proactive_reconnect = False
            self._schedule_reconnect()
            return

        if not s.should_reconnect or s.state is not S.CONNECTING:
            await self._close_channel(channel, 1000, "Stale connection")
            return
        self._channel = channel
        self._transition(S.AWAITING_READY)
        self._reader_task = asyncio.create_task(self._read_loop(channel))

    async def _read_loop(self, channel: RelayChannel) -> None:
        while True:
            raw = await channel.receive()
            if raw is None:
                break
            try:
                await self._handle_message(parse_relay_message(raw), channel)
            except Exception:
                # one malformed frame must not end the stream
                logger.exception("Failed to handle relay frame")
        if channel is self._channel:
            self._channel = None
            await self._handle_unexpected_close()

    async def _handle_message(self, message: RelayMessage, channel: RelayChannel) -> None:
        # Transcripts from a channel being replaced are still valid lecture content
        if message.kind is MessageKind.TRANSCRIPT:
            self._emit(self._transcript_callbacks, message.event)
            return
        if channel is not self._channel:
            logger.debug("Ignoring %s from a retired channel", message.kind.value)
            return

        s = self._session
        if message.kind is MessageKind.READY:
            if s.state is not S.AWAITING_READY:
                logger.warning("Unexpected ready in state %s", s.state.value)
                return
            self._transition(S.STREAMING)
            s.reconnect_attempts = 0
            s.is_proactive_reconnect = False
            s.connected_at = self._clock()
            logger.info("Relay ready; flushing %d queued chunks", len(s.queue))
            self._emit(self._ready_callbacks)
            self._ensure_drain()
        elif message.kind is MessageKind.ERROR:
            logger.warning("Relay error (can_retry=%s): %s", message.can_retry, message.message)
            self._emit(self._error_callbacks, message.message)
            self._channel = None
            await self._close_channel(channel, 1011, "Relay error")
            if message.can_retry:
                await self._handle_unexpected_close()
            else:
                self._fail(message.message)
        elif message.kind is MessageKind.CLOSED:
            logger.info("Relay closed the stream: %s", message.message)
            self._emit(self._close_callbacks, message.message)
        else:
            logger.debug("Unrecognised relay message: %s", message)

    async def _handle_unexpected_close(self) -> None:
        s = self._session
        s.connected_at = None
        s.is_proactive_reconnect = False
        if not s.should_reconnect or s.state in (S.CLOSED, S.FAILED, S.RECONNECTING):
            return
        logger.warning("Relay connection lost in state %s", s.state.value)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        s = self._session
        if s.reconnect_attempts >= self.max_reconnect_attempts:
            self._fail("Failed to reconnect after multiple attempts")
            return
        s.reconnect_attempts += 1
        s.stats.reconnects += 1
        delay = self.reconnect_base_delay * self.reconnect_backoff_factor ** (
            s.reconnect_attempts - 1
        )
        self._transition(S.RECONNECTING)
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay, s.reconnect_attempts, self.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        s = self._session
        if not s.should_reconnect or s.state is not S.RECONNECTING:
            return
        self._transition(S.CONNECTING)
        await self._open_channel()

    async def _proactive_reconnect(self) -> None:
        s = self._session
        s.saved_reconnect_attempts = s.reconnect_attempts
        s.is_proactive_reconnect = True
        s.stats.proactive_reconnects += 1
        s.connected_at = None
        old, self._channel = self._channel, None
        # Capture keeps running; chunks queue until the new channel is ready
        self._transition(S.CONNECTING)
        if old is not None:
            await self._close_channel(old, 1000, "Proactive reconnect", graceful=True)
        await self._open_channel()

    async def _watch_connection_age(self) -> None:
        while True:
            await self._sleep(self.connection_age_check_interval)
            await self.check_connection_age()

    async def _close_channel(
        self, channel: RelayChannel, code: int, reason: str, graceful: bool = False
    ) -> None:
        try:
            if graceful:
                await channel.send_control(CLOSE_STREAM)
        except RelayConnectionError as e:
            logger.debug("CloseStream not delivered: %s", e)
        finally:
            try:
                await channel.close(code, reason)
            except (RelayConnectionError, OSError) as e:
                logger.debug("Channel close failed: %s", e)

    # ------------------------------------------------------------------
    # Audio queue
    # ------------------------------------------------------------------

    def _ensure_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_queue())

    async def _drain_queue(self) -> None:
        """Single FIFO writer; the only place audio is transmitted."""
        s = self._session
        while s.queue and s.state is S.STREAMING and self._channel is not None:
            channel = self._channel
            chunk = s.queue.popleft()
            try:
                await channel.send_audio(chunk.data)
            except RelayConnectionError as e:
                s.queue.appendleft(chunk)
                logger.warning("Audio send failed, %d chunks held: %s", len(s.queue), e)
                return
            s.stats.chunks_sent += 1

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _emit(self, callbacks: list[Callable[..., object]], *args) -> None:
        for fn in list(callbacks):
            try:
                result = fn(*args)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("Stream client callback %r failed", fn)
