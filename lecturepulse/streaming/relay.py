import json
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.typing import Subprotocol

from lecturepulse.config import settings
from lecturepulse.errors import RelayConnectionError

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_\-]{16,}$")

REMEDIATION = {
    "NO_API_KEY": (
        "Transcription API key is not configured. "
        "Set RELAY_API_KEY in the server environment."
    ),
    "INVALID_API_KEY": (
        "Invalid transcription API key. Verify the key in your provider console."
    ),
    "NETWORK_ERROR": (
        "Could not reach the transcription service to verify the key. "
        "Check the network connection and try again."
    ),
}


class RelayChannel(Protocol):
    async def send_audio(self, data: bytes) -> None: ...

    async def send_control(self, message: dict) -> None: ...

    async def receive(self) -> str | bytes | None:
        """Next frame, or None once the channel is closed."""
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class RelayTransport(Protocol):
    async def open(self) -> RelayChannel: ...


@dataclass
class CredentialCheck:
    valid: bool
    message: str
    error_code: str | None = None

    @property
    def remediation(self) -> str:
        if self.valid:
            return self.message
        return REMEDIATION.get(self.error_code or "", self.message)


async def validate_relay_credentials(
    api_key: str | None = None,
    probe: Callable[[str], Awaitable[bool]] | None = None,
) -> CredentialCheck:
    """Check that a usable relay key is configured before any socket is opened.

    ``probe`` optionally asks the provider whether the key is accepted. It may
    raise ``OSError`` when the provider cannot be reached.
    """
    key = settings.relay_api_key if api_key is None else api_key
    if not key:
        return CredentialCheck(False, "No API key configured", "NO_API_KEY")
    if not _KEY_RE.match(key):
        return CredentialCheck(False, "API key has an invalid format", "INVALID_API_KEY")
    if probe is not None:
        try:
            accepted = await probe(key)
        except OSError as e:
            logger.warning("Credential probe failed: %s", e)
            return CredentialCheck(False, "Network error during validation", "NETWORK_ERROR")
        if not accepted:
            return CredentialCheck(False, "API key was rejected", "INVALID_API_KEY")
    return CredentialCheck(True, "API key present")


class WebSocketChannel:
    """RelayChannel over a ``websockets`` client connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws

    async def send_audio(self, data: bytes) -> None:
        try:
            await self._ws.send(data)
        except ConnectionClosed as e:
            raise RelayConnectionError(f"Relay closed while sending audio: {e}") from e

    async def send_control(self, message: dict) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise RelayConnectionError(f"Relay closed while sending control: {e}") from e

    async def receive(self) -> str | bytes | None:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            logger.info("Relay socket closed: code=%s reason=%s", e.rcvd.code if e.rcvd else None,
                        e.rcvd.reason if e.rcvd else "")
            return None

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._ws.close(code=code, reason=reason)


class WebSocketRelayTransport:
    """Opens channels to the transcription relay."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        open_timeout: float = 10.0,
    ) -> None:
        self.url = url or settings.relay_url
        self._api_key = settings.relay_api_key if api_key is None else api_key
        self.open_timeout = open_timeout

    async def open(self) -> WebSocketChannel:
        # The relay reads the key from the second subprotocol entry
        subprotocols = (
            [Subprotocol("token"), Subprotocol(self._api_key)] if self._api_key else None
        )
        logger.info("Connecting to streaming relay: %s", self.url)
        try:
            ws = await connect(
                self.url,
                subprotocols=subprotocols,
                open_timeout=self.open_timeout,
                max_size=None,
            )
        except (OSError, InvalidHandshake, TimeoutError) as e:
            raise RelayConnectionError(f"Could not open relay connection: {e}") from e
        return WebSocketChannel(ws)
