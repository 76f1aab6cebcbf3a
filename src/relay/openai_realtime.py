"""
OpenAI Realtime API WebSocket link for one relay session.

Forwards client audio/control frames upstream and yields typed upstream
events. Audio output of the model is never relayed; speech comes from the
TTS link instead.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from ..utils.config import settings
from .credentials import Credential
from .errors import ProtocolParseError, UpstreamHandshakeError, UpstreamSocketError
from .events import RealtimeEvent, classify, parse_message
from .prompts import get_voice_agent_prompt

logger = logging.getLogger(__name__)


class ConversationLink:
    """
    Owns one connection to the OpenAI Realtime API.

    Lifecycle: ``open`` (handshake + session.update), any number of ``send``
    calls and one consumer of ``receive_events``, then ``close``.
    """

    def __init__(
        self,
        session_id: str = "-",
        url: Optional[str] = None,
        instructions: Optional[str] = None,
        connect=websockets.connect,
    ):
        """
        Args:
            session_id: Relay session id used in log messages
            url: Realtime WebSocket URL (defaults to settings)
            instructions: System prompt (defaults to the voice agent prompt)
            connect: WebSocket connect factory, replaceable in tests
        """
        self.session_id = session_id
        self.url = url or settings.openai_realtime_url
        self.instructions = instructions or get_voice_agent_prompt(settings.agent_context)
        self._connect = connect

        self._ws: Optional[ClientConnection] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def open(self, credential: Credential) -> None:
        """
        Connect with an ephemeral credential and configure the session.

        Raises:
            UpstreamHandshakeError: if the socket cannot be opened or configured
        """
        headers = {"Authorization": f"Bearer {credential.value}"}

        logger.info(f"[{self.session_id}] Connecting to OpenAI Realtime API: {self.url}")
        try:
            self._ws = await self._connect(
                self.url,
                additional_headers=headers,
                ping_interval=20,
                ping_timeout=20,
            )
            await self.send(self.build_session_update())
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            await self.close()
            raise UpstreamHandshakeError("OpenAI", f"realtime connection failed: {e}") from e

        logger.info(f"[{self.session_id}] Connected to OpenAI Realtime API")

    def build_session_update(self) -> dict:
        """Session configuration sent once per connection."""
        return {
            "type": "session.update",
            "session": {
                "type": "realtime",
                "output_modalities": list(settings.output_modalities),
                "instructions": self.instructions,
                "audio": {
                    "input": {
                        "format": {
                            "type": settings.input_audio_format,
                            "rate": settings.input_audio_rate,
                        },
                        "transcription": {
                            "model": settings.input_transcription_model,
                        },
                        "turn_detection": {
                            "type": "server_vad",
                            "threshold": settings.vad_threshold,
                            "prefix_padding_ms": settings.vad_prefix_padding_ms,
                            "silence_duration_ms": settings.silence_duration_ms,
                            # Automatically create response when user finishes speaking
                            "create_response": True,
                        },
                    },
                },
            },
        }

    async def send(self, message: dict) -> None:
        """Send a message to the Realtime API."""
        await self.send_raw(json.dumps(message))

    async def send_raw(self, payload: str) -> None:
        """Forward an already-serialized client frame verbatim."""
        if not self.is_open:
            raise RuntimeError("Not connected to OpenAI Realtime API")
        await self._ws.send(payload)

    async def receive_events(self) -> AsyncIterator[RealtimeEvent]:
        """
        Receive events from the Realtime API.

        Malformed messages are logged and skipped.

        Raises:
            UpstreamSocketError: if the connection drops abnormally
        """
        if not self._ws:
            raise RuntimeError("Not connected to OpenAI Realtime API")

        try:
            async for message in self._ws:
                try:
                    data = parse_message(message, "OpenAI")
                except ProtocolParseError as e:
                    logger.warning(f"[{self.session_id}] {e}")
                    continue

                event = classify(data)
                if event.error_message:
                    logger.error(f"[{self.session_id}] Realtime API error: {event.error_message}")
                yield event
        except websockets.exceptions.ConnectionClosedOK:
            logger.info(f"[{self.session_id}] Realtime connection closed")
        except websockets.exceptions.ConnectionClosedError as e:
            raise UpstreamSocketError("OpenAI", str(e)) from e

    async def close(self) -> None:
        """Close the upstream socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.debug(f"[{self.session_id}] Error closing Realtime socket: {e}")
            logger.info(f"[{self.session_id}] Realtime connection closed by relay")
