"""
ElevenLabs streaming TTS link for one relay session.

Text spans go up as ``stream-input`` messages, audio comes back as
``AudioChunk``s in the order ElevenLabs sends them.
"""

import asyncio
import base64
import json
import logging
from typing import AsyncIterator, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from ..utils.config import settings
from .errors import ConfigurationError, ProtocolParseError, UpstreamHandshakeError, UpstreamSocketError
from .events import AudioChunk, TranscriptSpan, parse_message

logger = logging.getLogger(__name__)


# Sent as the text of the configuration message; ElevenLabs requires a
# non-empty string there.
_CONFIG_TEXT = " "
END_OF_UTTERANCE = {"text": ""}

_CLOSE_ERRORS = (OSError, websockets.exceptions.WebSocketException)


class SpeechLink:
    """
    Owns one connection to the ElevenLabs ``stream-input`` endpoint.

    The configuration message (voice, voice settings, chunk schedule) is sent
    exactly once per connection, right after the handshake.
    """

    def __init__(
        self,
        session_id: str = "-",
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        close_grace: Optional[float] = None,
        connect=websockets.connect,
    ):
        """
        Args:
            session_id: Relay session id used in log messages
            api_key: ElevenLabs API key (defaults to settings)
            url: stream-input WebSocket URL (defaults to settings)
            close_grace: Seconds to wait for trailing audio on close (defaults to settings)
            connect: WebSocket connect factory, replaceable in tests
        """
        self.session_id = session_id
        self.api_key = api_key if api_key is not None else settings.elevenlabs_api_key
        self.url = url or settings.elevenlabs_stream_url
        self.close_grace = close_grace if close_grace is not None else settings.tts_close_grace_seconds
        self._connect = connect

        self._ws: Optional[ClientConnection] = None
        self._configured = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def open(self) -> None:
        """
        Connect and send the synthesis configuration.

        Raises:
            ConfigurationError: if no ElevenLabs key is configured
            UpstreamHandshakeError: if the connection cannot be established
        """
        if not self.api_key:
            raise ConfigurationError("ELEVENLABS_API_KEY")

        logger.info(f"[{self.session_id}] Connecting to ElevenLabs stream-input")
        try:
            self._ws = await self._connect(self.url, ping_interval=20, ping_timeout=20)
            await self._send(self.build_config_message())
            self._configured = True
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            await self.close(grace=0)
            raise UpstreamHandshakeError("ElevenLabs", f"TTS connection failed: {e}") from e

        logger.info(f"[{self.session_id}] ElevenLabs stream opened")

    def build_config_message(self) -> dict:
        return {
            "text": _CONFIG_TEXT,
            "voice_settings": {
                "stability": settings.tts_stability,
                "similarity_boost": settings.tts_similarity_boost,
                "style": settings.tts_style,
                "use_speaker_boost": settings.tts_use_speaker_boost,
            },
            "generation_config": {
                "chunk_length_schedule": list(settings.tts_chunk_length_schedule),
            },
            "xi_api_key": self.api_key,
        }

    async def send_span(self, span: TranscriptSpan) -> None:
        """Stream one span of reply text; does not wait for audio."""
        if not self._configured:
            raise RuntimeError("ElevenLabs stream is not configured")
        await self._send({"text": span.text, "try_trigger_generation": True})
        logger.debug(f"[{self.session_id}] Sent span #{span.sequence} ({len(span.text)} chars)")

    async def end_utterance(self) -> None:
        """Ask ElevenLabs to flush buffered text for the current turn."""
        if not self.is_open:
            return
        await self._send(END_OF_UTTERANCE)
        logger.debug(f"[{self.session_id}] End-of-utterance sent")

    async def receive_chunks(self) -> AsyncIterator[AudioChunk]:
        """
        Yield audio chunks in arrival order.

        A chunk with ``is_final`` set marks the end of synthesis for the
        buffered text.

        Raises:
            UpstreamSocketError: if the connection drops abnormally
        """
        if not self._ws:
            raise RuntimeError("Not connected to ElevenLabs")

        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    yield AudioChunk(audio=base64.b64encode(message).decode("ascii"))
                    continue

                try:
                    data = parse_message(message, "ElevenLabs")
                except ProtocolParseError as e:
                    logger.warning(f"[{self.session_id}] {e}")
                    continue

                if data.get("error"):
                    logger.warning(f"[{self.session_id}] ElevenLabs error: {data.get('message') or data['error']}")

                audio = data.get("audio")
                if audio:
                    yield AudioChunk(audio=audio)
                if data.get("isFinal"):
                    yield AudioChunk(audio="", is_final=True)
        except websockets.exceptions.ConnectionClosedOK:
            logger.info(f"[{self.session_id}] ElevenLabs stream closed")
        except websockets.exceptions.ConnectionClosedError as e:
            raise UpstreamSocketError("ElevenLabs", str(e)) from e

    async def close(self, grace: Optional[float] = None) -> None:
        """
        Send the end-of-utterance sentinel, wait ``grace`` seconds for
        trailing audio, then close. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is None:
            return

        if grace is None:
            grace = self.close_grace
        if self._configured:
            try:
                await ws.send(json.dumps(END_OF_UTTERANCE))
            except _CLOSE_ERRORS as e:
                logger.debug(f"[{self.session_id}] Could not send end-of-utterance on close: {e}")
                grace = 0
        if grace > 0:
            await asyncio.sleep(grace)
        try:
            await ws.close()
        except _CLOSE_ERRORS as e:
            logger.debug(f"[{self.session_id}] Error closing ElevenLabs socket: {e}")
        logger.info(f"[{self.session_id}] ElevenLabs stream closed by relay")

    async def _send(self, message: dict) -> None:
        if not self._ws:
            raise RuntimeError("Not connected to ElevenLabs")
        await self._ws.send(json.dumps(message))
