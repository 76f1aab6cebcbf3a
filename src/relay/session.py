"""
Relay session: coordinates one client connection with OpenAI Realtime and
ElevenLabs.

This module handles:
- Session setup ordering (credential -> Realtime handshake -> ready signal)
- Forwarding client frames to the Realtime API
- Routing reply transcript deltas through the flush controller to TTS
- Relaying synthesized audio back to the client
- Idempotent teardown of both upstream links

All state changes happen inside ``handle``, which is only ever called by the
single mailbox consumer in ``run``. Reader tasks, the connect tasks and idle
timers only post messages into the mailbox.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import websockets
from fastapi import WebSocket, WebSocketDisconnect

from ..utils.config import settings
from .credentials import CredentialIssuer
from .elevenlabs_stream import SpeechLink
from .errors import ProtocolParseError, RelayError, UpstreamHandshakeError
from .events import (
    AudioChunk,
    RealtimeEvent,
    RealtimeEventType,
    TranscriptSpan,
    UpstreamEventKind,
    audio_delta_event,
    audio_done_event,
    error_event,
    parse_message,
    ready_event,
)
from .flush import FlushController, FlushToken
from .openai_realtime import ConversationLink

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of a relay session."""
    NEW = "new"
    AI_CONNECTING = "ai_connecting"
    READY = "ready"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


# =============================================================================
# Mailbox messages
# =============================================================================


@dataclass
class ClientFrame:
    raw: str


@dataclass
class ClientGone:
    reason: str = ""


@dataclass
class ConversationReady:
    link: ConversationLink


@dataclass
class ConversationFailed:
    error: RelayError


@dataclass
class ConversationEvent:
    event: RealtimeEvent


@dataclass
class ConversationLost:
    link: ConversationLink
    error: Optional[Exception] = None


@dataclass
class SpeechReady:
    link: SpeechLink


@dataclass
class SpeechFailed:
    link: SpeechLink
    error: RelayError


@dataclass
class SpeechAudio:
    link: SpeechLink
    chunk: AudioChunk


@dataclass
class SpeechLost:
    link: SpeechLink
    error: Optional[Exception] = None


@dataclass
class IdleFlushDue:
    token: FlushToken


@dataclass
class SessionClosed:
    """Wakes the mailbox consumer after an external close."""


_CLIENT_SEND_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)
_UPSTREAM_SEND_ERRORS = (websockets.exceptions.WebSocketException, RuntimeError, OSError)


class RelaySession:
    """
    One relay per client WebSocket.

    ``conversation`` and ``speech`` are ``None`` until the corresponding
    upstream connection is established, and go back to ``None`` when it is
    lost.
    """

    def __init__(
        self,
        client: WebSocket,
        session_id: Optional[str] = None,
        issuer: Optional[CredentialIssuer] = None,
        conversation_factory: Callable[..., ConversationLink] = ConversationLink,
        speech_factory: Callable[..., SpeechLink] = SpeechLink,
        flush_threshold: Optional[int] = None,
        flush_idle_delay: Optional[float] = None,
    ):
        """
        Args:
            client: Accepted client WebSocket
            session_id: Identifier for logs (random if omitted)
            issuer: Credential issuer for the Realtime API
            conversation_factory: Builds the Realtime link
            speech_factory: Builds the TTS link
            flush_threshold: Size trigger in characters (defaults to settings)
            flush_idle_delay: Idle trigger in seconds (defaults to settings)
        """
        self.client = client
        self.session_id = session_id or str(uuid.uuid4())[:8]
        self.issuer = issuer or CredentialIssuer()
        self._conversation_factory = conversation_factory
        self._speech_factory = speech_factory

        self.state = SessionState.NEW
        self.conversation: Optional[ConversationLink] = None
        self.speech: Optional[SpeechLink] = None
        self.flush = FlushController(
            on_idle_due=self._post_idle,
            threshold=flush_threshold if flush_threshold is not None else settings.flush_threshold_chars,
            idle_delay=flush_idle_delay if flush_idle_delay is not None else settings.flush_idle_seconds,
        )

        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._connect_task: Optional[asyncio.Task] = None
        self._pending_conversation: Optional[ConversationLink] = None
        # TTS link whose handshake is in flight, and the spans (None = end of
        # utterance) waiting for it in arrival order
        self._speech_connecting: Optional[SpeechLink] = None
        self._speech_backlog: list[Optional[TranscriptSpan]] = []
        self._closed = asyncio.Event()
        # Set when the TTS link failed during the current turn; no retry until the next one
        self._speech_failed_this_turn = False

        self._handlers = {
            ClientFrame: self._on_client_frame,
            ClientGone: self._on_client_gone,
            ConversationReady: self._on_conversation_ready,
            ConversationFailed: self._on_conversation_failed,
            ConversationEvent: self._on_conversation_event,
            ConversationLost: self._on_conversation_lost,
            SpeechReady: self._on_speech_ready,
            SpeechFailed: self._on_speech_failed,
            SpeechAudio: self._on_speech_audio,
            SpeechLost: self._on_speech_lost,
            IdleFlushDue: self._on_idle_flush_due,
            SessionClosed: self._on_session_closed,
        }
        self._event_handlers = {
            UpstreamEventKind.TRANSCRIPT_DELTA: self._on_transcript_delta,
            UpstreamEventKind.TRANSCRIPT_DONE: self._on_transcript_done,
            UpstreamEventKind.RESPONSE_CREATED: self._on_response_created,
            UpstreamEventKind.AUDIO: self._suppress_audio,
            UpstreamEventKind.STATUS: self._forward_status,
        }

    @property
    def is_closed(self) -> bool:
        return self.state in (SessionState.CLOSING, SessionState.CLOSED)

    # -------------------------------------------------------------------------
    # Mailbox
    # -------------------------------------------------------------------------

    def post(self, message) -> None:
        """Queue a message for the session; safe from any task or callback."""
        self._mailbox.put_nowait(message)

    async def wait_closed(self) -> None:
        """Wait until teardown has finished."""
        await self._closed.wait()

    async def run(self) -> None:
        """Consume the mailbox until the session is closed."""
        logger.info(f"[{self.session_id}] Relay session started")
        self._spawn(self._read_client())
        try:
            while self.state is not SessionState.CLOSED:
                message = await self._mailbox.get()
                await self.handle(message)
        finally:
            await self.close()
            logger.info(f"[{self.session_id}] Relay session ended")

    async def handle(self, message) -> None:
        """Process one mailbox message."""
        handler = self._handlers.get(type(message))
        if handler is None:
            logger.warning(f"[{self.session_id}] Unknown mailbox message: {message!r}")
            return
        await handler(message)

    async def _on_session_closed(self, message: SessionClosed) -> None:
        pass

    def _post_idle(self, token: FlushToken) -> None:
        self.post(IdleFlushDue(token))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -------------------------------------------------------------------------
    # Client side
    # -------------------------------------------------------------------------

    async def _read_client(self) -> None:
        """Forward client frames into the mailbox until the socket closes."""
        while True:
            try:
                message = await self.client.receive()
            except WebSocketDisconnect as e:
                self.post(ClientGone(f"code={e.code}"))
                return
            except RuntimeError as e:
                self.post(ClientGone(str(e)))
                return

            if message["type"] == "websocket.disconnect":
                self.post(ClientGone(f"code={message.get('code')}"))
                return

            text = message.get("text")
            if text is None:
                # Audio travels base64-encoded inside JSON frames
                size = len(message.get("bytes") or b"")
                logger.warning(f"[{self.session_id}] Dropping binary client frame ({size} bytes)")
                continue
            self.post(ClientFrame(text))

    async def _on_client_frame(self, message: ClientFrame) -> None:
        if self.is_closed:
            return

        try:
            data = parse_message(message.raw, "client")
        except ProtocolParseError as e:
            logger.warning(f"[{self.session_id}] {e}")
            return

        if data.get("type") == "init":
            if self.state is SessionState.NEW and self.conversation is None:
                self.state = SessionState.AI_CONNECTING
                self._connect_task = self._spawn(self._connect_conversation())
            else:
                logger.debug(f"[{self.session_id}] Ignoring init in state {self.state.value}")
            return

        if self.conversation is None or not self.conversation.is_open:
            logger.debug(f"[{self.session_id}] Dropping {data.get('type')!r} before session is ready")
            return

        try:
            await self.conversation.send_raw(message.raw)
        except _UPSTREAM_SEND_ERRORS as e:
            # The Realtime reader reports the drop
            logger.warning(f"[{self.session_id}] Failed to forward client frame: {e}")

    async def _on_client_gone(self, message: ClientGone) -> None:
        logger.info(f"[{self.session_id}] Client disconnected {message.reason}".rstrip())
        await self.close()

    async def _send_client(self, payload: dict) -> None:
        if self.state is SessionState.CLOSED:
            return
        try:
            await self.client.send_json(payload)
        except _CLIENT_SEND_ERRORS as e:
            logger.info(f"[{self.session_id}] Client send failed: {e}")
            self.post(ClientGone("send failed"))

    # -------------------------------------------------------------------------
    # Conversation link
    # -------------------------------------------------------------------------

    async def _connect_conversation(self) -> None:
        """Issue a credential and open the Realtime link off the mailbox path."""
        link: Optional[ConversationLink] = None
        try:
            credential = await self.issuer.issue()
            link = self._conversation_factory(session_id=self.session_id)
            self._pending_conversation = link
            await link.open(credential)
        except asyncio.CancelledError:
            if link is not None:
                await link.close()
            raise
        except RelayError as e:
            logger.error(f"[{self.session_id}] Realtime setup failed: {e}")
            self.post(ConversationFailed(e))
            return
        except Exception as e:
            logger.exception(f"[{self.session_id}] Unexpected Realtime setup error")
            self.post(ConversationFailed(UpstreamHandshakeError("OpenAI", str(e))))
            return
        self.post(ConversationReady(link))

    async def _on_conversation_ready(self, message: ConversationReady) -> None:
        if message.link is self._pending_conversation:
            self._pending_conversation = None
        if self.state is not SessionState.AI_CONNECTING:
            await message.link.close()
            return

        self.conversation = message.link
        self.state = SessionState.READY
        self._spawn(self._read_conversation(message.link))
        logger.info(f"[{self.session_id}] Session ready")
        await self._send_client(ready_event(self.session_id))

    async def _on_conversation_failed(self, message: ConversationFailed) -> None:
        self._pending_conversation = None
        if self.is_closed:
            return
        await self._send_client(error_event(message.error.client_message))
        await self.close()

    async def _read_conversation(self, link: ConversationLink) -> None:
        try:
            async for event in link.receive_events():
                self.post(ConversationEvent(event))
        except RelayError as e:
            self.post(ConversationLost(link, e))
            return
        self.post(ConversationLost(link))

    async def _on_conversation_lost(self, message: ConversationLost) -> None:
        if self.is_closed or message.link is not self.conversation:
            return
        logger.warning(f"[{self.session_id}] Realtime connection lost: {message.error or 'closed'}")
        await self._send_client(error_event("Connection to OpenAI was lost"))
        await self.close()

    async def _on_conversation_event(self, message: ConversationEvent) -> None:
        if self.is_closed:
            return
        event = message.event
        await self._event_handlers[event.kind](event)

    async def _on_transcript_delta(self, event: RealtimeEvent) -> None:
        delta = event.delta
        if not delta:
            return
        if self.state is SessionState.READY:
            self.state = SessionState.STREAMING
        span = self.flush.append(delta)
        if span is not None:
            await self._speak(span)

    async def _on_transcript_done(self, event: RealtimeEvent) -> None:
        span = self.flush.flush()
        if span is not None:
            await self._speak(span)
        if self.state is SessionState.STREAMING:
            await self._end_utterance()
            self.state = SessionState.READY

    async def _on_response_created(self, event: RealtimeEvent) -> None:
        # Text left over from an earlier turn must not be spoken
        self.flush.discard()
        if self.state is SessionState.STREAMING:
            await self._end_utterance()
            self.state = SessionState.READY
        self._speech_failed_this_turn = False
        await self._forward_status(event)

    async def _suppress_audio(self, event: RealtimeEvent) -> None:
        pass

    async def _forward_status(self, event: RealtimeEvent) -> None:
        if event.type == RealtimeEventType.ERROR:
            # Clients only understand {type: "error", message}
            await self._send_client(error_event(event.error_message or "OpenAI reported an error"))
            return
        await self._send_client(event.data)

    async def _on_idle_flush_due(self, message: IdleFlushDue) -> None:
        if self.is_closed:
            return
        span = self.flush.on_idle(message.token)
        if span is not None:
            await self._speak(span)

    # -------------------------------------------------------------------------
    # Speech link
    # -------------------------------------------------------------------------

    async def _speak(self, span: TranscriptSpan) -> None:
        """Hand a span to the TTS link, opening it first if needed."""
        if self._speech_failed_this_turn:
            logger.debug(f"[{self.session_id}] Skipping span #{span.sequence}: TTS unavailable this turn")
            return

        if self._speech_connecting is not None:
            self._speech_backlog.append(span)
            return

        if self.speech is None or not self.speech.is_open:
            self._speech_backlog.append(span)
            self._start_speech()
            return

        link = self.speech
        try:
            await link.send_span(span)
        except websockets.exceptions.ConnectionClosed:
            # ElevenLabs closes the socket after an end-of-utterance; reopen once
            logger.info(f"[{self.session_id}] TTS socket was closed upstream, reopening")
            self.speech = None
            await link.close(grace=0)
            self._speech_backlog.append(span)
            self._start_speech()
        except _UPSTREAM_SEND_ERRORS as e:
            await self._speech_failed(link, e)

    def _start_speech(self) -> None:
        """Open a TTS link off the mailbox path; the result comes back as a message."""
        link = self._speech_factory(session_id=self.session_id)
        self._speech_connecting = link
        self._spawn(self._connect_speech(link))

    async def _connect_speech(self, link: SpeechLink) -> None:
        try:
            await link.open()
        except asyncio.CancelledError:
            await link.close(grace=0)
            raise
        except RelayError as e:
            self.post(SpeechFailed(link, e))
            return
        self.post(SpeechReady(link))

    async def _on_speech_ready(self, message: SpeechReady) -> None:
        link = message.link
        if self.is_closed or link is not self._speech_connecting:
            await link.close(grace=0)
            return

        self._speech_connecting = None
        self.speech = link
        self._spawn(self._read_speech(link))

        backlog, self._speech_backlog = self._speech_backlog, []
        for index, item in enumerate(backlog):
            try:
                if item is None:
                    await link.end_utterance()
                else:
                    await link.send_span(item)
            except websockets.exceptions.ConnectionClosed as e:
                if index == 0:
                    await self._speech_failed(link, e)
                    return
                # Closed after an earlier end-of-utterance; the rest needs a fresh link
                logger.info(f"[{self.session_id}] TTS socket was closed upstream, reopening")
                self.speech = None
                await link.close(grace=0)
                self._speech_backlog = backlog[index:]
                self._start_speech()
                return
            except _UPSTREAM_SEND_ERRORS as e:
                await self._speech_failed(link, e)
                return

    async def _on_speech_failed(self, message: SpeechFailed) -> None:
        if self.is_closed or message.link is not self._speech_connecting:
            return
        logger.warning(f"[{self.session_id}] TTS unavailable: {message.error}")
        self._speech_connecting = None
        self._speech_backlog.clear()
        self._speech_failed_this_turn = True
        await self._send_client(error_event(message.error.client_message))

    async def _end_utterance(self) -> None:
        if self._speech_connecting is not None:
            self._speech_backlog.append(None)
            return
        link = self.speech
        if link is None or not link.is_open:
            return
        try:
            await link.end_utterance()
        except _UPSTREAM_SEND_ERRORS as e:
            await self._speech_failed(link, e)

    async def _speech_failed(self, link: SpeechLink, error: Exception) -> None:
        logger.warning(f"[{self.session_id}] TTS link failed: {error}")
        if link is self.speech:
            self.speech = None
        self._speech_failed_this_turn = True
        await link.close(grace=0)
        await self._send_client(error_event("Speech synthesis is unavailable for this reply"))

    async def _read_speech(self, link: SpeechLink) -> None:
        try:
            async for chunk in link.receive_chunks():
                self.post(SpeechAudio(link, chunk))
        except RelayError as e:
            self.post(SpeechLost(link, e))
            return
        self.post(SpeechLost(link))

    async def _on_speech_audio(self, message: SpeechAudio) -> None:
        if self.is_closed:
            return
        chunk = message.chunk
        if chunk.audio:
            await self._send_client(audio_delta_event(chunk))
        if chunk.is_final:
            await self._send_client(audio_done_event(chunk.source))

    async def _on_speech_lost(self, message: SpeechLost) -> None:
        link = message.link
        if link is self.speech:
            # Reopened lazily on the next span
            self.speech = None
        await link.close(grace=0)
        if message.error is not None and not self.is_closed:
            logger.warning(f"[{self.session_id}] TTS connection lost: {message.error}")
            await self._send_client(error_event("Connection to speech synthesis was lost"))

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """
        Tear down both links. Safe to call from any trigger, any number of times.

        When called from outside the mailbox consumer, ``run`` is woken up and
        returns.
        """
        if self.is_closed:
            return
        self.state = SessionState.CLOSING
        logger.info(f"[{self.session_id}] Closing relay session")

        try:
            self.flush.discard()
            self._speech_backlog.clear()

            if self._connect_task is not None and not self._connect_task.done():
                self._connect_task.cancel()

            # A handshake may have completed without its result being handled yet
            connecting, self._speech_connecting = self._speech_connecting, None
            if connecting is not None:
                await connecting.close(grace=0)
            pending_conversation, self._pending_conversation = self._pending_conversation, None
            if pending_conversation is not None:
                await pending_conversation.close()

            speech, self.speech = self.speech, None
            if speech is not None:
                await speech.close()

            conversation, self.conversation = self.conversation, None
            if conversation is not None:
                await conversation.close()

            current = asyncio.current_task()
            pending = [task for task in self._tasks if task is not current and not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            self.state = SessionState.CLOSED
            self._closed.set()
            self.post(SessionClosed())
            logger.info(f"[{self.session_id}] Relay session closed")
