"""
Upstream event classification and client message builders.

Every event received from the OpenAI Realtime API falls into exactly one
``UpstreamEventKind``; the session maps each kind to a single handler.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from .errors import ProtocolParseError

logger = logging.getLogger(__name__)


TTS_SOURCE = "tts"


class RealtimeEventType(str, Enum):
    """OpenAI Realtime API event types the relay cares about."""
    # Session events
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"

    # Response lifecycle
    RESPONSE_CREATED = "response.created"
    RESPONSE_DONE = "response.done"

    # Reply transcript (beta and GA names)
    RESPONSE_AUDIO_TRANSCRIPT_DELTA = "response.audio_transcript.delta"
    RESPONSE_AUDIO_TRANSCRIPT_DONE = "response.audio_transcript.done"
    RESPONSE_OUTPUT_AUDIO_TRANSCRIPT_DELTA = "response.output_audio_transcript.delta"
    RESPONSE_OUTPUT_AUDIO_TRANSCRIPT_DONE = "response.output_audio_transcript.done"
    RESPONSE_TEXT_DELTA = "response.text.delta"
    RESPONSE_TEXT_DONE = "response.text.done"
    RESPONSE_OUTPUT_TEXT_DELTA = "response.output_text.delta"
    RESPONSE_OUTPUT_TEXT_DONE = "response.output_text.done"

    # Raw model audio
    RESPONSE_AUDIO_DELTA = "response.audio.delta"
    RESPONSE_AUDIO_DONE = "response.audio.done"
    RESPONSE_OUTPUT_AUDIO_DELTA = "response.output_audio.delta"
    RESPONSE_OUTPUT_AUDIO_DONE = "response.output_audio.done"

    # Error events
    ERROR = "error"


class UpstreamEventKind(str, Enum):
    """Closed set of categories an upstream event can belong to."""
    TRANSCRIPT_DELTA = "transcript_delta"
    TRANSCRIPT_DONE = "transcript_done"
    RESPONSE_CREATED = "response_created"
    AUDIO = "audio"
    STATUS = "status"


_KIND_BY_TYPE: dict[str, UpstreamEventKind] = {
    RealtimeEventType.RESPONSE_AUDIO_TRANSCRIPT_DELTA: UpstreamEventKind.TRANSCRIPT_DELTA,
    RealtimeEventType.RESPONSE_OUTPUT_AUDIO_TRANSCRIPT_DELTA: UpstreamEventKind.TRANSCRIPT_DELTA,
    RealtimeEventType.RESPONSE_TEXT_DELTA: UpstreamEventKind.TRANSCRIPT_DELTA,
    RealtimeEventType.RESPONSE_OUTPUT_TEXT_DELTA: UpstreamEventKind.TRANSCRIPT_DELTA,
    RealtimeEventType.RESPONSE_AUDIO_TRANSCRIPT_DONE: UpstreamEventKind.TRANSCRIPT_DONE,
    RealtimeEventType.RESPONSE_OUTPUT_AUDIO_TRANSCRIPT_DONE: UpstreamEventKind.TRANSCRIPT_DONE,
    RealtimeEventType.RESPONSE_TEXT_DONE: UpstreamEventKind.TRANSCRIPT_DONE,
    RealtimeEventType.RESPONSE_OUTPUT_TEXT_DONE: UpstreamEventKind.TRANSCRIPT_DONE,
    RealtimeEventType.RESPONSE_DONE: UpstreamEventKind.TRANSCRIPT_DONE,
    RealtimeEventType.RESPONSE_CREATED: UpstreamEventKind.RESPONSE_CREATED,
    RealtimeEventType.RESPONSE_AUDIO_DELTA: UpstreamEventKind.AUDIO,
    RealtimeEventType.RESPONSE_AUDIO_DONE: UpstreamEventKind.AUDIO,
    RealtimeEventType.RESPONSE_OUTPUT_AUDIO_DELTA: UpstreamEventKind.AUDIO,
    RealtimeEventType.RESPONSE_OUTPUT_AUDIO_DONE: UpstreamEventKind.AUDIO,
}


@dataclass
class RealtimeEvent:
    """Represents an event from the OpenAI Realtime API."""
    type: str
    data: dict = field(default_factory=dict)

    @property
    def kind(self) -> UpstreamEventKind:
        return _KIND_BY_TYPE.get(self.type, UpstreamEventKind.STATUS)

    @property
    def delta(self) -> str:
        """Get the transcript fragment carried by a delta event."""
        if self.kind is UpstreamEventKind.TRANSCRIPT_DELTA:
            return self.data.get("delta") or ""
        return ""

    @property
    def error_message(self) -> Optional[str]:
        """Get the error message if this is an error event."""
        if self.type == RealtimeEventType.ERROR:
            error = self.data.get("error", {})
            if isinstance(error, dict):
                return error.get("message", str(error))
            return str(error)
        return None


@dataclass(frozen=True)
class TranscriptSpan:
    """Ordered, immutable piece of reply text handed to speech synthesis."""
    sequence: int
    text: str


@dataclass(frozen=True)
class AudioChunk:
    """Synthesized audio relayed to the client unchanged."""
    audio: str
    source: str = TTS_SOURCE
    is_final: bool = False


def parse_message(raw: Union[str, bytes], source: str) -> dict:
    """
    Decode one JSON message from a client or upstream socket.

    Raises:
        ProtocolParseError: if the payload is not a JSON object
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolParseError(source, str(e)) from e
    if not isinstance(data, dict):
        raise ProtocolParseError(source, "expected a JSON object")
    return data


def classify(data: dict) -> RealtimeEvent:
    """Wrap a decoded upstream message as a typed event."""
    return RealtimeEvent(type=str(data.get("type", "unknown")), data=data)


# =============================================================================
# Client-bound messages
# =============================================================================


def ready_event(session_id: str) -> dict:
    return {"type": "session.ready", "session_id": session_id}


def audio_delta_event(chunk: AudioChunk) -> dict:
    return {"type": "audio.delta", "audio": chunk.audio, "source": chunk.source}


def audio_done_event(source: str = TTS_SOURCE) -> dict:
    return {"type": "audio.done", "source": source}


def error_event(message: str) -> dict:
    """Build the client error payload; only a human-readable message is exposed."""
    return {"type": "error", "message": message}
