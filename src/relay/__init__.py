"""
Realtime voice relay.

This module relays a live voice conversation using:
- OpenAI Realtime API for conversation and reply transcripts
- ElevenLabs stream-input for speech synthesis
"""

from .app import app, main
from .elevenlabs_stream import SpeechLink
from .flush import FlushController
from .openai_realtime import ConversationLink
from .session import RelaySession, SessionState

__all__ = [
    "app",
    "main",
    "ConversationLink",
    "FlushController",
    "RelaySession",
    "SessionState",
    "SpeechLink",
]
