"""
Tests for the ElevenLabs speech link.
"""

import base64
import json

import pytest
from websockets.exceptions import ConnectionClosedError

from src.relay.elevenlabs_stream import SpeechLink
from src.relay.errors import ConfigurationError, UpstreamHandshakeError, UpstreamSocketError
from src.relay.events import TranscriptSpan

from .fakes import FakeConnector, FakeUpstreamSocket


def make_link(socket=None, **kwargs):
    connector = FakeConnector(socket) if socket is not None else FakeConnector(error=OSError("refused"))
    link = SpeechLink(
        session_id="test",
        api_key=kwargs.pop("api_key", "tts-key"),
        url="wss://tts.test/stream-input",
        close_grace=0,
        connect=connector,
        **kwargs,
    )
    return link, connector


class TestOpen:
    @pytest.mark.asyncio
    async def test_config_sent_once_before_text(self):
        socket = FakeUpstreamSocket()
        link, connector = make_link(socket)

        await link.open()
        await link.send_span(TranscriptSpan(0, "Hola, "))
        await link.send_span(TranscriptSpan(1, "¿qué tal?"))

        messages = socket.sent_json()
        assert connector.calls[0][0] == "wss://tts.test/stream-input"
        assert messages[0]["text"] == " "
        assert messages[0]["xi_api_key"] == "tts-key"
        assert "voice_settings" in messages[0]
        assert "chunk_length_schedule" in messages[0]["generation_config"]
        assert [m for m in messages[1:] if "voice_settings" in m] == []
        assert messages[1:] == [
            {"text": "Hola, ", "try_trigger_generation": True},
            {"text": "¿qué tal?", "try_trigger_generation": True},
        ]

    @pytest.mark.asyncio
    async def test_missing_key(self):
        link, _ = make_link(FakeUpstreamSocket(), api_key="")
        with pytest.raises(ConfigurationError, match="ELEVENLABS_API_KEY"):
            await link.open()

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        link, _ = make_link()
        with pytest.raises(UpstreamHandshakeError):
            await link.open()
        assert not link.is_open


class TestUtterance:
    @pytest.mark.asyncio
    async def test_end_utterance_keeps_connection(self):
        socket = FakeUpstreamSocket()
        link, _ = make_link(socket)
        await link.open()

        await link.end_utterance()

        assert socket.sent_json()[-1] == {"text": ""}
        assert link.is_open
        assert socket.close_calls == 0

    @pytest.mark.asyncio
    async def test_close_sends_sentinel_then_closes_once(self):
        socket = FakeUpstreamSocket()
        link, _ = make_link(socket)
        await link.open()

        await link.close()
        await link.close()

        assert socket.sent_json()[-1] == {"text": ""}
        assert socket.close_calls == 1
        assert not link.is_open

    @pytest.mark.asyncio
    async def test_close_survives_socket_errors(self):
        socket = FakeUpstreamSocket()
        link, _ = make_link(socket)
        await link.open()
        socket.send_error = OSError("broken pipe")
        socket.close_error = OSError("connection reset")

        await link.close(grace=1.0)

        assert socket.close_calls == 1
        assert not link.is_open


class TestReceive:
    @pytest.mark.asyncio
    async def test_chunks_keep_arrival_order(self):
        socket = FakeUpstreamSocket()
        link, _ = make_link(socket)
        await link.open()

        socket.feed({"audio": "AAAA"})
        socket.feed({"audio": "BBBBBBBBBBBB"})
        socket.feed({"audio": "CC"})
        socket.feed({"audio": None, "isFinal": True})
        await socket.close()

        chunks = [chunk async for chunk in link.receive_chunks()]

        assert [c.audio for c in chunks] == ["AAAA", "BBBBBBBBBBBB", "CC", ""]
        assert [c.is_final for c in chunks] == [False, False, False, True]
        assert all(c.source == "tts" for c in chunks)

    @pytest.mark.asyncio
    async def test_binary_frames_are_base64_encoded(self):
        socket = FakeUpstreamSocket()
        link, _ = make_link(socket)
        await link.open()

        socket.feed(b"\x00\x01\x02")
        await socket.close()

        chunks = [chunk async for chunk in link.receive_chunks()]
        assert chunks[0].audio == base64.b64encode(b"\x00\x01\x02").decode("ascii")

    @pytest.mark.asyncio
    async def test_malformed_message_is_dropped(self):
        socket = FakeUpstreamSocket()
        link, _ = make_link(socket)
        await link.open()

        socket.feed("not json")
        socket.feed(json.dumps({"audio": "AAAA"}))
        await socket.close()

        chunks = [chunk async for chunk in link.receive_chunks()]
        assert [c.audio for c in chunks] == ["AAAA"]

    @pytest.mark.asyncio
    async def test_abnormal_close_raises(self):
        socket = FakeUpstreamSocket()
        link, _ = make_link(socket)
        await link.open()

        socket.feed(ConnectionClosedError(None, None))

        with pytest.raises(UpstreamSocketError):
            async for _ in link.receive_chunks():
                pass
