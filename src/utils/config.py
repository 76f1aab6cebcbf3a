"""
Configuration management using pydantic-settings.

Loads settings from environment variables and .env files.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI Configuration
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key used to mint ephemeral Realtime credentials",
    )
    openai_realtime_model: str = Field(
        default="gpt-realtime-mini",
        description="Model to use for OpenAI Realtime API",
    )
    openai_realtime_base_url: str = Field(
        default="wss://api.openai.com/v1/realtime",
        description="Base WebSocket URL of the OpenAI Realtime API",
    )
    openai_client_secrets_url: str = Field(
        default="https://api.openai.com/v1/realtime/client_secrets",
        description="Endpoint that issues ephemeral Realtime client secrets",
    )
    credential_ttl_seconds: int = Field(
        default=600,
        description="Lifetime of an ephemeral client secret (seconds)",
    )
    input_audio_format: str = Field(
        default="audio/pcm",
        description="Audio format the client streams (passed through untouched)",
    )
    input_audio_rate: int = Field(
        default=24000,
        description="Sample rate of the client's audio (Hz)",
    )
    output_modalities: list[str] = Field(
        default=["audio"],
        description="Output modalities requested from the Realtime model",
    )
    input_transcription_model: str = Field(
        default="whisper-1",
        description="Model used to transcribe the caller's audio",
    )
    agent_context: Optional[str] = Field(
        default=None,
        description="Deployment-specific text appended to the agent instructions",
    )

    # Voice activity detection
    vad_threshold: float = Field(default=0.5, description="Server VAD energy threshold (0-1)")
    vad_prefix_padding_ms: int = Field(
        default=300,
        description="Audio kept before detected speech (ms)",
    )
    silence_duration_ms: int = Field(
        default=500,
        description="Silence duration before VAD triggers end of speech (ms)",
    )

    # ElevenLabs Configuration
    elevenlabs_api_key: Optional[str] = Field(
        default=None,
        description="ElevenLabs API key for streaming TTS",
    )
    elevenlabs_voice_id: str = Field(
        default="21m00Tcm4TlvDq8ikWAM",
        description="ElevenLabs voice identity",
    )
    elevenlabs_model_id: str = Field(
        default="eleven_turbo_v2_5",
        description="ElevenLabs synthesis model",
    )
    elevenlabs_output_format: str = Field(
        default="pcm_24000",
        description="Audio format requested from ElevenLabs",
    )
    elevenlabs_base_url: str = Field(
        default="wss://api.elevenlabs.io/v1/text-to-speech",
        description="Base WebSocket URL of the ElevenLabs TTS API",
    )
    tts_stability: float = Field(default=0.5, description="Voice stability (0-1)")
    tts_similarity_boost: float = Field(default=0.8, description="Voice similarity boost (0-1)")
    tts_style: float = Field(default=0.0, description="Style exaggeration (0-1)")
    tts_use_speaker_boost: bool = Field(default=True, description="Enable speaker boost")
    tts_chunk_length_schedule: list[int] = Field(
        default=[50, 90, 120, 150],
        description="Characters ElevenLabs buffers before each generation step",
    )
    tts_close_grace_ms: int = Field(
        default=500,
        description="Time to wait for trailing audio before closing the TTS socket (ms)",
    )

    # Transcript flush policy
    flush_threshold_chars: int = Field(
        default=50,
        description="Accumulated characters that trigger an immediate flush to TTS",
    )
    flush_idle_ms: int = Field(
        default=100,
        description="Idle time after the last transcript delta before flushing (ms)",
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=3000, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")
    static_dir: str = Field(default="public", description="Directory served at /")

    @property
    def openai_realtime_url(self) -> str:
        """Get the OpenAI Realtime WebSocket URL."""
        return f"{self.openai_realtime_base_url}?model={self.openai_realtime_model}"

    @property
    def elevenlabs_stream_url(self) -> str:
        """Get the ElevenLabs stream-input WebSocket URL."""
        base = self.elevenlabs_base_url.rstrip("/")
        return (
            f"{base}/{self.elevenlabs_voice_id}/stream-input"
            f"?model_id={self.elevenlabs_model_id}"
            f"&output_format={self.elevenlabs_output_format}"
        )

    @property
    def flush_idle_seconds(self) -> float:
        return self.flush_idle_ms / 1000.0

    @property
    def tts_close_grace_seconds(self) -> float:
        return self.tts_close_grace_ms / 1000.0


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-reading environment on every call.
    """
    return Settings()


# Convenience access
settings = get_settings()
