"""
Ephemeral credential issuance for the OpenAI Realtime API.

Exchanges the server-held API key for a short-lived client secret scoped to
one realtime session.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from ..utils.config import settings
from .errors import ConfigurationError, UpstreamHandshakeError
from .prompts import get_voice_agent_prompt

logger = logging.getLogger(__name__)


@dataclass
class Credential:
    """Short-lived bearer value for one Realtime connection."""
    value: str
    expires_at: Optional[int]
    model: str
    raw: dict = field(default_factory=dict)


class CredentialIssuer:
    """Requests ephemeral client secrets from OpenAI."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        instructions: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        """
        Args:
            api_key: OpenAI API key (defaults to settings)
            model: Realtime model (defaults to settings)
            instructions: Session instructions embedded in the secret
            ttl_seconds: Lifetime of the secret (defaults to settings)
            url: client_secrets endpoint (defaults to settings)
            transport: Optional httpx transport, used by tests
            timeout: Request timeout in seconds
        """
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_realtime_model
        self.instructions = instructions or get_voice_agent_prompt(settings.agent_context)
        self.ttl_seconds = ttl_seconds or settings.credential_ttl_seconds
        self.url = url or settings.openai_client_secrets_url
        self._transport = transport
        self._timeout = timeout

    def build_request_body(self) -> dict:
        # voice and turn_detection are rejected here; they go in session.update
        return {
            "expires_after": {
                "anchor": "created_at",
                "seconds": self.ttl_seconds,
            },
            "session": {
                "type": "realtime",
                "model": self.model,
                "instructions": self.instructions,
            },
        }

    async def issue(self) -> Credential:
        """
        Request a new ephemeral credential.

        Raises:
            ConfigurationError: if no API key is configured
            UpstreamHandshakeError: on network failure or a non-2xx response
        """
        if not self.api_key:
            raise ConfigurationError("OPENAI_API_KEY")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        logger.info("Requesting ephemeral Realtime credential")
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(self.url, json=self.build_request_body(), headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamHandshakeError("OpenAI", f"credential request failed: {e}") from e

        logger.info(f"Credential response status: {response.status_code}")

        if not response.is_success:
            logger.error(f"OpenAI credential error: {response.text}")
            raise UpstreamHandshakeError(
                "OpenAI",
                "credential request rejected",
                status=response.status_code,
                details=response.text,
            )

        data = response.json()
        value = data.get("value")
        if value is None and isinstance(data.get("client_secret"), dict):
            value = data["client_secret"].get("value")
        if not value:
            raise UpstreamHandshakeError("OpenAI", "credential response missing value", details=response.text)

        session = data.get("session") or {}
        return Credential(
            value=value,
            expires_at=data.get("expires_at"),
            model=session.get("model") or self.model,
            raw=data,
        )
