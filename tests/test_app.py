"""
Tests for the FastAPI application: operational endpoints and the /ws relay.
"""

import importlib

import pytest
from fastapi.testclient import TestClient

from src.relay.credentials import Credential
from src.relay.errors import ConfigurationError, UpstreamHandshakeError
from src.relay.session import RelaySession

from .fakes import FakeIssuer

app_module = importlib.import_module("src.relay.app")


@pytest.fixture
def http():
    return TestClient(app_module.app)


def issuer_returning(result):
    """Build a stand-in for CredentialIssuer whose issue() returns or raises ``result``."""

    class _Issuer:
        async def issue(self):
            if isinstance(result, Exception):
                raise result
            return result

    return _Issuer


class TestOperationalEndpoints:
    def test_health(self, http):
        response = http.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["openai_configured"] is True
        assert "elevenlabs_configured" in data
        assert "timestamp" in data

    def test_info(self, http):
        data = http.get("/api/info").json()
        assert data["version"] == "1.0.0"
        assert data["endpoints"]["relay"] == "/ws"

    def test_proxy_session(self, http):
        assert http.get("/api/proxy-session").status_code == 200


class TestSessionEndpoint:
    def test_returns_ephemeral_secret(self, http, monkeypatch):
        credential = Credential(
            value="ek_abc",
            expires_at=1700000600,
            model="gpt-realtime-mini",
            raw={"value": "ek_abc", "expires_at": 1700000600},
        )
        monkeypatch.setattr(app_module, "CredentialIssuer", issuer_returning(credential))

        response = http.get("/api/session")

        assert response.status_code == 200
        assert response.json() == {
            "client_secret": {"value": "ek_abc", "expires_at": 1700000600},
            "model": "gpt-realtime-mini",
            "expires_at": 1700000600,
        }

    def test_missing_key(self, http, monkeypatch):
        monkeypatch.setattr(app_module, "CredentialIssuer", issuer_returning(ConfigurationError("OPENAI_API_KEY")))

        response = http.get("/api/session")

        assert response.status_code == 500
        assert "OPENAI_API_KEY" in response.json()["error"]

    def test_upstream_status_is_echoed(self, http, monkeypatch):
        error = UpstreamHandshakeError("OpenAI", "rejected", status=400, details='{"error": "bad"}')
        monkeypatch.setattr(app_module, "CredentialIssuer", issuer_returning(error))

        response = http.get("/api/session")

        assert response.status_code == 400
        assert response.json()["status"] == 400
        assert response.json()["details"] == '{"error": "bad"}'


class TestRelayEndpoint:
    def test_init_failure_reports_single_error(self, http, monkeypatch):
        monkeypatch.setattr(
            app_module,
            "RelaySession",
            lambda websocket: RelaySession(websocket, issuer=FakeIssuer(error=ConfigurationError("OPENAI_API_KEY"))),
        )

        with http.websocket_connect("/ws") as ws:
            ws.send_json({"type": "init"})
            message = ws.receive_json()

        assert message == {"type": "error", "message": "OPENAI_API_KEY is not configured on the server"}
        assert app_module.active_sessions == {}
