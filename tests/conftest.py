"""Pytest configuration for relay tests."""

import os

# Settings are read at import time; keep real keys out of the test run
os.environ.setdefault("OPENAI_API_KEY", "test-key-for-import-only")
os.environ.setdefault("ELEVENLABS_API_KEY", "test-tts-key")

import pytest

from .fakes import FakeClient


@pytest.fixture
def client():
    return FakeClient()
