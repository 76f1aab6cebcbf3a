#!/usr/bin/env python3
"""
Run script for the realtime voice relay.

Usage:
    python run_relay.py

Make sure to:
1. Copy .env.example to .env and fill in your API keys
2. Point your web client at ws://<host>:<port>/ws
"""

import logging
import os
import sys

# Configure logging VERY early, before any other imports that might use it
# This suppresses noisy debug output from third-party libraries
logging.getLogger("websockets").setLevel(logging.WARNING)
logging.getLogger("websockets.client").setLevel(logging.WARNING)
logging.getLogger("websockets.server").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

# Add src to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def main():
    """Run the relay server."""
    import uvicorn
    from src.utils.config import settings

    print("=" * 60)
    print("Realtime Voice Relay")
    print("=" * 60)
    print(f"Server: http://{settings.host}:{settings.port}")
    print(f"OpenAI Model: {settings.openai_realtime_model}")
    print(f"OpenAI key configured: {'yes' if settings.openai_api_key else 'no'}")
    print(f"ElevenLabs voice: {settings.elevenlabs_voice_id}")
    print(f"ElevenLabs key configured: {'yes' if settings.elevenlabs_api_key else 'no'}")
    print(f"Flush policy: {settings.flush_threshold_chars} chars / {settings.flush_idle_ms} ms idle")
    print("=" * 60)
    print()
    print("Endpoints:")
    print(f"  - Relay: WS ws://{settings.host}:{settings.port}/ws")
    print(f"  - Session token: GET http://{settings.host}:{settings.port}/api/session")
    print(f"  - Health: http://{settings.host}:{settings.port}/health")
    print(f"  - Info: http://{settings.host}:{settings.port}/api/info")
    print()

    if not settings.openai_api_key:
        print("WARNING: OPENAI_API_KEY is not configured.")
        print("  Create a .env file with: OPENAI_API_KEY=your-api-key")
        print()

    # Use "info" log level for uvicorn to avoid verbose websocket frame logging
    uvicorn.run(
        "src.relay.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info",
    )


if __name__ == "__main__":
    main()
