"""
Flush controller: decides when accumulated reply text goes to TTS.

Two triggers, whichever fires first:
- size: the accumulator reaches ``threshold`` characters -> flush now
- idle: no new delta for ``idle_delay`` seconds -> flush what is there

The idle timer is represented by a ``FlushToken``. When the timer fires the
token is handed back to the owner (normally through the session mailbox) and
``on_idle`` only flushes if that exact token is still the current one and has
not been cancelled, so a timer racing a cancellation is a no-op.
"""

import asyncio
import logging
from typing import Callable, Optional

from .events import TranscriptSpan

logger = logging.getLogger(__name__)


class FlushToken:
    """Cancellation token tied to one scheduled idle flush."""

    def __init__(self) -> None:
        self._cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class FlushController:
    """
    Accumulates transcript deltas and emits ``TranscriptSpan``s.

    The controller never touches the network. Callers receive spans as return
    values and forward them to the speech link themselves.
    """

    def __init__(
        self,
        on_idle_due: Callable[[FlushToken], None],
        threshold: int = 50,
        idle_delay: float = 0.1,
    ):
        """
        Args:
            on_idle_due: Called from the event loop when an idle timer fires
            threshold: Characters that trigger an immediate flush
            idle_delay: Seconds of silence before an idle flush
        """
        self.threshold = threshold
        self.idle_delay = idle_delay
        self._on_idle_due = on_idle_due
        self._accumulator = ""
        self._token: Optional[FlushToken] = None
        self._next_sequence = 0

    @property
    def pending_text(self) -> str:
        return self._accumulator

    @property
    def timer_pending(self) -> bool:
        return self._token is not None and not self._token.cancelled

    def append(self, delta: str) -> Optional[TranscriptSpan]:
        """Add a delta; returns a span if the size trigger fired."""
        if not delta:
            return None

        self._accumulator += delta
        self.cancel_timer()

        if len(self._accumulator) >= self.threshold:
            return self._take()

        self._schedule()
        return None

    def on_idle(self, token: FlushToken) -> Optional[TranscriptSpan]:
        """Handle a fired idle timer; stale or cancelled tokens are ignored."""
        if token is not self._token or token.cancelled:
            logger.debug("Ignoring stale idle flush")
            return None
        self._token = None
        return self._take()

    def flush(self) -> Optional[TranscriptSpan]:
        """Unconditional flush used when the reply is complete."""
        self.cancel_timer()
        return self._take()

    def discard(self) -> None:
        """Drop unflushed text and any pending timer."""
        self.cancel_timer()
        if self._accumulator:
            logger.debug(f"Discarding {len(self._accumulator)} unflushed characters")
        self._accumulator = ""

    def cancel_timer(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    def _schedule(self) -> None:
        token = FlushToken()
        loop = asyncio.get_running_loop()
        token._handle = loop.call_later(self.idle_delay, self._fire, token)
        self._token = token

    def _fire(self, token: FlushToken) -> None:
        if not token.cancelled:
            self._on_idle_due(token)

    def _take(self) -> Optional[TranscriptSpan]:
        if not self._accumulator:
            return None
        span = TranscriptSpan(sequence=self._next_sequence, text=self._accumulator)
        self._next_sequence += 1
        self._accumulator = ""
        return span
