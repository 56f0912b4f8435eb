"""
GeoPresence - Reconnect Strategy

Exponential backoff with jitter for presence clients re-establishing
their transport channel. Jitter decorrelates a room full of phones that
all lost the relay at the same moment (e.g. a server restart).
"""

import asyncio
import logging
import random
import threading
import time
from typing import Optional

logger = logging.getLogger(__name__)


class ReconnectStrategy:
    """Exponential backoff with jitter for reconnection attempts.

    delay = min(base * multiplier ** attempt, max_delay) + uniform(0, delay * jitter_factor)
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        jitter_factor: float = 0.25,
        max_retries: Optional[int] = None,
    ):
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._multiplier = multiplier
        self._jitter_factor = jitter_factor
        self._max_retries = max_retries
        self._lock = threading.Lock()

        self._attempt: int = 0
        self._total_attempts: int = 0
        self._last_attempt_time: float = 0

    @property
    def attempt(self) -> int:
        """Current attempt number (0-indexed)."""
        with self._lock:
            return self._attempt

    @property
    def total_attempts(self) -> int:
        """Total attempts across all reset cycles."""
        with self._lock:
            return self._total_attempts

    def next_delay(self) -> float:
        """Calculate the next backoff delay with jitter and advance the counter."""
        with self._lock:
            delay = self._base_delay * (self._multiplier ** self._attempt)
            delay = min(delay, self._max_delay)
            delay += random.uniform(0, delay * self._jitter_factor)

            self._attempt += 1
            self._total_attempts += 1
            self._last_attempt_time = time.time()

        return delay

    def should_retry(self) -> bool:
        """True while max_retries is unlimited or not yet reached."""
        if self._max_retries is None:
            return True
        with self._lock:
            return self._attempt < self._max_retries

    def reset(self) -> None:
        """Reset the attempt counter after a successful connection."""
        with self._lock:
            self._attempt = 0

    async def wait(self, stop_event: Optional[asyncio.Event] = None) -> float:
        """Sleep for the next backoff delay.

        When *stop_event* is given the wait ends early once it is set, so a
        closing client is not held up by a long backoff.

        Returns the delay that was scheduled (seconds).
        """
        delay = self.next_delay()
        if stop_event is None:
            await asyncio.sleep(delay)
            return delay
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        return delay

    @classmethod
    def for_channel(cls) -> "ReconnectStrategy":
        """Strategy for the presence transport channel.

        Starts at 1s, caps at 30s, unlimited retries: a tracking client
        keeps trying for as long as it runs.
        """
        return cls(
            base_delay=1.0,
            max_delay=30.0,
            multiplier=2.0,
            jitter_factor=0.25,
            max_retries=None,
        )
