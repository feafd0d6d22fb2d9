from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Tuple

from lyria.auth.util import utcnow


class RateLimiter:
    """
    Simple in-memory rate limiter for password sign-in attempts.

    Tracks attempts per identifier (normalized email). Rate limits after max_attempts
    within window_seconds.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 300,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize rate limiter.

        Args:
            max_attempts: Maximum failed attempts before rate limiting (default: 5)
            window_seconds: Time window in seconds (default: 300 = 5 minutes)
            clock: Time source (tests inject a fixed clock)
        """
        self._attempts: Dict[str, List[datetime]] = {}
        self._max_attempts = max_attempts
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._lock = threading.Lock()

    def check_and_increment(self, identifier: str) -> Tuple[bool, int]:
        """
        Check if identifier is rate limited and increment attempt counter.

        Args:
            identifier: Unique identifier (email, IP, etc.)

        Returns:
            Tuple of (is_allowed, attempts_remaining)
            - is_allowed: True if request should be allowed, False if rate limited
            - attempts_remaining: Number of attempts remaining before rate limit
        """
        now = self._clock()
        with self._lock:
            self._prune(now)
            attempts = self._attempts.setdefault(identifier, [])
            if len(attempts) >= self._max_attempts:
                return False, 0

            attempts.append(now)
            return True, self._max_attempts - len(attempts)

    def _prune(self, now: datetime) -> None:
        # Identifiers whose window lapsed are dropped entirely; caller holds the lock.
        for key in list(self._attempts):
            live = [t for t in self._attempts[key] if now - t < self._window]
            if live:
                self._attempts[key] = live
            else:
                del self._attempts[key]

    def __len__(self) -> int:
        """Number of identifiers currently tracked."""
        with self._lock:
            return len(self._attempts)

    def reset(self, identifier: str) -> None:
        """
        Reset attempts for an identifier (e.g., after successful login).

        Args:
            identifier: Unique identifier to reset
        """
        with self._lock:
            self._attempts.pop(identifier, None)
