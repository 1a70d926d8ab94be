"""Runtime security controls such as secret reveal rate monitoring."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from threading import Lock
from typing import Deque, Dict

from django.conf import settings

from core.logging_utils import get_security_logger

_logger = get_security_logger()


class RevealRateMonitor:
    """Flag users who decrypt stored secrets faster than a human would."""

    def __init__(self, threshold: int, window_seconds: int) -> None:
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._events: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def record(self, user_id) -> bool:
        """Record one reveal and return True when the window exceeds the threshold."""
        now = time.monotonic()
        key = str(user_id)
        with self._lock:
            history = self._events[key]
            history.append(now)
            cutoff = now - self.window_seconds
            while history and history[0] < cutoff:
                history.popleft()
            exceeded = len(history) > self.threshold

        if exceeded:
            _logger.security_event(
                "Secret reveal rate threshold exceeded",
                extra_data={"user_id": key, "count": len(history), "window": self.window_seconds},
            )
        return exceeded


_monitor_instance: RevealRateMonitor | None = None


def get_reveal_rate_monitor() -> RevealRateMonitor:
    global _monitor_instance
    if _monitor_instance is None:
        threshold = int(getattr(settings, "VAULT_REVEAL_RATE_THRESHOLD", 120))
        window = int(getattr(settings, "VAULT_REVEAL_RATE_WINDOW", 60))
        _monitor_instance = RevealRateMonitor(threshold, window)
    return _monitor_instance
