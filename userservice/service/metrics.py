from __future__ import annotations

import threading
from collections import Counter
from typing import Dict, Protocol, Tuple

from userservice.logging import get_logger

logger = get_logger(__name__)

OUTCOME_NONE = "none"
OUTCOME_BAD_USERNAME = "bad_username"
OUTCOME_BAD_PASSWORD = "bad_password"
OUTCOME_PASSWORD_LOCKOUT = "password_lockout"
OUTCOME_PASSWORDS_UNCHANGED = "passwords_unchanged"
OUTCOME_STORE_ERROR = "store_error"
OUTCOME_FORBIDDEN = "forbidden"
OUTCOME_TOO_MANY_SESSIONS = "too_many_sessions"


class MetricsReporter(Protocol):
    def observe(self, operation: str, outcome: str) -> None:
        ...


class LogReporter:
    """Default reporter: one debug event per observed attempt."""

    def observe(self, operation: str, outcome: str) -> None:
        logger.debug("auth_outcome", operation=operation, outcome=outcome)


class CountingReporter:
    """Thread-safe in-process counters keyed by (operation, outcome)."""

    def __init__(self) -> None:
        self._counts: Counter[Tuple[str, str]] = Counter()
        self._lock = threading.Lock()

    def observe(self, operation: str, outcome: str) -> None:
        with self._lock:
            self._counts[(operation, outcome)] += 1

    def count(self, operation: str, outcome: str) -> int:
        with self._lock:
            return self._counts[(operation, outcome)]

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            result: Dict[str, Dict[str, int]] = {}
            for (operation, outcome), value in self._counts.items():
                result.setdefault(operation, {})[outcome] = value
            return result


__all__ = [
    "MetricsReporter",
    "LogReporter",
    "CountingReporter",
    "OUTCOME_NONE",
    "OUTCOME_BAD_USERNAME",
    "OUTCOME_BAD_PASSWORD",
    "OUTCOME_PASSWORD_LOCKOUT",
    "OUTCOME_PASSWORDS_UNCHANGED",
    "OUTCOME_STORE_ERROR",
    "OUTCOME_FORBIDDEN",
    "OUTCOME_TOO_MANY_SESSIONS",
]
