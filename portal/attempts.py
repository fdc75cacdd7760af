"""
In-memory registry of live quiz attempts.

Each attempt belongs to one user. Attempts idle for longer than ``ttl`` seconds
are dropped and their countdowns cancelled. Nothing survives a restart.
"""

import threading
import time
from typing import Callable

from portal.errors import NotFound
from portal.quiz_session import QuizSession, SessionState


class AttemptRegistry:
    def __init__(self, ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: dict[str, QuizSession] = {}
        self._timestamps: dict[str, float] = {}

    def add(self, attempt: QuizSession) -> QuizSession:
        with self._lock:
            # Starting over forfeits any unfinished attempt on the same quiz.
            for other_id, other in list(self._attempts.items()):
                if (
                    other.principal.id == attempt.principal.id
                    and other.quiz_id == attempt.quiz_id
                    and other.state != SessionState.SUBMITTED
                ):
                    self._drop(other_id)
            self._attempts[attempt.id] = attempt
            self._timestamps[attempt.id] = self._clock()
        return attempt

    def get(self, attempt_id: str, owner_id: str) -> QuizSession:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None or attempt.principal.id != owner_id:
                raise NotFound("No such attempt.")
            if self._clock() - self._timestamps[attempt_id] > self.ttl:
                self._drop(attempt_id)
                raise NotFound("This attempt has expired.", code="attempt_expired")
            self._timestamps[attempt_id] = self._clock()
            return attempt

    def remove(self, attempt_id: str) -> None:
        with self._lock:
            if attempt_id in self._attempts:
                self._drop(attempt_id)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [aid for aid, ts in self._timestamps.items() if now - ts > self.ttl]
            for attempt_id in expired:
                self._drop(attempt_id)
        return len(expired)

    def __len__(self) -> int:
        return len(self._attempts)

    def _drop(self, attempt_id: str) -> None:
        self._attempts.pop(attempt_id).cancel()
        del self._timestamps[attempt_id]
