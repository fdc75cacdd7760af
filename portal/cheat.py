"""Focus/visibility based cheat-signal detection for a running quiz attempt."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from portal.models import CheatAttempt, CheatMethod, utcnow

logger = logging.getLogger(__name__)

CHEAT_WARNING = "Cheat attempt detected. It has been recorded on your application."


class CheatDetector:
    """Appends one ``CheatAttempt`` per genuine focus/visibility transition.

    ``is_active`` is polled on every signal, so the detector stays inert while
    the owning session is outside its answering phase. Signals landing within
    ``debounce_seconds`` of the last recorded one count as the same physical
    event (a tab switch usually fires both blur and visibilitychange).
    """

    def __init__(
        self,
        is_active: Callable[[], bool],
        on_warning: Optional[Callable[[CheatAttempt], None]] = None,
        debounce_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._is_active = is_active
        self._on_warning = on_warning
        self._debounce = debounce_seconds
        self._clock = clock
        self._log: list[CheatAttempt] = []
        self._last_signal_at: Optional[float] = None

    @property
    def attempts(self) -> tuple[CheatAttempt, ...]:
        return tuple(self._log)

    def report(self, method: CheatMethod) -> Optional[CheatAttempt]:
        if not self._is_active():
            return None

        now = self._clock()
        if self._last_signal_at is not None and now - self._last_signal_at < self._debounce:
            logger.debug("Dropping %s signal inside debounce window", method.value)
            return None
        self._last_signal_at = now

        attempt = CheatAttempt(method=method, timestamp=utcnow())
        self._log.append(attempt)
        logger.warning("Cheat attempt detected: %s", method.value)
        if self._on_warning:
            self._on_warning(attempt)
        return attempt

    def visibility_changed(self, hidden: bool) -> Optional[CheatAttempt]:
        if not hidden:
            return None
        return self.report(CheatMethod.SWITCHED_TAB)

    def focus_lost(self) -> Optional[CheatAttempt]:
        return self.report(CheatMethod.LOST_FOCUS)
