"""Per-question countdown used by the quiz session."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional


class Countdown:
    """Counts whole seconds down from ``duration`` to zero.

    The owner decides how seconds pass: call ``tick()`` once per elapsed second,
    or ``await run()`` to let an asyncio loop do it in real time. ``on_tick``
    receives every remaining value from ``duration`` to ``0`` and ``on_expire``
    fires exactly once, right after the ``0`` tick.
    """

    def __init__(
        self,
        duration: int,
        on_tick: Optional[Callable[[int], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
    ) -> None:
        if duration <= 0:
            raise ValueError("Countdown duration must be a positive number of seconds.")
        self.duration = duration
        self.remaining = duration
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._running = False
        self._expired = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def expired(self) -> bool:
        return self._expired

    def start(self) -> None:
        if self._running or self._expired:
            return
        self.remaining = self.duration
        self._running = True
        self._emit_tick()

    def tick(self) -> None:
        """Account for one elapsed second."""
        if not self._running:
            return
        self.remaining -= 1
        self._emit_tick()
        if self.remaining == 0:
            self._running = False
            self._expired = True
            if self._on_expire:
                self._on_expire()

    def cancel(self) -> None:
        self._running = False

    async def run(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.start()
        while self._running:
            await sleep(1)
            self.tick()

    def _emit_tick(self) -> None:
        if self._on_tick:
            self._on_tick(self.remaining)
