"""
Background re-sync of Discord roles.

Two triggers feed one entry point: the client reports window focus
(``on_focus``) and a periodic asyncio task (``run_periodic``) walks recently
active users. Both go through ``revalidate``, which shares a per-user rate
limit so the triggers cannot double-fire inside ``min_interval`` seconds.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

from sqlmodel import Session

from portal.errors import PermissionDenied, UpstreamError
from portal.integrations import IdentityProvider
from portal.models import UserProfile
from portal.stores import SqlProfileStore

logger = logging.getLogger(__name__)


class RateLimitGuard:
    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last: dict[str, float] = {}

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            last = self._last.get(key)
            if last is not None and now - last < self.min_interval:
                return False
            self._last[key] = now
            return True


class Revalidator:
    def __init__(
        self,
        identity: IdentityProvider,
        session_factory: Callable[[], Session],
        min_interval: float = 60.0,
        period: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        retry_delay: float = 60.0,
    ):
        self.identity = identity
        self.session_factory = session_factory
        self.period = period
        self.retry_delay = retry_delay
        self.guard = RateLimitGuard(min_interval, clock)
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: dict[str, float] = {}

    def touch(self, user_id: str) -> None:
        """Remember that ``user_id`` is active so the periodic pass covers them."""
        with self._lock:
            self._seen[user_id] = self._clock()

    def active_users(self) -> list[str]:
        cutoff = self._clock() - 2 * self.period
        with self._lock:
            for user_id in [u for u, seen in self._seen.items() if seen < cutoff]:
                del self._seen[user_id]
            return list(self._seen)

    def revalidate(self, user_id: str, trigger: str = "manual") -> Optional[UserProfile]:
        """Refresh the stored role snapshot. Returns None when rate-limited."""
        if not self.guard.try_acquire(user_id):
            logger.debug("Skipping %s revalidation for %s (rate limited)", trigger, user_id)
            return None

        with self.session_factory() as session:
            profiles = SqlProfileStore(session)
            profile = profiles.get_profile(user_id)
            if profile is None:
                return None
            try:
                roles = self.identity.get_user_roles(user_id)
            except PermissionDenied:
                # Gone from the guild: drop every role so no permission survives.
                profiles.upsert_profile(user_id, profile.username, [])
                logger.info("User %s left the guild; roles cleared", user_id)
                raise

            before = set(profile.roles or [])
            highest = self.identity.get_highest_role(roles)
            profile = profiles.upsert_profile(user_id, profile.username, roles, highest_role=highest)
            if before != set(roles):
                logger.info("Roles changed for %s on %s revalidation", user_id, trigger)
            return profile

    def on_focus(self, user_id: str) -> Optional[UserProfile]:
        return self.revalidate(user_id, trigger="focus")

    async def run_periodic(self, sleep=asyncio.sleep) -> None:
        while True:
            await sleep(self.period)
            try:
                await self._periodic_pass()
            except Exception:
                # Keep the task alive; cancellation is not an Exception and still stops it.
                logger.exception("Periodic revalidation pass failed, retrying in %ss", self.retry_delay)
                await sleep(self.retry_delay)

    async def _periodic_pass(self) -> None:
        for user_id in self.active_users():
            try:
                await asyncio.to_thread(self.revalidate, user_id, "interval")
            except PermissionDenied:
                continue
            except UpstreamError as exc:
                logger.warning("Periodic revalidation of %s failed: %s", user_id, exc.message)
