# =============================================================================
#  botdash
#  Copyright (C) 2025 botdash contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import asyncio
import logging
import time
from enum import Enum
from typing import Dict, Optional, Tuple

logger = logging.getLogger("botdash.ratelimit")


class ActionType(Enum):
    MEMBER_PAGE = "member_page"
    DM_CHANNEL = "dm_channel"
    DM_MESSAGE = "dm_message"
    STICKER = "sticker"
    PROFILE = "profile"


# (requests, per seconds); kept under Discord's published per-route buckets
DEFAULT_LIMITS: Dict[ActionType, Tuple[int, float]] = {
    ActionType.MEMBER_PAGE: (10, 10.0),
    ActionType.DM_CHANNEL: (5, 5.0),
    ActionType.DM_MESSAGE: (5, 5.0),
    ActionType.STICKER: (2, 10.0),
    ActionType.PROFILE: (2, 60.0),
}


class RateLimiter:
    """
    Token bucket refilled continuously at `rate / per` tokens a second,
    plus a hard cooldown window set when Discord answers 429.
    """

    def __init__(self, rate: int, per: float):
        self.rate = max(1, int(rate))
        self.per = float(per)
        self._tokens = float(self.rate)
        self._stamp = time.monotonic()
        self._blocked_until = 0.0
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        gained = (now - self._stamp) * (self.rate / self.per)
        self._tokens = min(float(self.rate), self._tokens + gained)
        self._stamp = now

    async def acquire(self) -> float:
        """Takes one token, sleeping as needed. Returns seconds waited."""
        waited = 0.0
        async with self._lock:
            blocked = self.cooldown_left()
            if blocked:
                await asyncio.sleep(blocked)
                waited += blocked

            self._refill(time.monotonic())
            if self._tokens < 1.0:
                short = (1.0 - self._tokens) * (self.per / self.rate)
                await asyncio.sleep(short)
                waited += short
                self._refill(time.monotonic())
            self._tokens = max(0.0, self._tokens - 1.0)
        return waited

    def cool_down(self, seconds: float) -> None:
        """Blocks the bucket for `seconds`; never shortens an existing window."""
        until = time.monotonic() + max(0.0, seconds)
        self._blocked_until = max(self._blocked_until, until)

    def clear(self) -> None:
        self._blocked_until = 0.0

    def cooldown_left(self) -> float:
        return max(0.0, self._blocked_until - time.monotonic())


class RateLimitManager:
    """One RateLimiter per ActionType; unknown actions are not limited."""

    def __init__(self, limits: Optional[Dict[ActionType, Tuple[int, float]]] = None):
        self._limiters: Dict[ActionType, RateLimiter] = {
            action: RateLimiter(rate, per)
            for action, (rate, per) in (limits or DEFAULT_LIMITS).items()
        }

    async def acquire(self, action: ActionType) -> None:
        lim = self._limiters.get(action)
        if lim is None:
            return
        waited = await lim.acquire()
        if waited > 0.5:
            logger.debug("Waited %.2fs for %s bucket", waited, action.value)

    def penalize(self, action: ActionType, seconds: float) -> None:
        lim = self._limiters.get(action)
        if lim is not None:
            lim.cool_down(seconds)

    def penalize_all(self, seconds: float) -> None:
        """Global 429: every bucket waits."""
        for lim in self._limiters.values():
            lim.cool_down(seconds)

    def reset(self, action: ActionType) -> None:
        lim = self._limiters.get(action)
        if lim is not None:
            lim.clear()

    def remaining(self, action: ActionType) -> float:
        lim = self._limiters.get(action)
        return lim.cooldown_left() if lim is not None else 0.0
