# widgetsmith/services/rate_limiter.py
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple

from widgetsmith.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    In-process sliding-window limiter keyed by (owner, kind).

    `limits` maps a kind ("generation", "execution") to the number of hits
    allowed per window. Kinds without a limit are never throttled.
    """

    def __init__(self, limits: Dict[str, int], window_seconds: float = 3600.0,
                 clock: Callable[[], float] = time.monotonic):
        self.limits = dict(limits)
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}

    def _prune(self, key: Tuple[str, str], now: float) -> Deque[float]:
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        return hits

    def check(self, owner_id: str, kind: str) -> None:
        """Records a hit, or raises RateLimitExceededError without recording one."""
        limit = self.limits.get(kind)
        if limit is None:
            return
        now = self._clock()
        hits = self._prune((owner_id, kind), now)
        if len(hits) >= limit:
            logger.warning(f"Rate limit hit: owner={owner_id} kind={kind} limit={limit}/window")
            raise RateLimitExceededError(kind, limit)
        hits.append(now)

    def remaining(self, owner_id: str, kind: str) -> int:
        limit = self.limits.get(kind)
        if limit is None:
            return -1
        return max(0, limit - len(self._prune((owner_id, kind), self._clock())))
