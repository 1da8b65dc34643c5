"""
In-memory sliding-window rate limiter.

Per (owner, action) event windows plus an optional rolling daily volume cap.
Suitable for a single process; state is lost on restart.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Deque, Dict, Optional, Tuple

from mirrorbot.config import RateLimitConfig
from mirrorbot.errors import RateLimitExceeded
from mirrorbot.gateways.interfaces import RateLimitGate

logger = logging.getLogger(__name__)

ACTION_MIRROR_TRADE = "mirror_trade"
ACTION_MIRROR_SUBSCRIBE = "mirror_subscribe"

DAY_SECONDS = 86_400


@dataclass(frozen=True, slots=True)
class LimitRule:
    max_events: int
    window_seconds: int


class InMemoryRateLimiter(RateLimitGate):
    """
    Sliding-window limits keyed by owner and action.

    Actions without a rule are always allowed (volume cap still applies
    when an amount is given).
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.time,
    ):
        self._rules: Dict[str, LimitRule] = {
            ACTION_MIRROR_TRADE: LimitRule(config.mirror_trades_per_hour, 3_600),
            ACTION_MIRROR_SUBSCRIBE: LimitRule(config.subscriptions_per_day, DAY_SECONDS),
        }
        self._daily_volume_limit = config.daily_volume_limit
        self._clock = clock
        self._events: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self._volume: Dict[str, Deque[Tuple[float, Decimal]]] = defaultdict(deque)
        self._lock = threading.Lock()

    def add_rule(self, action_kind: str, max_events: int, window_seconds: int) -> None:
        self._rules[action_kind] = LimitRule(max_events, window_seconds)

    def check_limit(
        self, owner_identity: str, action_kind: str, amount: Optional[Decimal] = None
    ) -> None:
        now = self._clock()
        with self._lock:
            rule = self._rules.get(action_kind)
            events = self._events[(owner_identity, action_kind)]
            if rule is not None:
                while events and events[0] <= now - rule.window_seconds:
                    events.popleft()
                if len(events) >= rule.max_events:
                    retry_after = events[0] + rule.window_seconds - now
                    logger.warning(
                        f"Rate limit hit: {owner_identity} {action_kind} "
                        f"({rule.max_events}/{rule.window_seconds}s)"
                    )
                    raise RateLimitExceeded(
                        f"{action_kind} limited to {rule.max_events} per {rule.window_seconds}s",
                        action=action_kind,
                        retry_after=retry_after,
                    )

            volume = self._volume[owner_identity]
            if amount is not None and self._daily_volume_limit is not None:
                while volume and volume[0][0] <= now - DAY_SECONDS:
                    volume.popleft()
                used = sum((value for _, value in volume), Decimal("0"))
                if used + amount > self._daily_volume_limit:
                    raise RateLimitExceeded(
                        f"Daily volume limit {self._daily_volume_limit} reached (used {used})",
                        action=action_kind,
                        retry_after=volume[0][0] + DAY_SECONDS - now if volume else 0.0,
                    )

            if rule is not None:
                events.append(now)
            if amount is not None and self._daily_volume_limit is not None:
                volume.append((now, amount))

    def reset(self, owner_identity: Optional[str] = None) -> None:
        with self._lock:
            if owner_identity is None:
                self._events.clear()
                self._volume.clear()
                return
            for key in [k for k in self._events if k[0] == owner_identity]:
                del self._events[key]
            self._volume.pop(owner_identity, None)
