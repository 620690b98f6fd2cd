import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional

from utils.logger import get_logger

logger = get_logger("rate_limiter")


@dataclass
class RateLimitConfig:
    """Admission limit for one caller"""

    requests_per_window: Optional[int]  # None = unbounded (privileged)
    window_seconds: float = 60.0

    @property
    def unbounded(self) -> bool:
        return self.requests_per_window is None


@dataclass
class RateWindow:
    """Sliding window of admitted request timestamps for one caller"""

    requests: deque = field(default_factory=deque)
    blocked: bool = False  # informational only

    def evict_before(self, cutoff: float):
        """Drop timestamps at or before ``cutoff``"""
        while self.requests and self.requests[0] <= cutoff:
            self.requests.popleft()


class RateGate:
    """Per-caller sliding-window admission control.

    ``admit`` is synchronous and never awaits, so on a single event loop the
    check-and-record step cannot interleave with another caller's.
    """

    def __init__(
        self,
        limit: int = 30,
        window_seconds: float = 60.0,
        privileged: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_config = RateLimitConfig(
            requests_per_window=limit, window_seconds=window_seconds
        )
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._overrides: Dict[str, RateLimitConfig] = {}
        for caller_id in privileged:
            self.grant_privilege(caller_id)

    @classmethod
    def from_settings(cls) -> "RateGate":
        from config import settings

        return cls(
            limit=settings.RATE_LIMIT_PER_MINUTE,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            privileged=settings.PRIVILEGED_OWNERS,
        )

    def grant_privilege(self, caller_id: str):
        """Give a caller an unbounded limit"""
        key = str(caller_id)
        self._overrides[key] = RateLimitConfig(
            requests_per_window=None,
            window_seconds=self.default_config.window_seconds,
        )
        self._windows.pop(key, None)

    def set_limit(self, caller_id: str, limit: Optional[int]):
        """Override the per-window limit for one caller (None = unbounded)"""
        if limit is None:
            self.grant_privilege(caller_id)
            return
        self._overrides[str(caller_id)] = RateLimitConfig(
            requests_per_window=max(0, int(limit)),
            window_seconds=self.default_config.window_seconds,
        )

    def is_privileged(self, caller_id: str) -> bool:
        return self._config_for(str(caller_id)).unbounded

    def _config_for(self, caller_id: str) -> RateLimitConfig:
        return self._overrides.get(caller_id, self.default_config)

    def admit(self, caller_id: str) -> bool:
        """Record and admit a request, or reject it if the window is full"""
        key = str(caller_id)
        config = self._config_for(key)
        if config.unbounded:
            return True

        now = self._clock()
        window = self._windows.setdefault(key, RateWindow())
        window.evict_before(now - config.window_seconds)

        if len(window.requests) >= config.requests_per_window:
            if not window.blocked:
                logger.info(
                    "Caller rate limited",
                    caller=key,
                    limit=config.requests_per_window,
                    window_seconds=config.window_seconds,
                )
            window.blocked = True
            return False

        window.requests.append(now)
        window.blocked = False
        return True

    def is_blocked(self, caller_id: str) -> bool:
        window = self._windows.get(str(caller_id))
        return bool(window and window.blocked)

    def remaining(self, caller_id: str) -> Optional[int]:
        """Admits left in the current window (None for unbounded callers)"""
        key = str(caller_id)
        config = self._config_for(key)
        if config.unbounded:
            return None
        window = self._windows.get(key)
        if window is None:
            return config.requests_per_window
        window.evict_before(self._clock() - config.window_seconds)
        return max(0, config.requests_per_window - len(window.requests))

    def prune(self) -> int:
        """Forget callers whose windows have fully expired"""
        now = self._clock()
        stale = []
        for caller_id, window in self._windows.items():
            window.evict_before(now - self._config_for(caller_id).window_seconds)
            if not window.requests:
                stale.append(caller_id)
        for caller_id in stale:
            del self._windows[caller_id]
        return len(stale)

    def get_status(self) -> Dict[str, dict]:
        """Current window usage for every caller with recorded requests"""
        status = {}
        for caller_id in list(self._windows):
            config = self._config_for(caller_id)
            status[caller_id] = {
                "used": config.requests_per_window - (self.remaining(caller_id) or 0),
                "limit": f"{config.requests_per_window}/{config.window_seconds:g}s",
                "blocked": self._windows[caller_id].blocked,
            }
        return status
