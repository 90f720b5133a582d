"""
Restart policy for crashed instances.

Backoff grows exponentially with consecutive crashes and is capped. Crashes are
also counted in a sliding window; once the window holds `max_restarts` crashes
the instance is given up on until an operator restarts it.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Config
from .descriptor import AppDescriptor


@dataclass(frozen=True)
class RestartPolicy:
    base_delay: float
    max_delay: float
    max_restarts: int
    window: float
    min_uptime: float

    @classmethod
    def for_app(cls, descriptor: AppDescriptor, settings: Config) -> "RestartPolicy":
        """Supervisor-wide settings with the descriptor's overrides applied."""

        def pick(override, default):
            return default if override is None else override

        return cls(
            base_delay=pick(descriptor.restart_delay, settings.restart_delay),
            max_delay=settings.restart_max_delay,
            max_restarts=pick(descriptor.max_restarts, settings.max_restart_attempts),
            window=pick(descriptor.restart_window, settings.restart_window),
            min_uptime=pick(descriptor.min_uptime, settings.min_uptime),
        )

    def delay_for(self, consecutive: int) -> float:
        """Backoff before the restart following the `consecutive`-th crash in a row."""
        if consecutive < 1:
            return 0.0
        return min(self.base_delay * 2 ** (consecutive - 1), self.max_delay)


class RestartTracker:
    """Crash bookkeeping for one instance."""

    def __init__(self, policy: RestartPolicy, clock: Callable[[], float] = time.monotonic):
        self.policy = policy
        self._clock = clock
        self._crashes: deque[float] = deque()
        self.consecutive = 0

    def record_crash(self, uptime: Optional[float] = None) -> Optional[float]:
        """
        Register a crash and decide what happens next.

        `uptime` is how long the instance ran before crashing (None when it never
        started). Returns the delay before the next start, or None when the
        restart budget is exhausted.
        """
        now = self._clock()
        if uptime is not None and uptime >= self.policy.min_uptime:
            self.consecutive = 0

        while self._crashes and now - self._crashes[0] > self.policy.window:
            self._crashes.popleft()
        self._crashes.append(now)

        if len(self._crashes) >= self.policy.max_restarts:
            return None

        self.consecutive += 1
        return self.policy.delay_for(self.consecutive)

    @property
    def crashes_in_window(self) -> int:
        now = self._clock()
        return sum(1 for t in self._crashes if now - t <= self.policy.window)

    def reset(self):
        self._crashes.clear()
        self.consecutive = 0
