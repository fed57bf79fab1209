from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable


@dataclass
class CooldownState:
    last_action: float = 0.0


class RateLimiter:
    """Per-key cooldown used to throttle generation submissions."""

    def __init__(self, cooldown_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state: Dict[Hashable, CooldownState] = {}

    def retry_after(self, key: Hashable) -> float:
        state = self._state.get(key)
        if state is None:
            return 0.0
        remaining = self.cooldown_seconds - (self._clock() - state.last_action)
        return max(0.0, remaining)

    def allow(self, key: Hashable) -> bool:
        if self.cooldown_seconds <= 0:
            return True
        if self.retry_after(key) > 0:
            return False
        self._state[key] = CooldownState(last_action=self._clock())
        if len(self._state) > 10000:
            self.prune()
        return True

    def prune(self) -> None:
        now = self._clock()
        self._state = {
            key: state
            for key, state in self._state.items()
            if now - state.last_action < self.cooldown_seconds
        }
