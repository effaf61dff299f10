"""
Credential rotation for outbound TfL calls.

Holds the key pool, per-key cooldowns and the round-robin cursor. One
RotationState belongs to one client; nothing here is module-global.
"""

from __future__ import annotations

import time
from typing import Callable, Optional


def mask_key(key: Optional[str]) -> str:
    """Short, log-safe form of a credential."""
    if key is None:
        return "<none>"
    if len(key) <= 11:
        return key[:4] + "..."
    return f"{key[:8]}..."


class RotationState:
    """
    Round-robin credential pool with cooldowns.

    - next_candidates(): usable keys in rotation order, then None (no key).
    - mark_rate_limited(): put a key on cooldown for a number of seconds.
    - mark_success(): move the cursor past the key that just worked.
    """

    def __init__(
        self,
        keys: list[str],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._keys: list[str] = list(dict.fromkeys(keys))
        self._cooldowns: dict[str, float] = {}
        self._cursor = 0
        self._clock = clock  # overridable for testing

    @property
    def keys(self) -> list[str]:
        return list(self._keys)

    @property
    def cursor(self) -> int:
        return self._cursor

    def cooldown_until(self, key: str) -> Optional[float]:
        """Epoch seconds until which `key` is benched, or None once that has passed."""
        until = self._cooldowns.get(key)
        if until is None or until <= self._clock():
            return None
        return until

    def is_cooling_down(self, key: str, now: Optional[float] = None) -> bool:
        if now is None:
            now = self._clock()
        until = self._cooldowns.get(key)
        return until is not None and until > now

    def next_candidates(self) -> list[Optional[str]]:
        """Keys to try for one call, in priority order; None is always last."""
        now = self._clock()
        usable: list[Optional[str]] = []
        size = len(self._keys)
        for offset in range(size):
            key = self._keys[(self._cursor + offset) % size]
            if not self.is_cooling_down(key, now):
                usable.append(key)
        usable.append(None)
        return usable

    def mark_rate_limited(self, key: str, retry_after: float) -> float:
        """Bench `key` for `retry_after` seconds. Returns the cooldown expiry."""
        until = self._clock() + retry_after
        self._cooldowns[key] = until
        return until

    def mark_success(self, key: Optional[str]) -> None:
        if key is None or key not in self._keys:
            return
        self._cursor = (self._keys.index(key) + 1) % len(self._keys)
