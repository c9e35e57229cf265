"""Debounced presence tracking for scanned candidates."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set


@dataclass(slots=True)
class PresenceDelta:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    present: List[str] = field(default_factory=list)


class PresenceTracker:
    """Confirm absence over ``miss_threshold`` consecutive observations.

    A key that is missing from fewer consecutive cycles than the threshold
    stays present (reported in ``missing``). Reappearing resets its counter.
    """

    def __init__(self, miss_threshold: int = 2) -> None:
        if miss_threshold < 1:
            raise ValueError("miss_threshold must be >= 1")
        self.miss_threshold = miss_threshold
        self._misses: Dict[str, int] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._misses

    @property
    def known(self) -> Set[str]:
        return set(self._misses)

    def misses(self, key: str) -> int:
        return self._misses.get(key, 0)

    def observe(self, keys: Iterable[str]) -> PresenceDelta:
        seen = set(keys)
        delta = PresenceDelta()
        for key in sorted(seen):
            if key not in self._misses:
                delta.added.append(key)
            else:
                delta.present.append(key)
            self._misses[key] = 0
        for key in sorted(set(self._misses) - seen):
            count = self._misses[key] + 1
            if count >= self.miss_threshold:
                del self._misses[key]
                delta.removed.append(key)
            else:
                self._misses[key] = count
                delta.missing.append(key)
        return delta

    def forget(self, key: str) -> None:
        self._misses.pop(key, None)

    def clear(self) -> None:
        self._misses.clear()


__all__ = ["PresenceDelta", "PresenceTracker"]
