"""Per-action cache of active rule snapshots.

Owned by whoever builds the engine (the API app keeps one on
``app.state``); tests construct a fresh cache per case.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .rules import ActionType, RuleSnapshot


class RuleCache:
    """TTL-bounded cache keyed by action."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[ActionType, Tuple[float, Tuple[RuleSnapshot, ...]]] = {}
        self._lock = threading.Lock()

    def get(self, action: ActionType, loader: Callable[[], List[RuleSnapshot]]) -> List[RuleSnapshot]:
        """Return cached rules for ``action``, calling ``loader`` on a miss or expiry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(action)
            if entry is not None and now - entry[0] < self.ttl_seconds:
                return list(entry[1])

        rules = tuple(loader())
        with self._lock:
            self._entries[action] = (now, rules)
        return list(rules)

    def invalidate(self, action: Optional[ActionType] = None) -> None:
        """Drop one action's entry, or everything when no action is given."""
        with self._lock:
            if action is None:
                self._entries.clear()
            else:
                self._entries.pop(action, None)

    def __contains__(self, action: ActionType) -> bool:
        with self._lock:
            entry = self._entries.get(action)
            return entry is not None and self._clock() - entry[0] < self.ttl_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
