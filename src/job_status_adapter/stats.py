from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from threading import Lock
from typing import Any


class PropagationStats:
    """Process-lifetime counters exposed on the diagnostics listener."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._cycles = 0
        self._candidates = 0
        self._batches = 0
        self._succeeded = 0
        self._failed: Counter[str] = Counter()
        self._last_cycle_at: datetime | None = None

    def record_cycle(self, *, candidates: int, batches: int) -> None:
        with self._lock:
            self._cycles += 1
            self._candidates += candidates
            self._batches += batches
            self._last_cycle_at = datetime.now(timezone.utc)

    def record_success(self) -> None:
        with self._lock:
            self._succeeded += 1

    def record_failure(self, kind: str) -> None:
        with self._lock:
            self._failed[kind] += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "cycles": self._cycles,
                "candidates": self._candidates,
                "batches": self._batches,
                "succeeded": self._succeeded,
                "failed": dict(self._failed),
                "last_cycle_at": None if self._last_cycle_at is None else self._last_cycle_at.isoformat(),
            }
