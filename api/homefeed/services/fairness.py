from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Protocol

from homefeed.services.models import ZERO_SIGNAL, FairnessSignal


class FairnessSignalStore(Protocol):
    async def get(self, candidate_id: str) -> FairnessSignal: ...

    async def get_many(self, candidate_ids: Sequence[str]) -> dict[str, FairnessSignal]: ...

    async def touch(self, candidate_ids: Sequence[str], at: datetime) -> None: ...

    async def reset(self) -> int: ...


class InMemoryFairnessStore:
    """Process-local fairness signals.

    A single lock covers each batch, so concurrent touches from threads or
    separate event loops never lose an increment.
    """

    def __init__(self) -> None:
        self._signals: dict[str, FairnessSignal] = {}
        self._lock = threading.Lock()

    async def get(self, candidate_id: str) -> FairnessSignal:
        with self._lock:
            return self._signals.get(candidate_id, ZERO_SIGNAL)

    async def get_many(self, candidate_ids: Sequence[str]) -> dict[str, FairnessSignal]:
        with self._lock:
            return {candidate_id: self._signals.get(candidate_id, ZERO_SIGNAL) for candidate_id in candidate_ids}

    async def touch(self, candidate_ids: Sequence[str], at: datetime) -> None:
        batch = normalize_touch_batch(candidate_ids)
        if not batch:
            return
        with self._lock:
            for candidate_id in batch:
                current = self._signals.get(candidate_id, ZERO_SIGNAL)
                self._signals[candidate_id] = FairnessSignal(
                    last_shown_at=max(current.last_shown_at, at),
                    shown_count=current.shown_count + 1,
                )

    async def reset(self) -> int:
        with self._lock:
            affected = sum(1 for signal in self._signals.values() if signal.shown_count > 0)
            self._signals.clear()
        return affected

    def snapshot(self) -> dict[str, FairnessSignal]:
        with self._lock:
            return dict(self._signals)


def normalize_touch_batch(candidate_ids: Iterable[str]) -> list[str]:
    # Ascending order keeps row-lock acquisition deterministic across writers.
    return sorted(set(candidate_ids))
