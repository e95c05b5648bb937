from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol


@dataclass(frozen=True, slots=True)
class FeedSession:
    """Total order captured when a browsing session served its first page."""

    anchor: str
    candidate_ids: tuple[str, ...]
    created_at: datetime


class FeedSessionStore(Protocol):
    async def save_session(self, session: FeedSession) -> None: ...

    async def load_session(self, anchor: str, *, now: datetime) -> FeedSession | None: ...


class InMemorySessionStore:
    """Bounded process-local session orders, evicted oldest first."""

    def __init__(self, *, ttl: timedelta = timedelta(minutes=30), max_entries: int = 10_000) -> None:
        self.ttl = ttl
        self.max_entries = max(1, max_entries)
        self._sessions: OrderedDict[str, FeedSession] = OrderedDict()
        self._lock = threading.Lock()

    async def save_session(self, session: FeedSession) -> None:
        with self._lock:
            self._sessions[session.anchor] = session
            self._sessions.move_to_end(session.anchor)
            while len(self._sessions) > self.max_entries:
                self._sessions.popitem(last=False)

    async def load_session(self, anchor: str, *, now: datetime) -> FeedSession | None:
        with self._lock:
            session = self._sessions.get(anchor)
            if session is None:
                return None
            if now - session.created_at >= self.ttl:
                del self._sessions[anchor]
                return None
            return session

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def new_session(candidate_ids: Sequence[str], created_at: datetime) -> FeedSession:
    return FeedSession(anchor=uuid.uuid4().hex, candidate_ids=tuple(candidate_ids), created_at=created_at)


def anchored_order(session_ids: Sequence[str], live_ids: Sequence[str]) -> list[str | None]:
    """Positions of a session's order, with later arrivals appended.

    Ids that left the feed keep their slot as ``None`` so the following pages
    do not shift by one and skip a listing.
    """
    live = set(live_ids)
    pinned = set(session_ids)
    order: list[str | None] = [candidate_id if candidate_id in live else None for candidate_id in session_ids]
    order.extend(candidate_id for candidate_id in live_ids if candidate_id not in pinned)
    return order
