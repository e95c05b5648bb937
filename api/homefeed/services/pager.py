from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from homefeed.services.fairness import FairnessSignalStore
from homefeed.services.ranking import RankedCandidate

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class LevelSeparator:
    level: int
    start_index: int
    count: int


@dataclass(frozen=True, slots=True)
class PageSlice:
    items: list[RankedCandidate]
    page: int
    page_size: int
    start_index: int
    end_index: int
    total_count: int

    @property
    def has_more(self) -> bool:
        return self.end_index < self.total_count

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size)

    @property
    def served_ids(self) -> list[str]:
        return [row.candidate_id for row in self.items]


def plan_page(total_order: Sequence[RankedCandidate | None], page: int, page_size: int) -> PageSlice:
    """Slice one page out of the total order.

    ``None`` entries hold the place of listings that left a pinned session
    order; they count towards paging but are never served.
    """
    if page < 1 or page_size < 1:
        raise ValueError("page and page_size must be >= 1")
    start = (page - 1) * page_size
    end = page * page_size
    return PageSlice(
        items=[row for row in total_order[start:end] if row is not None],
        page=page,
        page_size=page_size,
        start_index=start,
        end_index=end,
        total_count=len(total_order),
    )


def level_separators(items: Sequence[RankedCandidate]) -> list[LevelSeparator]:
    """Page-relative start index and size of each tier run in the page."""
    separators: list[LevelSeparator] = []
    for index, row in enumerate(items):
        if separators and separators[-1].level == row.tier:
            last = separators[-1]
            separators[-1] = LevelSeparator(level=last.level, start_index=last.start_index, count=last.count + 1)
            continue
        separators.append(LevelSeparator(level=row.tier, start_index=index, count=1))
    return separators


class PreparedPage:
    """A ranked page that has not been recorded as shown yet.

    ``commit`` must run only once the page has been handed to the caller.
    It records exposure for exactly the served ids and is a no-op after the
    first call.
    """

    def __init__(
        self,
        page_slice: PageSlice,
        *,
        store: FairnessSignalStore,
        clock: Clock = utc_now,
        signals_degraded: bool = False,
        rotation_anchor: str | None = None,
        payloads: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self.slice = page_slice
        self.signals_degraded = signals_degraded
        self.rotation_anchor = rotation_anchor
        self.payloads = dict(payloads or {})
        self._store = store
        self._clock = clock
        self._committed = False
        self._commit_lock = threading.Lock()

    @property
    def committed(self) -> bool:
        return self._committed

    async def commit(self) -> list[str]:
        with self._commit_lock:
            if self._committed:
                return []
            self._committed = True

        served_ids = self.slice.served_ids
        if not served_ids:
            return []

        with tracer.start_as_current_span("feed.commit") as span:
            span.set_attribute("feed.served_count", len(served_ids))
            try:
                await self._store.touch(served_ids, self._clock())
            except Exception:
                with self._commit_lock:
                    self._committed = False
                raise
        logger.debug("recorded exposure page=%s served=%s", self.slice.page, len(served_ids))
        return served_ids
