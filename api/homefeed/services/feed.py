from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache

from opentelemetry import trace

from homefeed.core.config import get_settings
from homefeed.services.catalog import ListingCatalog
from homefeed.services.errors import InvalidPagingParameterError, StoreUnavailableError
from homefeed.services.fairness import FairnessSignalStore, InMemoryFairnessStore
from homefeed.services.models import ZERO_SIGNAL, Candidate, EffectiveTier, FairnessSignal, PositionRule
from homefeed.services.pager import Clock, PreparedPage, plan_page, utc_now
from homefeed.services.ranking import POSITION_GROUP_ORDER, RankedCandidate, rank_candidates, tie_group_key
from homefeed.services.repository import get_repository
from homefeed.services.sessions import FeedSession, FeedSessionStore, InMemorySessionStore, anchored_order, new_session
from homefeed.services.store import InMemoryListingStore, ListingSource, demo_listings
from homefeed.services.tiers import resolve_effective_tiers

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True, slots=True)
class FeedStats:
    profiles_by_level: dict[int, int]
    total_profiles: int


@dataclass(frozen=True, slots=True)
class TieGroupMember:
    candidate_id: str
    last_shown_at: datetime | None
    shown_count: int


@dataclass(frozen=True, slots=True)
class TieGroup:
    tier: int
    position_rule: PositionRule
    score: float
    members: list[TieGroupMember]

    @property
    def key(self) -> str:
        return f"{self.tier}-{self.position_rule.value}-{self.score:g}"


@dataclass(frozen=True, slots=True)
class FairnessStats:
    total_profiles: int
    tie_group_sizes: dict[int, list[int]]
    tied_groups: list[TieGroup] = field(default_factory=list)

    @property
    def groups_with_ties(self) -> int:
        return len(self.tied_groups)

    @property
    def total_tied_profiles(self) -> int:
        return sum(len(group.members) for group in self.tied_groups)


@dataclass(frozen=True, slots=True)
class RotationIteration:
    iteration: int
    served_at: datetime
    candidate_ids: list[str]


class FeedService:
    """Per-request orchestration of tier resolution, rotation ranking and paging."""

    def __init__(
        self,
        listings: ListingSource,
        store: FairnessSignalStore,
        *,
        clock: Clock = utc_now,
        max_page_size: int = 100,
        tier_count: int = 5,
        max_rotation_iterations: int = 50,
        sessions: FeedSessionStore | None = None,
    ) -> None:
        self.listings = listings
        self.store = store
        self.sessions = sessions if sessions is not None else InMemorySessionStore()
        self.clock = clock
        self.max_page_size = max(1, max_page_size)
        self.tier_count = max(1, tier_count)
        self.max_rotation_iterations = max(1, max_rotation_iterations)

    def validate_paging(self, page: int, page_size: int) -> None:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise InvalidPagingParameterError("page must be an integer >= 1")
        if isinstance(page_size, bool) or not isinstance(page_size, int) or not 1 <= page_size <= self.max_page_size:
            raise InvalidPagingParameterError(f"pageSize must be an integer between 1 and {self.max_page_size}")

    async def prepare_home_feed(
        self,
        page: int,
        page_size: int,
        *,
        rotation_anchor: str | None = None,
    ) -> PreparedPage:
        """Rank and slice one page without recording exposure.

        The first request of a browsing session pins the current total order
        under a new rotation anchor. Passing that anchor back serves later
        pages from the pinned order, so exposure recorded for page 1 cannot
        pull page-1 listings into page 2. Unknown or expired anchors start a
        fresh session.

        The returned page must be committed once it has been delivered.
        """
        self.validate_paging(page, page_size)
        with tracer.start_as_current_span("feed.prepare") as span:
            span.set_attribute("feed.page", page)
            span.set_attribute("feed.page_size", page_size)
            now = self.clock()
            candidates = await self.listings.list_visible_candidates(now=now)
            tiers = resolve_effective_tiers(candidates)
            signals, degraded = await self._load_signals([effective.candidate_id for effective in tiers])
            live_order = rank_candidates(tiers, signals)

            session = await self._resume_session(rotation_anchor, now) if rotation_anchor else None
            total_order: list[RankedCandidate | None]
            if session is None:
                session = await self._start_session(live_order, now)
                total_order = list(live_order)
            else:
                by_id = {row.candidate_id: row for row in live_order}
                total_order = [
                    by_id[candidate_id] if candidate_id is not None else None
                    for candidate_id in anchored_order(session.candidate_ids, list(by_id))
                ]

            page_slice = plan_page(total_order, page, page_size)
            span.set_attribute("feed.total_count", page_slice.total_count)
            span.set_attribute("feed.signals_degraded", degraded)
            span.set_attribute("feed.session_resumed", session is not None and session.anchor == rotation_anchor)

        payloads = {candidate.id: candidate.payload for candidate in candidates}
        return PreparedPage(
            page_slice,
            store=self.store,
            clock=self.clock,
            signals_degraded=degraded,
            rotation_anchor=session.anchor if session is not None else None,
            payloads={candidate_id: payloads[candidate_id] for candidate_id in page_slice.served_ids},
        )

    async def get_home_feed(
        self,
        page: int,
        page_size: int,
        *,
        rotation_anchor: str | None = None,
    ) -> PreparedPage:
        prepared = await self.prepare_home_feed(page, page_size, rotation_anchor=rotation_anchor)
        await commit_quietly(prepared)
        return prepared

    async def get_feed_stats(self) -> FeedStats:
        tiers = await self._snapshot_tiers()
        counts: dict[int, int] = {level: 0 for level in range(1, self.tier_count + 1)}
        for effective in tiers:
            counts[effective.tier] = counts.get(effective.tier, 0) + 1
        return FeedStats(profiles_by_level=dict(sorted(counts.items())), total_profiles=len(tiers))

    async def get_fairness_stats(self) -> FairnessStats:
        tiers = await self._snapshot_tiers()
        groups: dict[tuple[int, PositionRule, float], list[EffectiveTier]] = defaultdict(list)
        for effective in tiers:
            groups[tie_group_key(effective)].append(effective)

        sizes: dict[int, list[int]] = defaultdict(list)
        for (tier, _, _), members in groups.items():
            sizes[tier].append(len(members))

        tied_keys = sorted(
            (key for key, members in groups.items() if len(members) > 1),
            key=lambda key: (key[0], POSITION_GROUP_ORDER[key[1]], -key[2]),
        )
        tied_ids = [effective.candidate_id for key in tied_keys for effective in groups[key]]
        signals, degraded = await self._load_signals(tied_ids)

        tied_groups = [
            TieGroup(
                tier=key[0],
                position_rule=key[1],
                score=key[2],
                members=[
                    _tie_group_member(effective.candidate_id, signals.get(effective.candidate_id), degraded)
                    for effective in sorted(groups[key], key=lambda row: row.candidate_id)
                ],
            )
            for key in tied_keys
        ]
        return FairnessStats(
            total_profiles=len(tiers),
            tie_group_sizes={tier: sorted(values, reverse=True) for tier, values in sorted(sizes.items())},
            tied_groups=tied_groups,
        )

    async def reset_fairness_signals(self) -> int:
        affected = await self.store.reset()
        logger.info("fairness signals reset by maintenance call affected=%s", affected)
        return affected

    async def run_rotation_trial(self, iterations: int, page_size: int) -> list[RotationIteration]:
        """Serve page 1 repeatedly and report who was shown each time."""
        if isinstance(iterations, bool) or not isinstance(iterations, int) or not 1 <= iterations <= self.max_rotation_iterations:
            raise InvalidPagingParameterError(
                f"iterations must be an integer between 1 and {self.max_rotation_iterations}"
            )
        self.validate_paging(1, page_size)

        results: list[RotationIteration] = []
        for iteration in range(1, iterations + 1):
            prepared = await self.get_home_feed(1, page_size)
            results.append(
                RotationIteration(
                    iteration=iteration,
                    served_at=self.clock(),
                    candidate_ids=prepared.slice.served_ids,
                )
            )
        return results

    async def _start_session(self, live_order: list[RankedCandidate], now: datetime) -> FeedSession | None:
        session = new_session([row.candidate_id for row in live_order], now)
        try:
            await self.sessions.save_session(session)
        except StoreUnavailableError as exc:
            logger.warning("failed to pin session order; serving without rotation anchor: %s", exc)
            return None
        return session

    async def _resume_session(self, anchor: str, now: datetime) -> FeedSession | None:
        try:
            session = await self.sessions.load_session(anchor, now=now)
        except StoreUnavailableError as exc:
            logger.warning("failed to load session order anchor=%s: %s", anchor, exc)
            return None
        if session is None:
            logger.info("rotation anchor unknown or expired anchor=%s; starting a new session", anchor)
        return session

    async def _snapshot_tiers(self) -> list[EffectiveTier]:
        candidates: list[Candidate] = await self.listings.list_visible_candidates(now=self.clock())
        return resolve_effective_tiers(candidates)

    async def _load_signals(self, candidate_ids: list[str]) -> tuple[dict[str, FairnessSignal], bool]:
        if not candidate_ids:
            return {}, False
        try:
            return await self.store.get_many(candidate_ids), False
        except StoreUnavailableError as exc:
            logger.warning("fairness store unavailable; ranking as never-shown: %s", exc)
            return {candidate_id: ZERO_SIGNAL for candidate_id in candidate_ids}, True


async def commit_quietly(prepared: PreparedPage) -> None:
    try:
        await prepared.commit()
    except StoreUnavailableError as exc:
        logger.warning(
            "failed to record exposure page=%s served=%s: %s",
            prepared.slice.page,
            len(prepared.slice.items),
            exc,
        )


def _tie_group_member(candidate_id: str, signal: FairnessSignal | None, degraded: bool) -> TieGroupMember:
    if degraded or signal is None or signal.never_shown:
        return TieGroupMember(candidate_id=candidate_id, last_shown_at=None, shown_count=0)
    return TieGroupMember(candidate_id=candidate_id, last_shown_at=signal.last_shown_at, shown_count=signal.shown_count)


@lru_cache
def get_feed_service() -> FeedService:
    settings = get_settings()
    catalog = ListingCatalog(tier_count=settings.feed_tier_count)
    if settings.database_url:
        repository = get_repository()
        listings: ListingSource = repository
        store: FairnessSignalStore = repository
        sessions: FeedSessionStore = repository
    else:
        logger.info("HF_DATABASE_URL not set; serving the feed from in-memory stores")
        seed = demo_listings() if settings.feed_seed_demo_listings else []
        listings = InMemoryListingStore(seed, catalog=catalog)
        store = InMemoryFairnessStore()
        sessions = InMemorySessionStore(
            ttl=timedelta(seconds=settings.feed_session_ttl_seconds),
            max_entries=settings.feed_session_max_entries,
        )
    return FeedService(
        listings,
        store,
        sessions=sessions,
        max_page_size=settings.feed_max_page_size,
        tier_count=settings.feed_tier_count,
        max_rotation_iterations=settings.feed_rotation_max_iterations,
    )
