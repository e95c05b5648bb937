from __future__ import annotations

import asyncio
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from homefeed.services.errors import InvalidPagingParameterError, StoreUnavailableError
from homefeed.services.fairness import InMemoryFairnessStore
from homefeed.services.feed import FeedService
from homefeed.services.models import BoostEffect, Candidate, FairnessSignal, PositionRule
from homefeed.services.sessions import InMemorySessionStore

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START, *, step: timedelta = timedelta(0)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class StaticListings:
    def __init__(self, candidates: Sequence[Candidate]) -> None:
        self.candidates = list(candidates)
        self.calls = 0

    def add(self, candidate: Candidate) -> None:
        self.candidates.append(candidate)

    async def list_visible_candidates(self, *, now: datetime) -> list[Candidate]:
        self.calls += 1
        return [candidate for candidate in self.candidates if candidate.visible]


class UnavailableStore:
    def __init__(self) -> None:
        self.touch_attempts = 0

    async def get(self, candidate_id: str) -> FairnessSignal:
        raise StoreUnavailableError("fairness signals unavailable")

    async def get_many(self, candidate_ids: Sequence[str]) -> dict[str, FairnessSignal]:
        raise StoreUnavailableError("fairness signals unavailable")

    async def touch(self, candidate_ids: Sequence[str], at: datetime) -> None:
        self.touch_attempts += 1
        raise StoreUnavailableError("fairness signals unavailable")

    async def reset(self) -> int:
        raise StoreUnavailableError("fairness signals unavailable")


def test_get_home_feed_touches_only_the_served_page() -> None:
    store = InMemoryFairnessStore()
    service = _service([_candidate(f"c{index:02d}") for index in range(20)], store=store)

    prepared = asyncio.run(service.get_home_feed(2, 5))

    assert prepared.slice.served_ids == ["c05", "c06", "c07", "c08", "c09"]
    snapshot = store.snapshot()
    assert sorted(snapshot) == ["c05", "c06", "c07", "c08", "c09"]
    assert all(signal.shown_count == 1 and signal.last_shown_at == START for signal in snapshot.values())


def test_tied_candidates_keep_id_order_until_a_new_arrival_jumps_ahead() -> None:
    store = InMemoryFairnessStore()
    listings = StaticListings([_candidate(candidate_id, bonus=10) for candidate_id in ("A", "B", "C")])
    service = FeedService(listings, store, clock=FakeClock())

    first = asyncio.run(service.get_home_feed(1, 3))
    assert first.slice.served_ids == ["A", "B", "C"]
    assert {candidate_id: signal.shown_count for candidate_id, signal in store.snapshot().items()} == {
        "A": 1,
        "B": 1,
        "C": 1,
    }

    second = asyncio.run(service.get_home_feed(1, 3))
    assert second.slice.served_ids == ["A", "B", "C"]

    listings.add(_candidate("D", bonus=10))
    third = asyncio.run(service.get_home_feed(1, 3))
    assert third.slice.served_ids[0] == "D"
    assert third.slice.served_ids == ["D", "A", "B"]


def test_full_page_requests_converge_to_equal_exposure() -> None:
    store = InMemoryFairnessStore()
    clock = FakeClock(step=timedelta(seconds=1))
    service = FeedService(StaticListings([_candidate(f"t{index}") for index in range(4)]), store, clock=clock)

    for _ in range(3 * 4):
        asyncio.run(service.get_home_feed(1, 4))

    counts = [signal.shown_count for signal in store.snapshot().values()]
    assert counts == [12, 12, 12, 12]


def test_partial_page_requests_rotate_through_the_tied_group() -> None:
    store = InMemoryFairnessStore()
    clock = FakeClock(step=timedelta(seconds=1))
    service = FeedService(StaticListings([_candidate(f"t{index}") for index in range(4)]), store, clock=clock)

    served = [asyncio.run(service.get_home_feed(1, 2)).slice.served_ids for _ in range(7)]

    assert served[0] == ["t0", "t1"]
    assert served[1] == ["t2", "t3"]
    assert served[2] == ["t0", "t1"]
    counts = [signal.shown_count for signal in store.snapshot().values()]
    assert max(counts) - min(counts) <= 1


def test_boosted_candidates_stay_ahead_of_rotation() -> None:
    store = InMemoryFairnessStore()
    listings = StaticListings(
        [
            _candidate("plain-a"),
            _candidate("plain-b"),
            _candidate("bumped", base_tier=2, boosts=(BoostEffect(tier_delta=-1, priority_bonus=150),)),
            _candidate("fresh", boosts=(BoostEffect(position_rule=PositionRule.FRONT),)),
            _candidate("impulse", base_tier=3, boosts=(BoostEffect(set_tier_to=1, position_rule=PositionRule.BACK),)),
        ]
    )
    service = FeedService(listings, store, clock=FakeClock(step=timedelta(seconds=1)))

    for _ in range(3):
        prepared = asyncio.run(service.get_home_feed(1, 5))
        assert prepared.slice.served_ids[:2] == ["fresh", "bumped"]
        assert prepared.slice.served_ids[-1] == "impulse"


def test_out_of_range_page_is_empty_and_touches_nothing() -> None:
    store = InMemoryFairnessStore()
    service = _service([_candidate("a"), _candidate("b")], store=store)

    prepared = asyncio.run(service.get_home_feed(4, 5))

    assert prepared.slice.items == []
    assert prepared.slice.has_more is False
    assert prepared.slice.total_count == 2
    assert store.snapshot() == {}


@pytest.mark.parametrize(("page", "page_size"), [(0, 10), (-1, 10), (1, 0), (1, 101), (True, 10)])
def test_invalid_paging_is_rejected_before_ranking(page: int, page_size: int) -> None:
    store = InMemoryFairnessStore()
    listings = StaticListings([_candidate("a")])
    service = FeedService(listings, store, clock=FakeClock())

    with pytest.raises(InvalidPagingParameterError):
        asyncio.run(service.get_home_feed(page, page_size))

    assert listings.calls == 0
    assert store.snapshot() == {}


def test_prepared_page_records_nothing_until_committed() -> None:
    store = InMemoryFairnessStore()
    service = _service([_candidate("a"), _candidate("b")], store=store)

    prepared = asyncio.run(service.prepare_home_feed(1, 2))

    assert prepared.slice.served_ids == ["a", "b"]
    assert store.snapshot() == {}
    asyncio.run(prepared.commit())
    assert sorted(store.snapshot()) == ["a", "b"]


def test_cancelled_delivery_records_no_exposure() -> None:
    store = InMemoryFairnessStore()
    service = _service([_candidate("a"), _candidate("b")], store=store)

    async def scenario() -> None:
        delivered = asyncio.Event()

        async def serve() -> None:
            prepared = await service.prepare_home_feed(1, 2)
            await delivered.wait()
            await prepared.commit()

        task = asyncio.create_task(serve())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert store.snapshot() == {}


def test_unavailable_store_degrades_to_pure_score_order() -> None:
    store = UnavailableStore()
    service = FeedService(
        StaticListings([_candidate("b"), _candidate("a"), _candidate("rich", bonus=50)]),
        store,
        clock=FakeClock(),
    )

    prepared = asyncio.run(service.get_home_feed(1, 3))

    assert prepared.slice.served_ids == ["rich", "a", "b"]
    assert prepared.signals_degraded is True
    assert store.touch_attempts == 1


def test_concurrent_requests_record_every_exposure() -> None:
    store = InMemoryFairnessStore()
    service = _service([_candidate(f"c{index}") for index in range(5)], store=store)

    def serve(_: int) -> list[str]:
        return asyncio.run(service.get_home_feed(1, 5)).slice.served_ids

    with ThreadPoolExecutor(max_workers=8) as pool:
        pages = list(pool.map(serve, range(16)))

    assert all(sorted(page) == [f"c{index}" for index in range(5)] for page in pages)
    assert {signal.shown_count for signal in store.snapshot().values()} == {16}


def test_reset_fairness_signals_is_idempotent() -> None:
    store = InMemoryFairnessStore()
    service = _service([_candidate("a"), _candidate("b"), _candidate("c")], store=store)
    asyncio.run(service.get_home_feed(1, 3))

    assert asyncio.run(service.reset_fairness_signals()) == 3
    assert asyncio.run(service.reset_fairness_signals()) == 0
    assert store.snapshot() == {}


def test_get_feed_stats_counts_effective_tiers_without_side_effects() -> None:
    store = InMemoryFairnessStore()
    service = _service(
        [
            _candidate("a", base_tier=1),
            _candidate("b", base_tier=2),
            _candidate("c", base_tier=3, boosts=(BoostEffect(tier_delta=-1),)),
            _candidate("hidden", base_tier=1, visible=False),
            _candidate("deep", base_tier=7),
        ],
        store=store,
    )

    stats = asyncio.run(service.get_feed_stats())

    assert stats.profiles_by_level == {1: 1, 2: 2, 3: 0, 4: 0, 5: 0, 7: 1}
    assert stats.total_profiles == 4
    assert store.snapshot() == {}


def test_get_fairness_stats_reports_tie_group_sizes() -> None:
    store = InMemoryFairnessStore()
    service = _service(
        [
            _candidate("a", bonus=10),
            _candidate("b", bonus=10),
            _candidate("c", bonus=10),
            _candidate("d"),
            _candidate("e", base_tier=2),
            _candidate("f", base_tier=2),
        ],
        store=store,
    )
    asyncio.run(service.get_home_feed(1, 1))

    stats = asyncio.run(service.get_fairness_stats())

    assert stats.total_profiles == 6
    assert stats.tie_group_sizes == {1: [3, 1], 2: [2]}
    assert stats.groups_with_ties == 2
    assert stats.total_tied_profiles == 5
    first_group = stats.tied_groups[0]
    assert first_group.tier == 1
    assert first_group.score == 10
    assert [member.candidate_id for member in first_group.members] == ["a", "b", "c"]
    assert first_group.members[0].shown_count == 1
    assert first_group.members[1].last_shown_at is None
    assert sorted(store.snapshot()) == ["a"]


def test_run_rotation_trial_serves_page_one_repeatedly() -> None:
    store = InMemoryFairnessStore()
    service = FeedService(
        StaticListings([_candidate("A"), _candidate("B"), _candidate("C")]),
        store,
        clock=FakeClock(step=timedelta(seconds=1)),
    )

    results = asyncio.run(service.run_rotation_trial(3, 2))

    assert [row.iteration for row in results] == [1, 2, 3]
    assert results[0].candidate_ids == ["A", "B"]
    assert results[1].candidate_ids[0] == "C"
    assert sum(signal.shown_count for signal in store.snapshot().values()) == 6


def test_run_rotation_trial_rejects_out_of_bounds_iterations() -> None:
    service = _service([_candidate("a")], store=InMemoryFairnessStore())

    with pytest.raises(InvalidPagingParameterError):
        asyncio.run(service.run_rotation_trial(0, 2))
    with pytest.raises(InvalidPagingParameterError):
        asyncio.run(service.run_rotation_trial(51, 2))


def _service(candidates: Sequence[Candidate], *, store: InMemoryFairnessStore) -> FeedService:
    return FeedService(StaticListings(candidates), store, clock=FakeClock())


def _candidate(
    candidate_id: str,
    *,
    base_tier: int = 1,
    bonus: float = 0,
    boosts: tuple[BoostEffect, ...] = (),
    visible: bool = True,
) -> Candidate:
    active = boosts + ((BoostEffect(priority_bonus=bonus),) if bonus else ())
    return Candidate(id=candidate_id, base_tier=base_tier, active_boosts=active, visible=visible)


def test_anchored_session_pages_are_disjoint_after_page_one_commits() -> None:
    store = InMemoryFairnessStore()
    ids = [f"c{index}" for index in range(10)]
    service = FeedService(StaticListings([_candidate(candidate_id) for candidate_id in ids]), store, clock=FakeClock())

    first = asyncio.run(service.get_home_feed(1, 5))
    second = asyncio.run(service.get_home_feed(2, 5, rotation_anchor=first.rotation_anchor))

    assert first.rotation_anchor is not None
    assert second.rotation_anchor == first.rotation_anchor
    assert not set(first.slice.served_ids) & set(second.slice.served_ids)
    assert first.slice.served_ids + second.slice.served_ids == ids
    assert all(signal.shown_count == 1 for signal in store.snapshot().values())


def test_anchored_session_survives_exposure_from_other_sessions() -> None:
    store = InMemoryFairnessStore()
    clock = FakeClock(step=timedelta(seconds=1))
    ids = [f"c{index}" for index in range(9)]
    service = FeedService(StaticListings([_candidate(candidate_id) for candidate_id in ids]), store, clock=clock)

    mine = asyncio.run(service.get_home_feed(1, 3))
    asyncio.run(service.get_home_feed(1, 3))
    asyncio.run(service.get_home_feed(1, 3))
    second = asyncio.run(service.get_home_feed(2, 3, rotation_anchor=mine.rotation_anchor))
    third = asyncio.run(service.get_home_feed(3, 3, rotation_anchor=mine.rotation_anchor))

    assert mine.slice.served_ids + second.slice.served_ids + third.slice.served_ids == ids


def test_unknown_rotation_anchor_starts_a_new_session() -> None:
    service = _service([_candidate("a"), _candidate("b")], store=InMemoryFairnessStore())

    prepared = asyncio.run(service.prepare_home_feed(1, 1, rotation_anchor="stale-anchor"))

    assert prepared.slice.served_ids == ["a"]
    assert prepared.rotation_anchor not in (None, "stale-anchor")


def test_expired_rotation_anchor_falls_back_to_live_order() -> None:
    store = InMemoryFairnessStore()
    clock = FakeClock()
    sessions = InMemorySessionStore(ttl=timedelta(minutes=5))
    service = FeedService(
        StaticListings([_candidate(f"c{index}") for index in range(4)]),
        store,
        clock=clock,
        sessions=sessions,
    )

    first = asyncio.run(service.get_home_feed(1, 2))
    clock.advance(301)
    second = asyncio.run(service.get_home_feed(2, 2, rotation_anchor=first.rotation_anchor))

    assert second.rotation_anchor != first.rotation_anchor
    assert second.slice.served_ids == ["c0", "c1"]


def test_anchored_session_keeps_positions_when_listings_change() -> None:
    store = InMemoryFairnessStore()
    listings = StaticListings([_candidate(f"c{index}") for index in range(6)])
    service = FeedService(listings, store, clock=FakeClock())

    first = asyncio.run(service.get_home_feed(1, 2))
    listings.candidates = [candidate for candidate in listings.candidates if candidate.id != "c3"]
    listings.add(_candidate("a-new"))
    second = asyncio.run(service.get_home_feed(2, 2, rotation_anchor=first.rotation_anchor))
    third = asyncio.run(service.get_home_feed(3, 2, rotation_anchor=first.rotation_anchor))
    fourth = asyncio.run(service.get_home_feed(4, 2, rotation_anchor=first.rotation_anchor))

    assert first.slice.served_ids == ["c0", "c1"]
    assert second.slice.served_ids == ["c2"]
    assert third.slice.served_ids == ["c4", "c5"]
    assert fourth.slice.served_ids == ["a-new"]
    assert fourth.slice.total_count == 7
