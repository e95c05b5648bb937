from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

from homefeed.services.models import ZERO_SIGNAL, EffectiveTier, FairnessSignal, PositionRule

POSITION_GROUP_ORDER: dict[PositionRule, int] = {
    PositionRule.FRONT: 0,
    PositionRule.BY_SCORE: 1,
    PositionRule.BACK: 2,
}


@dataclass(frozen=True, slots=True)
class RankedCandidate:
    effective: EffectiveTier
    signal: FairnessSignal

    @property
    def candidate_id(self) -> str:
        return self.effective.candidate_id

    @property
    def tier(self) -> int:
        return self.effective.tier


def rotation_sort_key(effective: EffectiveTier, signal: FairnessSignal) -> tuple[int, int, float, int, datetime, str]:
    return (
        effective.tier,
        POSITION_GROUP_ORDER[effective.position_rule],
        -effective.score,
        0 if signal.never_shown else 1,
        signal.last_shown_at,
        effective.candidate_id,
    )


def rank_candidates(
    tiers: Sequence[EffectiveTier],
    signals: Mapping[str, FairnessSignal],
) -> list[RankedCandidate]:
    """Produce the strict total order over all candidates.

    Order: tier asc, FRONT/BY_SCORE/BACK, score desc, never-shown first,
    least recently shown first, then id asc. The id is unique, so no two
    entries ever compare equal.
    """
    seen: set[str] = set()
    for effective in tiers:
        if effective.candidate_id in seen:
            raise ValueError(f"duplicate candidate id in ranking input: {effective.candidate_id}")
        seen.add(effective.candidate_id)

    ranked = [
        RankedCandidate(effective=effective, signal=signals.get(effective.candidate_id, ZERO_SIGNAL))
        for effective in tiers
    ]
    ranked.sort(key=lambda row: rotation_sort_key(row.effective, row.signal))
    return ranked


def tie_group_key(effective: EffectiveTier) -> tuple[int, PositionRule, float]:
    return (effective.tier, effective.position_rule, effective.score)
