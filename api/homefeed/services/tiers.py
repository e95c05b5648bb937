from __future__ import annotations

import logging
from collections.abc import Iterable

from homefeed.services.models import BoostEffect, Candidate, EffectiveTier, PositionRule

logger = logging.getLogger(__name__)

BEST_TIER = 1


def resolve_effective_tier(candidate: Candidate) -> EffectiveTier:
    """Compute the tier, score and position rule a candidate ranks with.

    Overrides are applied first, then deltas compose on top of the result.
    More than one active override is ambiguous: the most favorable (lowest)
    tier wins and a warning is logged.
    """
    boosts = candidate.active_boosts
    tier = candidate.base_tier

    overrides = [boost for boost in boosts if boost.set_tier_to is not None]
    if overrides:
        chosen = min(overrides, key=lambda boost: boost.set_tier_to)
        if len(overrides) > 1:
            logger.warning(
                "ambiguous boost override candidate_id=%s codes=%s tiers=%s chosen_tier=%s",
                candidate.id,
                [boost.code for boost in overrides],
                sorted(boost.set_tier_to for boost in overrides),
                chosen.set_tier_to,
            )
        tier = chosen.set_tier_to

    for boost in boosts:
        if boost.tier_delta is not None:
            tier += boost.tier_delta

    return EffectiveTier(
        candidate_id=candidate.id,
        tier=max(BEST_TIER, tier),
        score=sum(_normalized_bonus(boost) for boost in boosts),
        position_rule=_resolve_position_rule(boosts),
    )


def resolve_effective_tiers(candidates: Iterable[Candidate]) -> list[EffectiveTier]:
    return [resolve_effective_tier(candidate) for candidate in candidates if candidate.visible]


def _normalized_bonus(boost: BoostEffect) -> float:
    bonus = boost.priority_bonus or 0.0
    return bonus if bonus > 0 else 0.0


def _resolve_position_rule(boosts: tuple[BoostEffect, ...]) -> PositionRule:
    rules = {boost.position_rule for boost in boosts}
    if PositionRule.FRONT in rules:
        return PositionRule.FRONT
    if PositionRule.BACK in rules:
        return PositionRule.BACK
    return PositionRule.BY_SCORE
