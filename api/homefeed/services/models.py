from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

EPOCH_ZERO = datetime(1970, 1, 1, tzinfo=timezone.utc)


class PositionRule(str, Enum):
    FRONT = "FRONT"
    BY_SCORE = "BY_SCORE"
    BACK = "BACK"


@dataclass(frozen=True, slots=True)
class BoostEffect:
    """Effect of one active paid upgrade on a candidate.

    ``set_tier_to`` is an absolute override and is applied before any
    ``tier_delta``. ``priority_bonus`` only reorders within a tier.
    """

    tier_delta: int | None = None
    set_tier_to: int | None = None
    priority_bonus: float = 0.0
    position_rule: PositionRule = PositionRule.BY_SCORE
    code: str | None = None


@dataclass(frozen=True, slots=True)
class Candidate:
    id: str
    base_tier: int
    active_boosts: tuple[BoostEffect, ...] = ()
    visible: bool = True
    payload: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class EffectiveTier:
    candidate_id: str
    tier: int
    score: float
    position_rule: PositionRule = PositionRule.BY_SCORE


@dataclass(frozen=True, slots=True)
class FairnessSignal:
    last_shown_at: datetime = EPOCH_ZERO
    shown_count: int = 0

    @property
    def never_shown(self) -> bool:
        return self.shown_count == 0


ZERO_SIGNAL = FairnessSignal()
