from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from homefeed.services.errors import CatalogValidationError
from homefeed.services.models import BoostEffect, Candidate, PositionRule

logger = logging.getLogger(__name__)

_LISTING_CONTROL_KEYS = {"id", "plan_code", "base_tier", "visible", "is_active", "plan_expires_at", "upgrades"}


@dataclass(frozen=True, slots=True)
class PlanDefinition:
    code: str
    level: int


@dataclass(frozen=True, slots=True)
class UpgradeDefinition:
    code: str
    effect: BoostEffect
    requires: tuple[str, ...] = ()
    duration_hours: int | None = None


DEFAULT_PLANS: tuple[PlanDefinition, ...] = (
    PlanDefinition(code="DIAMANTE", level=1),
    PlanDefinition(code="ORO", level=2),
    PlanDefinition(code="ESMERALDA", level=3),
    PlanDefinition(code="ZAFIRO", level=4),
    PlanDefinition(code="AMATISTA", level=5),
)

DEFAULT_UPGRADES: tuple[UpgradeDefinition, ...] = (
    UpgradeDefinition(
        code="DESTACADO",
        effect=BoostEffect(tier_delta=-1, priority_bonus=150, code="DESTACADO"),
        duration_hours=24,
    ),
    UpgradeDefinition(
        code="IMPULSO",
        effect=BoostEffect(set_tier_to=1, priority_bonus=10, position_rule=PositionRule.BACK, code="IMPULSO"),
        requires=("DESTACADO",),
        duration_hours=12,
    ),
    UpgradeDefinition(
        code="JUST_PUBLISHED",
        effect=BoostEffect(position_rule=PositionRule.FRONT, code="JUST_PUBLISHED"),
        duration_hours=2,
    ),
)


class ListingCatalog:
    """Turns raw listing documents into ranking candidates.

    This is the only place loosely typed plan and upgrade data is read; the
    ranking core only ever sees ``Candidate`` and ``BoostEffect`` values.
    """

    def __init__(
        self,
        *,
        plans: Iterable[PlanDefinition] = DEFAULT_PLANS,
        upgrades: Iterable[UpgradeDefinition] = DEFAULT_UPGRADES,
        tier_count: int = 5,
    ) -> None:
        self.plans = {plan.code: plan for plan in plans}
        self.upgrades = {upgrade.code: upgrade for upgrade in upgrades}
        self.tier_count = max(1, tier_count)

    def build_candidate(self, document: Mapping[str, Any], *, now: datetime) -> Candidate:
        candidate_id = _coerce_text(document.get("id"))
        if not candidate_id:
            raise CatalogValidationError("listing id must be a non-empty string")

        return Candidate(
            id=candidate_id,
            base_tier=self._resolve_base_tier(candidate_id, document),
            active_boosts=self._resolve_active_boosts(candidate_id, document.get("upgrades"), now=now),
            visible=self._resolve_visible(document, now=now),
            payload={key: value for key, value in document.items() if key not in _LISTING_CONTROL_KEYS},
        )

    def build_candidates(self, documents: Iterable[Mapping[str, Any]], *, now: datetime) -> list[Candidate]:
        candidates: list[Candidate] = []
        for document in documents:
            try:
                candidates.append(self.build_candidate(document, now=now))
            except CatalogValidationError as exc:
                logger.warning("skipping malformed listing id=%s: %s", document.get("id"), exc)
        return candidates

    def _resolve_base_tier(self, candidate_id: str, document: Mapping[str, Any]) -> int:
        raw_tier = document.get("base_tier")
        if raw_tier is not None:
            if isinstance(raw_tier, bool) or not isinstance(raw_tier, int) or raw_tier < 1:
                raise CatalogValidationError(f"base_tier must be a positive integer, got {raw_tier!r}")
            return raw_tier

        plan_code = _coerce_text(document.get("plan_code"))
        plan = self.plans.get(plan_code) if plan_code else None
        if plan is None:
            logger.info("listing id=%s has unknown plan=%s; using lowest tier", candidate_id, plan_code)
            return self.tier_count
        return plan.level

    def _resolve_active_boosts(self, candidate_id: str, raw_upgrades: Any, *, now: datetime) -> tuple[BoostEffect, ...]:
        if raw_upgrades is None:
            return ()
        if not isinstance(raw_upgrades, list):
            raise CatalogValidationError("upgrades must be a list")

        active: list[UpgradeDefinition] = []
        for raw in raw_upgrades:
            if not isinstance(raw, Mapping):
                raise CatalogValidationError("upgrade entries must be objects")
            code = _coerce_text(raw.get("code"))
            start_at = parse_timestamp(raw.get("start_at"))
            end_at = parse_timestamp(raw.get("end_at"))
            if start_at is None or end_at is None or not (start_at <= now < end_at):
                continue
            definition = self.upgrades.get(code) if code else None
            if definition is None:
                logger.warning("listing id=%s has unknown upgrade code=%s; ignoring", candidate_id, code)
                continue
            active.append(definition)

        active_codes = {definition.code for definition in active}
        effects: list[BoostEffect] = []
        for definition in active:
            missing = [code for code in definition.requires if code not in active_codes]
            if missing:
                logger.info(
                    "listing id=%s upgrade=%s inactive; missing requirements=%s",
                    candidate_id,
                    definition.code,
                    missing,
                )
                continue
            effects.append(definition.effect)
        return tuple(effects)

    @staticmethod
    def _resolve_visible(document: Mapping[str, Any], *, now: datetime) -> bool:
        if not document.get("visible", True):
            return False
        if not document.get("is_active", True):
            return False
        expires_at = parse_timestamp(document.get("plan_expires_at"))
        if expires_at is not None and expires_at <= now:
            return False
        return True


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
