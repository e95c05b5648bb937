from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PositionRuleName = Literal["FRONT", "BY_SCORE", "BACK"]


class FeedModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeedProfileOut(FeedModel):
    id: str
    tier: int
    score: float
    position_rule: PositionRuleName
    payload: dict[str, Any] = Field(default_factory=dict)


class PaginationOut(FeedModel):
    current_page: int
    page_size: int
    total_pages: int
    total_count: int
    has_next_page: bool
    has_prev_page: bool
    rotation_anchor: str | None = None


class LevelSeparatorOut(FeedModel):
    level: int
    start_index: int
    count: int


class HomeFeedMetadataOut(FeedModel):
    level_separators: list[LevelSeparatorOut] = Field(default_factory=list)
    signals_degraded: bool = False


class HomeFeedOut(FeedModel):
    profiles: list[FeedProfileOut] = Field(default_factory=list)
    pagination: PaginationOut
    metadata: HomeFeedMetadataOut


class HomeFeedResponse(FeedModel):
    success: bool = True
    data: HomeFeedOut


class FeedStatsOut(FeedModel):
    profiles_by_level: dict[int, int]
    total_profiles: int


class FeedStatsResponse(FeedModel):
    success: bool = True
    data: FeedStatsOut


class TieGroupMemberOut(FeedModel):
    id: str
    last_shown_at: datetime | None = None
    shown_count: int = 0


class TieGroupOut(FeedModel):
    key: str
    tier: int
    position_rule: PositionRuleName
    score: float
    count: int
    profiles: list[TieGroupMemberOut] = Field(default_factory=list)


class FairnessSummaryOut(FeedModel):
    groups_with_ties: int
    total_tied_profiles: int


class FairnessStatsOut(FeedModel):
    total_profiles: int
    tie_group_sizes: dict[int, list[int]]
    tied_groups: list[TieGroupOut] = Field(default_factory=list)
    summary: FairnessSummaryOut


class FairnessStatsResponse(FeedModel):
    success: bool = True
    data: FairnessStatsOut


class ResetOut(FeedModel):
    modified_count: int


class ResetResponse(FeedModel):
    success: bool = True
    data: ResetOut


class RotationIterationOut(FeedModel):
    iteration: int
    timestamp: datetime
    profiles: list[str] = Field(default_factory=list)


class RotationTrialOut(FeedModel):
    iterations: list[RotationIterationOut] = Field(default_factory=list)
    total_iterations: int
    profiles_per_page: int


class RotationTrialResponse(FeedModel):
    success: bool = True
    data: RotationTrialOut
