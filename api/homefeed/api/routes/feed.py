from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status as http_status

from homefeed.core.config import Settings, get_settings
from homefeed.schemas.feed import (
    FairnessStatsOut,
    FairnessStatsResponse,
    FairnessSummaryOut,
    FeedProfileOut,
    FeedStatsOut,
    FeedStatsResponse,
    HomeFeedMetadataOut,
    HomeFeedOut,
    HomeFeedResponse,
    LevelSeparatorOut,
    PaginationOut,
    ResetOut,
    ResetResponse,
    RotationIterationOut,
    RotationTrialOut,
    RotationTrialResponse,
    TieGroupMemberOut,
    TieGroupOut,
)
from homefeed.services.errors import (
    InvalidPagingParameterError,
    ListingSourceUnavailableError,
    StoreUnavailableError,
)
from homefeed.services.feed import FeedService, commit_quietly, get_feed_service
from homefeed.services.pager import PreparedPage, level_separators

router = APIRouter()


@router.get("/home", response_model=HomeFeedResponse)
async def get_home_feed(
    background_tasks: BackgroundTasks,
    page: int = Query(default=1),
    page_size: int | None = Query(default=None, alias="pageSize"),
    rotation_anchor: str | None = Query(default=None, alias="rotationAnchor", max_length=64),
    service: FeedService = Depends(get_feed_service),
    settings: Settings = Depends(get_settings),
) -> HomeFeedResponse:
    size = page_size if page_size is not None else settings.feed_default_page_size
    try:
        prepared = await service.prepare_home_feed(page, size, rotation_anchor=rotation_anchor)
    except InvalidPagingParameterError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ListingSourceUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    response = _home_feed_response(prepared)
    # Runs only after the body has been sent, so undelivered pages record no exposure.
    background_tasks.add_task(commit_quietly, prepared)
    return response


@router.get("/stats", response_model=FeedStatsResponse)
async def get_feed_stats(service: FeedService = Depends(get_feed_service)) -> FeedStatsResponse:
    try:
        stats = await service.get_feed_stats()
    except ListingSourceUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return FeedStatsResponse(
        data=FeedStatsOut(profiles_by_level=stats.profiles_by_level, total_profiles=stats.total_profiles)
    )


@router.get("/fairness-stats", response_model=FairnessStatsResponse)
async def get_fairness_stats(service: FeedService = Depends(get_feed_service)) -> FairnessStatsResponse:
    try:
        stats = await service.get_fairness_stats()
    except ListingSourceUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return FairnessStatsResponse(
        data=FairnessStatsOut(
            total_profiles=stats.total_profiles,
            tie_group_sizes=stats.tie_group_sizes,
            tied_groups=[
                TieGroupOut(
                    key=group.key,
                    tier=group.tier,
                    position_rule=group.position_rule.value,
                    score=group.score,
                    count=len(group.members),
                    profiles=[
                        TieGroupMemberOut(
                            id=member.candidate_id,
                            last_shown_at=member.last_shown_at,
                            shown_count=member.shown_count,
                        )
                        for member in group.members
                    ],
                )
                for group in stats.tied_groups
            ],
            summary=FairnessSummaryOut(
                groups_with_ties=stats.groups_with_ties,
                total_tied_profiles=stats.total_tied_profiles,
            ),
        )
    )


@router.post("/reset-lastshown", response_model=ResetResponse)
async def reset_last_shown(service: FeedService = Depends(get_feed_service)) -> ResetResponse:
    try:
        affected = await service.reset_fairness_signals()
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ResetResponse(data=ResetOut(modified_count=affected))


@router.get("/fairness-rotation", response_model=RotationTrialResponse)
async def run_fairness_rotation(
    iterations: int = Query(default=3),
    page_size: int = Query(default=5, alias="pageSize"),
    service: FeedService = Depends(get_feed_service),
) -> RotationTrialResponse:
    try:
        results = await service.run_rotation_trial(iterations, page_size)
    except InvalidPagingParameterError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ListingSourceUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RotationTrialResponse(
        data=RotationTrialOut(
            iterations=[
                RotationIterationOut(iteration=row.iteration, timestamp=row.served_at, profiles=row.candidate_ids)
                for row in results
            ],
            total_iterations=iterations,
            profiles_per_page=page_size,
        )
    )


def _home_feed_response(prepared: PreparedPage) -> HomeFeedResponse:
    page_slice = prepared.slice
    return HomeFeedResponse(
        data=HomeFeedOut(
            profiles=[
                FeedProfileOut(
                    id=row.candidate_id,
                    tier=row.tier,
                    score=row.effective.score,
                    position_rule=row.effective.position_rule.value,
                    payload=prepared.payloads.get(row.candidate_id, {}),
                )
                for row in page_slice.items
            ],
            pagination=PaginationOut(
                current_page=page_slice.page,
                page_size=page_slice.page_size,
                total_pages=page_slice.total_pages,
                total_count=page_slice.total_count,
                has_next_page=page_slice.has_more,
                has_prev_page=page_slice.has_previous,
                rotation_anchor=prepared.rotation_anchor,
            ),
            metadata=HomeFeedMetadataOut(
                level_separators=[
                    LevelSeparatorOut(level=row.level, start_index=row.start_index, count=row.count)
                    for row in level_separators(page_slice.items)
                ],
                signals_degraded=prepared.signals_degraded,
            ),
        )
    )
