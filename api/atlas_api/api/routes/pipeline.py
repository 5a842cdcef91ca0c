from fastapi import APIRouter, Depends, HTTPException, Query, status

from atlas_api.core.config import Settings, get_settings
from atlas_api.core.security import require_action
from atlas_api.schemas.pipeline import DedupeRunOut, RefreshRunOut
from atlas_api.services.dedupe import run_deduplication
from atlas_api.services.refresh import enqueue_stale
from atlas_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("/dedupe/run", response_model=DedupeRunOut)
async def run_dedupe(
    principal=Depends(require_action("dedupe.run")),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> DedupeRunOut:
    try:
        result = await run_deduplication(
            repository,
            link_threshold=settings.dedupe_link_threshold,
            merge_threshold=settings.dedupe_merge_threshold,
            actor_id=principal.actor_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return DedupeRunOut(merged=result.merged, promoted=result.promoted, errors=result.errors)


@router.post("/refresh/run", response_model=RefreshRunOut)
async def run_refresh(
    principal=Depends(require_action("refresh.run")),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    limit: int = Query(default=50, ge=1, le=100),
) -> RefreshRunOut:
    try:
        result = await enqueue_stale(
            repository,
            limit=limit,
            stale_after_days=settings.refresh_stale_after_days,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RefreshRunOut(enqueued=result.enqueued, skipped=result.skipped, errors=result.errors)
