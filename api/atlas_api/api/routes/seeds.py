from fastapi import APIRouter, Depends, HTTPException, Query, status

from atlas_api.core.config import Settings, get_settings
from atlas_api.core.security import require_action
from atlas_api.schemas.seeds import (
    PromoteBatchOut,
    QuotaOut,
    ResolveBatchOut,
    SeedDiscoverOut,
    SeedDiscoverRequest,
    SeedImportOut,
    SeedImportRequest,
    SeedOut,
)
from atlas_api.services.places import PlacesError, get_places_client
from atlas_api.services.quota import QuotaGuard, QuotaResult, get_quota_guard
from atlas_api.services.repository import RepositoryUnavailableError, get_repository
from atlas_api.services.resolver import get_domain_resolver
from atlas_api.services.seeding import promote_seed_batch, resolve_seed_batch, seed_from_place

router = APIRouter()


@router.get("", response_model=list[SeedOut])
async def list_seeds(
    principal=Depends(require_action("seeds.list")),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[SeedOut]:
    try:
        rows = await repository.list_seeds(limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [SeedOut(**row) for row in rows]


@router.post("/import", response_model=SeedImportOut)
async def import_seeds(
    payload: SeedImportRequest,
    principal=Depends(require_action("seeds.import")),
    repository=Depends(get_repository),
    quota: QuotaGuard = Depends(get_quota_guard),
) -> SeedImportOut:
    decision = await quota.check_import(requested=len(payload.seeds))
    _raise_if_denied(decision)

    try:
        inserted = await repository.insert_seeds([seed.model_dump() for seed in payload.seeds])
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SeedImportOut(inserted=inserted, quota=_quota_out(decision))


@router.post("/discover", response_model=SeedDiscoverOut)
async def discover_seeds(
    payload: SeedDiscoverRequest,
    principal=Depends(require_action("seeds.discover")),
    repository=Depends(get_repository),
    quota: QuotaGuard = Depends(get_quota_guard),
    places=Depends(get_places_client),
) -> SeedDiscoverOut:
    decision = await quota.check_discover()
    _raise_if_denied(decision)

    try:
        records = await places.search_text(city=payload.city, query=payload.query, max_results=payload.max_results)
    except PlacesError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    seeds = [seed for seed in (seed_from_place(record) for record in records) if seed is not None]
    try:
        inserted = await repository.insert_seeds(seeds) if seeds else 0
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SeedDiscoverOut(discovered=len(records), inserted=inserted, quota=_quota_out(decision))


@router.post("/resolve", response_model=ResolveBatchOut)
async def resolve_seeds(
    principal=Depends(require_action("seeds.resolve")),
    repository=Depends(get_repository),
    resolver=Depends(get_domain_resolver),
    settings: Settings = Depends(get_settings),
    limit: int = Query(default=50, ge=1, le=100),
) -> ResolveBatchOut:
    try:
        result = await resolve_seed_batch(
            repository,
            resolver,
            limit=limit,
            threshold=settings.resolver_confidence_threshold,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ResolveBatchOut(processed=result.processed, found=result.found, missed=result.missed, errors=result.errors)


@router.post("/promote", response_model=PromoteBatchOut)
async def promote_seeds(
    principal=Depends(require_action("seeds.promote")),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    limit: int = Query(default=50, ge=1, le=100),
) -> PromoteBatchOut:
    try:
        result = await promote_seed_batch(
            repository,
            limit=limit,
            threshold=settings.resolver_confidence_threshold,
            actor_id=principal.actor_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PromoteBatchOut(processed=result.processed, created=result.created, linked=result.linked, errors=result.errors)


def _raise_if_denied(decision: QuotaResult) -> None:
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=decision.error or "quota exceeded",
        )


def _quota_out(decision: QuotaResult) -> QuotaOut:
    return QuotaOut(
        allowed=decision.allowed,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
        error=decision.error,
    )
