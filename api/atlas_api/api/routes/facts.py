from fastapi import APIRouter, Depends, HTTPException, Query, status

from atlas_api.core.config import Settings, get_settings
from atlas_api.core.security import require_action
from atlas_api.schemas.facts import FactModerateRequest, FactOut, NormalizeRunOut
from atlas_api.services.crawling import normalize_pending_snapshots
from atlas_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("/moderate", response_model=FactOut)
async def moderate_fact(
    payload: FactModerateRequest,
    principal=Depends(require_action("facts.moderate")),
    repository=Depends(get_repository),
) -> FactOut:
    try:
        row = await repository.moderate_fact(
            institution_id=payload.institution_id,
            fact_key=payload.fact_key,
            as_of=payload.as_of,
            status=payload.status,
            actor_id=principal.actor_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return FactOut(**row)


@router.get("/pending", response_model=list[FactOut])
async def list_pending_facts(
    principal=Depends(require_action("facts.pending")),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[FactOut]:
    try:
        rows = await repository.list_pending_facts(limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [FactOut(**row) for row in rows]


@router.post("/normalize", response_model=NormalizeRunOut)
async def normalize_snapshots(
    principal=Depends(require_action("facts.normalize")),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    limit: int = Query(default=20, ge=1, le=100),
) -> NormalizeRunOut:
    try:
        result = await normalize_pending_snapshots(
            repository,
            limit=limit,
            auto_approve=settings.auto_approve_pipeline_facts,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return NormalizeRunOut(processed=result.processed, inserted=result.inserted, errors=result.errors)
