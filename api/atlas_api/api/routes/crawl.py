from fastapi import APIRouter, Depends, HTTPException, Query, status

from atlas_api.core.config import Settings, get_settings
from atlas_api.core.security import require_action
from atlas_api.schemas.crawl import (
    CrawlBatchOut,
    CrawlEnqueueOut,
    CrawlEnqueueRequest,
    CrawlEntryOut,
    CrawlReapOut,
    CrawlStatus,
)
from atlas_api.services.crawling import process_crawl_batch, reap_expired_leases
from atlas_api.services.extraction import get_extraction_client
from atlas_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("/enqueue", response_model=CrawlEnqueueOut)
async def enqueue_crawl(
    payload: CrawlEnqueueRequest,
    principal=Depends(require_action("crawl.enqueue")),
    repository=Depends(get_repository),
) -> CrawlEnqueueOut:
    try:
        entry, created = await repository.enqueue_crawl(payload.institution_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return CrawlEnqueueOut(**entry, created=created)


@router.post("/run", response_model=CrawlBatchOut)
async def run_crawl(
    principal=Depends(require_action("crawl.run")),
    repository=Depends(get_repository),
    extractor=Depends(get_extraction_client),
    settings: Settings = Depends(get_settings),
    limit: int = Query(default=20, ge=1, le=100),
) -> CrawlBatchOut:
    try:
        result = await process_crawl_batch(
            repository,
            extractor,
            limit=limit,
            auto_approve=settings.auto_approve_pipeline_facts,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CrawlBatchOut(
        processed=result.processed,
        completed=result.completed,
        failed=result.failed,
        errors=result.errors,
    )


@router.post("/reap", response_model=CrawlReapOut)
async def reap_crawl_leases(
    principal=Depends(require_action("crawl.reap")),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    limit: int = Query(default=100, ge=1, le=500),
) -> CrawlReapOut:
    try:
        result = await reap_expired_leases(repository, lease_seconds=settings.crawl_lease_seconds, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CrawlReapOut(reaped=result.reaped, entry_ids=result.entry_ids)


@router.post("/{entry_id}/retry", response_model=CrawlEntryOut)
async def retry_crawl(
    entry_id: str,
    principal=Depends(require_action("crawl.retry")),
    repository=Depends(get_repository),
) -> CrawlEntryOut:
    try:
        entry = await repository.retry_crawl_entry(entry_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return CrawlEntryOut(**entry)


@router.get("/queue", response_model=list[CrawlEntryOut])
async def list_queue(
    principal=Depends(require_action("crawl.list")),
    repository=Depends(get_repository),
    status_filter: CrawlStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[CrawlEntryOut]:
    try:
        rows = await repository.list_crawl_queue(status=status_filter, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [CrawlEntryOut(**row) for row in rows]
