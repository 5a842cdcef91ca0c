from fastapi import APIRouter, Depends, HTTPException, status

from atlas_api.core.config import Settings, get_settings
from atlas_api.core.security import require_action
from atlas_api.schemas.facts import FactOut
from atlas_api.schemas.institutions import (
    InstitutionChangesOut,
    InstitutionOut,
    PlaceImportOut,
    PlaceImportRequest,
    SignalsOut,
    SignalsUpdateRequest,
    SnapshotChangeOut,
)
from atlas_api.services.crawling import moderation_status_for_pipeline
from atlas_api.services.normalize import FactValidationError, NormalizedFact, normalize_google_places
from atlas_api.services.places import to_place_record
from atlas_api.services.refresh import detect_snapshot_changes
from atlas_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from atlas_api.services.seeding import institution_from_place
from atlas_api.services.tiers import compute_tier

router = APIRouter()


@router.post("/import-place", response_model=PlaceImportOut)
async def import_place(
    payload: PlaceImportRequest,
    principal=Depends(require_action("institutions.import_place")),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> PlaceImportOut:
    record = to_place_record(payload.place)
    if not record.get("name") or not record.get("place_id"):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="place requires id and displayName")
    try:
        facts = normalize_google_places(record)
    except FactValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    try:
        result = await repository.import_place(
            institution=institution_from_place(record),
            facts=facts,
            moderation_status=moderation_status_for_pipeline(settings.auto_approve_pipeline_facts),
            actor_id=principal.actor_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return PlaceImportOut(**result)


@router.get("/{institution_id}", response_model=InstitutionOut)
async def get_institution(institution_id: str, repository=Depends(get_repository)) -> InstitutionOut:
    try:
        institution = await repository.get_institution(institution_id)
        facts = await repository.list_current_facts(institution["id"])
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    current = {fact["fact_key"]: fact["fact_value"] for fact in facts}
    tier = compute_tier(current.get("signals.training_velocity"), current.get("signals.schedule_reliability"))
    return InstitutionOut(**institution, facts=[FactOut(**fact) for fact in facts], tier=tier)


@router.get("/{institution_id}/facts/{fact_key}/history", response_model=list[FactOut])
async def get_fact_history(
    institution_id: str,
    fact_key: str,
    principal=Depends(require_action("facts.history")),
    repository=Depends(get_repository),
) -> list[FactOut]:
    try:
        rows = await repository.list_fact_history(institution_id, fact_key)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return [FactOut(**row) for row in rows]


@router.get("/{institution_id}/changes", response_model=InstitutionChangesOut)
async def get_snapshot_changes(
    institution_id: str,
    principal=Depends(require_action("institutions.changes")),
    repository=Depends(get_repository),
) -> InstitutionChangesOut:
    try:
        snapshots = await repository.latest_snapshots(institution_id, limit=2)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    if not snapshots:
        return InstitutionChangesOut(institution_id=institution_id)
    current = snapshots[0]
    previous = snapshots[1] if len(snapshots) > 1 else None
    changes = detect_snapshot_changes(previous["raw_json"] if previous else None, current["raw_json"])
    return InstitutionChangesOut(
        institution_id=institution_id,
        previous_snapshot_id=previous["id"] if previous else None,
        current_snapshot_id=current["id"],
        changes=[
            SnapshotChangeOut(fact_key=change.fact_key, previous=change.previous, current=change.current)
            for change in changes
        ],
    )


@router.put("/{institution_id}/signals", response_model=SignalsOut)
async def update_signals(
    institution_id: str,
    payload: SignalsUpdateRequest,
    principal=Depends(require_action("institutions.signals")),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> SignalsOut:
    facts = [
        NormalizedFact(key, value)
        for key, value in (
            ("signals.training_velocity", payload.training_velocity),
            ("signals.schedule_reliability", payload.schedule_reliability),
            ("signals.safety_notes", payload.safety_notes),
        )
        if value is not None
    ]
    if not facts:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="at least one signal is required")

    try:
        inserted = await repository.record_admin_facts(
            institution_id=institution_id,
            facts=facts,
            moderation_status=moderation_status_for_pipeline(settings.auto_approve_pipeline_facts),
            actor_id=principal.actor_id,
        )
        current_facts = await repository.list_current_facts(institution_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    current = {fact["fact_key"]: fact["fact_value"] for fact in current_facts}
    velocity = current.get("signals.training_velocity")
    reliability = current.get("signals.schedule_reliability")
    return SignalsOut(
        institution_id=institution_id,
        inserted=inserted,
        training_velocity=velocity,
        schedule_reliability=reliability,
        tier=compute_tier(velocity, reliability),
    )
