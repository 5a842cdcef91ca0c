import logging

from fastapi import APIRouter, Depends, HTTPException, status

from atlas_api.core.config import Settings, get_settings
from atlas_api.schemas.claims import (
    ClaimEditOut,
    ClaimEditRequest,
    ClaimOut,
    ClaimRequest,
    ClaimRequestOut,
    ClaimVerifyRequest,
)
from atlas_api.services.claims import ClaimDomainMismatchError, ensure_email_matches_domain, generate_claim_token
from atlas_api.services.email import EmailDeliveryError, get_verification_mailer
from atlas_api.services.normalize import CLAIM_EDITABLE_KEYS, FactValidationError, NormalizedFact, validate_fact_value
from atlas_api.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/request", response_model=ClaimRequestOut)
async def request_claim(
    payload: ClaimRequest,
    repository=Depends(get_repository),
    mailer=Depends(get_verification_mailer),
    settings: Settings = Depends(get_settings),
) -> ClaimRequestOut:
    try:
        institution = await repository.get_institution(payload.institution_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    if not institution.get("domain"):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="institution has no domain to verify against",
        )
    try:
        ensure_email_matches_domain(payload.email, institution["domain"])
    except ClaimDomainMismatchError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    token = generate_claim_token()
    try:
        claim = await repository.upsert_claim(institution_id=institution["id"], email=payload.email, token=token)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    email_sent = True
    try:
        await mailer.send_verification(email=payload.email, token=token, institution_name=institution["canonical_name"])
    except EmailDeliveryError as exc:
        email_sent = False
        logger.exception("claim verification email failed claim_id=%s", claim["id"])
        if settings.claim_email_failure_fatal:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return ClaimRequestOut(claim_id=claim["id"], status=claim["status"], email_sent=email_sent)


@router.post("/verify", response_model=ClaimOut)
async def verify_claim(
    payload: ClaimVerifyRequest,
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> ClaimOut:
    try:
        claim = await repository.verify_claim(payload.token, ttl_hours=settings.claim_token_ttl_hours)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ClaimOut(**claim)


@router.post("/edit", response_model=ClaimEditOut)
async def edit_claimed_facts(
    payload: ClaimEditRequest,
    repository=Depends(get_repository),
) -> ClaimEditOut:
    facts: list[NormalizedFact] = []
    seen_keys: set[str] = set()
    for item in payload.facts:
        if item.fact_key in seen_keys:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{item.fact_key} appears more than once",
            )
        seen_keys.add(item.fact_key)
        if item.fact_key not in CLAIM_EDITABLE_KEYS:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{item.fact_key} cannot be edited through a claim",
            )
        try:
            value = validate_fact_value(item.fact_key, item.fact_value)
        except FactValidationError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
        facts.append(NormalizedFact(item.fact_key, value))

    try:
        inserted = await repository.submit_claim_facts(
            institution_id=payload.institution_id,
            token=payload.token,
            facts=facts,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (RepositoryForbiddenError, RepositoryNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return ClaimEditOut(inserted=inserted)
