from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from atlas_api.core.domains import email_domain, normalize_domain


class ClaimError(Exception):
    """Base error for claim rules."""


class ClaimDomainMismatchError(ClaimError):
    pass


class ClaimExpiredError(ClaimError):
    pass


class ClaimAlreadyVerifiedError(ClaimError):
    pass


def generate_claim_token() -> str:
    return secrets.token_hex(16)


def ensure_email_matches_domain(email: str, institution_domain: str | None) -> None:
    expected = normalize_domain(institution_domain)
    actual = email_domain(email)
    if not expected or actual != expected:
        raise ClaimDomainMismatchError("email domain must match institution domain")


def ensure_claim_verifiable(
    *,
    status: str,
    created_at: datetime,
    ttl_hours: int = 24,
    now: datetime | None = None,
) -> None:
    current = now or datetime.now(timezone.utc)
    if current - created_at > timedelta(hours=ttl_hours):
        raise ClaimExpiredError("token has expired")
    if status != "PENDING":
        raise ClaimAlreadyVerifiedError("claim has already been verified")
