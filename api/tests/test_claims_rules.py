from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from atlas_api.services.claims import (
    ClaimAlreadyVerifiedError,
    ClaimDomainMismatchError,
    ClaimExpiredError,
    ensure_claim_verifiable,
    ensure_email_matches_domain,
    generate_claim_token,
)

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_generate_claim_token_is_32_hex_chars() -> None:
    token = generate_claim_token()
    assert len(token) == 32
    int(token, 16)
    assert generate_claim_token() != token


@pytest.mark.parametrize("domain", ["sunriseaviation.com", "https://www.sunriseaviation.com/", "WWW.SunriseAviation.com"])
def test_email_domain_match_accepts_normalized_forms(domain: str) -> None:
    ensure_email_matches_domain("chief.pilot@SunriseAviation.com", domain)


def test_email_domain_mismatch_is_rejected() -> None:
    with pytest.raises(ClaimDomainMismatchError):
        ensure_email_matches_domain("owner@gmail.com", "sunriseaviation.com")


def test_institution_without_domain_cannot_be_claimed() -> None:
    with pytest.raises(ClaimDomainMismatchError):
        ensure_email_matches_domain("owner@sunriseaviation.com", None)


def test_pending_claim_within_ttl_is_verifiable() -> None:
    ensure_claim_verifiable(status="PENDING", created_at=NOW - timedelta(hours=23), now=NOW)


def test_claim_created_25_hours_ago_is_expired() -> None:
    with pytest.raises(ClaimExpiredError):
        ensure_claim_verifiable(status="PENDING", created_at=NOW - timedelta(hours=25), now=NOW)


def test_verified_claim_cannot_be_verified_again() -> None:
    with pytest.raises(ClaimAlreadyVerifiedError):
        ensure_claim_verifiable(status="VERIFIED", created_at=NOW - timedelta(hours=1), now=NOW)


def test_expiry_is_checked_before_status() -> None:
    with pytest.raises(ClaimExpiredError):
        ensure_claim_verifiable(status="VERIFIED", created_at=NOW - timedelta(days=3), now=NOW)
