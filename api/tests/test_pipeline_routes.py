from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import atlas_api.core.security as security
from atlas_api.core.config import get_settings
from atlas_api.main import app
from atlas_api.services.email import EmailDeliveryError, get_verification_mailer
from atlas_api.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    get_repository,
)

SCHEDULER_KEY = "scheduler-secret"
INSTITUTION_ID = "11111111-1111-1111-1111-111111111111"
NO_DOMAIN_ID = "22222222-2222-2222-2222-222222222222"
AS_OF = "2026-02-01T00:00:00+00:00"


class FakePipelineRepository:
    def __init__(self) -> None:
        now = datetime.now(timezone.utc)
        self.now = now
        self.institutions: dict[str, dict[str, Any]] = {
            INSTITUTION_ID: {
                "id": INSTITUTION_ID,
                "canonical_name": "Sunrise Aviation",
                "city": "Austin",
                "state": "TX",
                "domain": "sunriseaviation.com",
                "created_at": now,
                "updated_at": now,
            },
            NO_DOMAIN_ID: {
                "id": NO_DOMAIN_ID,
                "canonical_name": "Grass Strip Flyers",
                "domain": None,
                "created_at": now,
                "updated_at": now,
            },
        }
        self.facts: list[dict[str, Any]] = [
            self._fact("signals.training_velocity", 0.9, "ADMIN", "APPROVED"),
            self._fact("signals.schedule_reliability", 0.9, "ADMIN", "APPROVED"),
            self._fact("cost.band", "MID", "CRAWL", "PENDING"),
        ]
        self.queue: dict[str, dict[str, Any]] = {}
        self.reap_calls: list[tuple[int, int]] = []
        self.claims: dict[str, dict[str, Any]] = {}
        self.seeds_today = 0
        self.inserted_seeds: list[dict[str, Any]] = []
        self.claim_facts: list[Any] = []

    def _fact(self, key: str, value: Any, provenance: str, status: str) -> dict[str, Any]:
        return {
            "institution_id": INSTITUTION_ID,
            "fact_key": key,
            "fact_value": value,
            "as_of": datetime.fromisoformat(AS_OF),
            "provenance": provenance,
            "moderation_status": status,
            "verified_by": None,
            "verified_at": None,
            "created_at": self.now,
        }

    async def get_institution(self, institution_id: str) -> dict[str, Any]:
        try:
            return dict(self.institutions[institution_id])
        except KeyError as exc:
            raise RepositoryNotFoundError("institution not found") from exc

    async def list_current_facts(self, institution_id: str) -> list[dict[str, Any]]:
        return [fact for fact in self.facts if fact["moderation_status"] == "APPROVED"]

    async def enqueue_crawl(self, institution_id: str) -> tuple[dict[str, Any], bool]:
        institution = await self.get_institution(institution_id)
        existing = self.queue.get(institution_id)
        if existing is not None:
            return existing, False
        entry = {
            "id": "aaaaaaaa-0000-0000-0000-000000000001",
            "institution_id": institution_id,
            "domain": institution["domain"],
            "status": "pending",
            "attempts": 0,
            "scheduled_at": self.now,
            "last_error": None,
            "claimed_at": None,
            "completed_at": None,
            "created_at": self.now,
        }
        self.queue[institution_id] = entry
        return entry, True

    async def reap_expired_crawl_entries(self, *, lease_seconds: int, limit: int) -> list[dict[str, Any]]:
        self.reap_calls.append((lease_seconds, limit))
        reaped = []
        for institution_id, entry in list(self.queue.items()):
            if entry["status"] == "processing" and len(reaped) < limit:
                entry.update(status="failed", attempts=entry["attempts"] + 1, last_error="lease expired")
                del self.queue[institution_id]
                reaped.append(entry)
        return reaped

    async def list_stale_institutions(self, *, limit: int, stale_before: datetime) -> list[dict[str, Any]]:
        return [{"id": INSTITUTION_ID}][:limit]

    async def moderate_fact(
        self,
        *,
        institution_id: str,
        fact_key: str,
        as_of: datetime,
        status: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        for fact in self.facts:
            if fact["fact_key"] == fact_key and fact["as_of"] == as_of and fact["institution_id"] == institution_id:
                if fact["moderation_status"] != "PENDING":
                    raise RepositoryConflictError(f"fact is already {fact['moderation_status']}")
                fact["moderation_status"] = status
                fact["verified_by"] = actor_id
                fact["verified_at"] = self.now
                return fact
        raise RepositoryNotFoundError("fact not found")

    async def upsert_claim(self, *, institution_id: str, email: str, token: str) -> dict[str, Any]:
        claim = {
            "id": "cccccccc-0000-0000-0000-000000000001",
            "institution_id": institution_id,
            "email": email,
            "token": token,
            "status": "PENDING",
            "created_at": self.now,
            "updated_at": self.now,
        }
        self.claims[token] = claim
        return claim

    async def verify_claim(self, token: str, *, ttl_hours: int) -> dict[str, Any]:
        claim = self.claims.get(token)
        if claim is None:
            raise RepositoryNotFoundError("claim not found")
        if claim["status"] != "PENDING":
            raise RepositoryConflictError("claim has already been verified")
        claim["status"] = "VERIFIED"
        return claim

    async def submit_claim_facts(self, *, institution_id: str, token: str, facts: list) -> int:
        claim = self.claims.get(token)
        if claim is None or claim["status"] != "VERIFIED" or claim["institution_id"] != institution_id:
            raise RepositoryForbiddenError("a verified claim is required to edit this institution")
        self.claim_facts.extend(facts)
        return len(facts)

    async def count_seeds_created_since(self, since: datetime) -> int:
        return self.seeds_today

    async def insert_seeds(self, seeds: list[dict[str, Any]]) -> int:
        self.inserted_seeds.extend(seeds)
        return len(seeds)


class FakeMailer:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict[str, str]] = []

    async def send_verification(self, *, email: str, token: str, institution_name: str) -> None:
        if self.fail:
            raise EmailDeliveryError("provider rejected the message")
        self.sent.append({"email": email, "token": token, "institution_name": institution_name})


@pytest.fixture
def fake_repo() -> FakePipelineRepository:
    return FakePipelineRepository()


@pytest.fixture
def fake_mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def pipeline_client(fake_repo: FakePipelineRepository, fake_mailer: FakeMailer) -> TestClient:
    os.environ["ATLAS_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["ATLAS_SUPABASE_ANON_KEY"] = "anon-key"
    os.environ["ATLAS_SCHEDULER_KEY_HASH"] = security.hash_scheduler_key(SCHEDULER_KEY)
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: fake_repo
    app.dependency_overrides[get_verification_mailer] = lambda: fake_mailer

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    for name in ("ATLAS_SUPABASE_URL", "ATLAS_SUPABASE_ANON_KEY", "ATLAS_SCHEDULER_KEY_HASH"):
        os.environ.pop(name, None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _scheduler() -> dict[str, str]:
    return {"X-Scheduler-Key": SCHEDULER_KEY}


def test_refresh_run_accepts_scheduler_key(pipeline_client: TestClient) -> None:
    response = pipeline_client.post("/refresh/run", headers=_scheduler())

    assert response.status_code == 200
    assert response.json() == {"enqueued": 1, "skipped": 0, "errors": []}


def test_refresh_run_rejects_wrong_scheduler_key(pipeline_client: TestClient) -> None:
    response = pipeline_client.post("/refresh/run", headers={"X-Scheduler-Key": "guess"})
    assert response.status_code == 401


def test_refresh_run_requires_auth(pipeline_client: TestClient) -> None:
    response = pipeline_client.post("/refresh/run")
    assert response.status_code == 401


def test_refresh_run_denies_user_role(pipeline_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "user-1", "app_metadata": {"role": "user"}})

    response = pipeline_client.post("/refresh/run", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403


def test_batch_limit_is_validated(pipeline_client: TestClient) -> None:
    response = pipeline_client.post("/refresh/run", params={"limit": 0}, headers=_scheduler())
    assert response.status_code == 422


def test_enqueue_returns_existing_open_entry(pipeline_client: TestClient) -> None:
    first = pipeline_client.post("/crawl/enqueue", json={"institution_id": INSTITUTION_ID}, headers=_scheduler())
    second = pipeline_client.post("/crawl/enqueue", json={"institution_id": INSTITUTION_ID}, headers=_scheduler())

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["created"] is True
    assert second.json()["created"] is False
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["domain"] == "sunriseaviation.com"


def test_reap_frees_stuck_entry_for_a_new_enqueue(pipeline_client: TestClient, fake_repo: FakePipelineRepository) -> None:
    stuck = pipeline_client.post("/crawl/enqueue", json={"institution_id": INSTITUTION_ID}, headers=_scheduler())
    fake_repo.queue[INSTITUTION_ID]["status"] = "processing"

    response = pipeline_client.post("/crawl/reap", params={"limit": 10}, headers=_scheduler())

    assert response.status_code == 200
    assert response.json() == {"reaped": 1, "entry_ids": [stuck.json()["id"]]}
    assert fake_repo.reap_calls == [(900, 10)]

    again = pipeline_client.post("/crawl/enqueue", json={"institution_id": INSTITUTION_ID}, headers=_scheduler())
    assert again.json()["created"] is True


def test_reap_requires_pipeline_scope(pipeline_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "user-1", "user_metadata": {"role": "admin"}})

    response = pipeline_client.post("/crawl/reap", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403


def test_enqueue_unknown_institution_is_404(pipeline_client: TestClient) -> None:
    response = pipeline_client.post(
        "/crawl/enqueue",
        json={"institution_id": "99999999-9999-9999-9999-999999999999"},
        headers=_scheduler(),
    )
    assert response.status_code == 404


def test_moderation_is_one_time(pipeline_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "moderator-1", "app_metadata": {"role": "moderator"}})
    payload = {"institution_id": INSTITUTION_ID, "fact_key": "cost.band", "as_of": AS_OF, "status": "APPROVED"}

    first = pipeline_client.post("/facts/moderate", json=payload, headers={"Authorization": "Bearer token"})
    second = pipeline_client.post(
        "/facts/moderate",
        json={**payload, "status": "REJECTED"},
        headers={"Authorization": "Bearer token"},
    )

    assert first.status_code == 200
    assert first.json()["moderation_status"] == "APPROVED"
    assert first.json()["verified_by"] == "moderator-1"
    assert second.status_code == 409


def test_scheduler_cannot_moderate(pipeline_client: TestClient) -> None:
    payload = {"institution_id": INSTITUTION_ID, "fact_key": "cost.band", "as_of": AS_OF, "status": "APPROVED"}
    response = pipeline_client.post("/facts/moderate", json=payload, headers=_scheduler())
    assert response.status_code == 403


def test_institution_view_includes_tier(pipeline_client: TestClient) -> None:
    response = pipeline_client.get(f"/institutions/{INSTITUTION_ID}")

    assert response.status_code == 200
    body = response.json()
    assert body["tier"] == "GOLD"
    assert {fact["fact_key"] for fact in body["facts"]} == {
        "signals.training_velocity",
        "signals.schedule_reliability",
    }


def test_claim_request_unknown_institution(pipeline_client: TestClient) -> None:
    response = pipeline_client.post(
        "/claims/request",
        json={"institution_id": "99999999-9999-9999-9999-999999999999", "email": "ops@sunriseaviation.com"},
    )
    assert response.status_code == 404


def test_claim_request_without_domain_is_unprocessable(pipeline_client: TestClient) -> None:
    response = pipeline_client.post(
        "/claims/request",
        json={"institution_id": NO_DOMAIN_ID, "email": "owner@gmail.com"},
    )
    assert response.status_code == 422


def test_claim_request_rejects_foreign_email_domain(pipeline_client: TestClient) -> None:
    response = pipeline_client.post(
        "/claims/request",
        json={"institution_id": INSTITUTION_ID, "email": "owner@gmail.com"},
    )
    assert response.status_code == 403


def test_claim_flow_request_verify_edit(
    pipeline_client: TestClient,
    fake_repo: FakePipelineRepository,
    fake_mailer: FakeMailer,
) -> None:
    requested = pipeline_client.post(
        "/claims/request",
        json={"institution_id": INSTITUTION_ID, "email": "ops@sunriseaviation.com"},
    )
    assert requested.status_code == 200
    assert requested.json()["email_sent"] is True
    token = fake_mailer.sent[0]["token"]
    assert len(token) == 32

    edit_payload = {
        "institution_id": INSTITUTION_ID,
        "token": token,
        "facts": [{"fact_key": "fleet.count", "fact_value": 6}],
    }
    before_verify = pipeline_client.post("/claims/edit", json=edit_payload)
    assert before_verify.status_code == 403

    verified = pipeline_client.post("/claims/verify", json={"token": token})
    assert verified.status_code == 200
    assert verified.json()["status"] == "VERIFIED"

    again = pipeline_client.post("/claims/verify", json={"token": token})
    assert again.status_code == 409

    edited = pipeline_client.post("/claims/edit", json=edit_payload)
    assert edited.status_code == 200
    assert edited.json() == {"inserted": 1}
    assert fake_repo.claim_facts[0].fact_key == "fleet.count"


def test_claim_request_survives_email_failure(pipeline_client: TestClient, fake_mailer: FakeMailer) -> None:
    fake_mailer.fail = True

    response = pipeline_client.post(
        "/claims/request",
        json={"institution_id": INSTITUTION_ID, "email": "ops@sunriseaviation.com"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "PENDING"
    assert response.json()["email_sent"] is False


def test_claim_verify_unknown_token(pipeline_client: TestClient) -> None:
    response = pipeline_client.post("/claims/verify", json={"token": "deadbeef"})
    assert response.status_code == 404


def test_claim_edit_rejects_non_editable_keys(pipeline_client: TestClient) -> None:
    response = pipeline_client.post(
        "/claims/edit",
        json={
            "institution_id": INSTITUTION_ID,
            "token": "whatever",
            "facts": [{"fact_key": "signals.training_velocity", "fact_value": 1.0}],
        },
    )
    assert response.status_code == 422


def test_claim_edit_validates_values(pipeline_client: TestClient) -> None:
    response = pipeline_client.post(
        "/claims/edit",
        json={
            "institution_id": INSTITUTION_ID,
            "token": "whatever",
            "facts": [{"fact_key": "cost.band", "fact_value": "CHEAP"}],
        },
    )
    assert response.status_code == 422


def test_claim_edit_rejects_repeated_keys(pipeline_client: TestClient, fake_repo: FakePipelineRepository) -> None:
    response = pipeline_client.post(
        "/claims/edit",
        json={
            "institution_id": INSTITUTION_ID,
            "token": "whatever",
            "facts": [
                {"fact_key": "fleet.count", "fact_value": 4},
                {"fact_key": "fleet.count", "fact_value": 6},
            ],
        },
    )

    assert response.status_code == 422
    assert "fleet.count appears more than once" in response.json()["detail"]
    assert fake_repo.claim_facts == []


def test_seed_import_is_quota_limited(
    pipeline_client: TestClient,
    fake_repo: FakePipelineRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "admin-1", "app_metadata": {"role": "admin"}})
    fake_repo.seeds_today = 48
    seeds = [{"name": f"School {index}", "city": "Austin"} for index in range(3)]

    denied = pipeline_client.post("/seeds/import", json={"seeds": seeds}, headers={"Authorization": "Bearer token"})
    allowed = pipeline_client.post(
        "/seeds/import",
        json={"seeds": seeds[:2]},
        headers={"Authorization": "Bearer token"},
    )

    assert denied.status_code == 429
    assert allowed.status_code == 200
    assert allowed.json()["inserted"] == 2
    assert allowed.json()["quota"]["remaining"] == 0
