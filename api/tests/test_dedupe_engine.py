from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from atlas_api.services.dedupe import (
    InstitutionSnapshot,
    build_clusters,
    choose_canonical,
    name_similarity,
    ordered_pair,
    plan_clusters,
    run_deduplication,
    score_institution_pair,
)

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)

ID_A = "00000000-0000-0000-0000-00000000000a"
ID_B = "00000000-0000-0000-0000-00000000000b"
ID_C = "00000000-0000-0000-0000-00000000000c"
ID_D = "00000000-0000-0000-0000-00000000000d"
ID_E = "00000000-0000-0000-0000-00000000000e"


def _snapshot(
    institution_id: str,
    name: str,
    *,
    domain: str | None = None,
    phone: str | None = None,
    city: str | None = "Austin",
    state: str | None = "TX",
    facts: int = 0,
    age_days: int = 0,
) -> InstitutionSnapshot:
    return InstitutionSnapshot(
        institution_id=institution_id,
        canonical_name=name,
        domain=domain,
        phone=phone,
        city=city,
        state=state,
        lat=None,
        lng=None,
        approved_fact_count=facts,
        created_at=BASE_TIME - timedelta(days=age_days),
    )


def test_name_similarity_ignores_suffixes() -> None:
    assert name_similarity("Sunrise Aviation LLC", "Sunrise Flight School") == 1.0
    assert name_similarity("Sunrise Aviation", None) == 0.0


def test_same_domain_is_a_strong_signal() -> None:
    left = _snapshot(ID_A, "Sunrise Aviation", domain="sunriseaviation.com")
    right = _snapshot(ID_B, "Sunrise Aviation LLC", domain="https://www.sunriseaviation.com/")

    scored = score_institution_pair(left, right)

    assert scored.strong_signals == ["domain"]
    assert scored.risk_flags == []
    assert scored.confidence == 0.9999


def test_name_and_city_alone_are_capped_below_merge() -> None:
    left = _snapshot(ID_A, "Sunrise Aviation")
    right = _snapshot(ID_B, "Sunrise Aviation")

    scored = score_institution_pair(left, right)

    assert scored.strong_signals == []
    assert scored.confidence == 0.85


def test_different_domains_flag_a_conflict() -> None:
    left = _snapshot(ID_A, "Sunrise Aviation", domain="sunriseaviation.com", phone="512-555-0100")
    right = _snapshot(ID_B, "Sunrise Aviation", domain="sunriseflying.com", phone="(512) 555-0100")

    scored = score_institution_pair(left, right)

    assert scored.strong_signals == ["phone"]
    assert "conflict_domain_mismatch" in scored.risk_flags


def test_build_clusters_takes_transitive_closure() -> None:
    left = _snapshot(ID_A, "Sunrise Aviation", phone="5125550100")
    middle = _snapshot(ID_B, "Sunrise Aviation", phone="5125550100", domain="sunriseaviation.com")
    right = _snapshot(ID_C, "Sunrise Flight Academy", domain="sunriseaviation.com", city="Round Rock")

    links = [
        score_institution_pair(left, middle),
        score_institution_pair(middle, right),
    ]

    assert build_clusters(links) == [[ID_A, ID_B, ID_C]]


def test_choose_canonical_prefers_facts_then_age() -> None:
    older = _snapshot(ID_B, "Sunrise", facts=3, age_days=10)
    richer = _snapshot(ID_C, "Sunrise", facts=5, age_days=1)
    assert choose_canonical([older, richer]).institution_id == ID_C

    tie_old = _snapshot(ID_D, "Sunrise", facts=2, age_days=30)
    tie_new = _snapshot(ID_A, "Sunrise", facts=2, age_days=1)
    assert choose_canonical([tie_old, tie_new]).institution_id == ID_D


def test_plan_clusters_merges_strong_and_promotes_conflicts() -> None:
    snapshots = [
        _snapshot(ID_A, "Sunrise Aviation", domain="sunriseaviation.com", facts=4),
        _snapshot(ID_B, "Sunrise Aviation LLC", domain="sunriseaviation.com"),
        _snapshot(ID_C, "Eagle Flight School", domain="eagleflight.com", phone="5125550111", city="Dallas"),
        _snapshot(ID_D, "Eagle Flight School", domain="eagle-aero.com", phone="5125550111", city="Dallas"),
    ]

    plans = plan_clusters(snapshots)

    assert [(plan.institution_ids, plan.decision, plan.canonical_id) for plan in plans] == [
        ([ID_A, ID_B], "merge", ID_A),
        ([ID_C, ID_D], "promote", ID_C),
    ]


def test_plan_clusters_skips_reviewed_pairs() -> None:
    snapshots = [
        _snapshot(ID_A, "Sunrise Aviation", domain="sunriseaviation.com"),
        _snapshot(ID_B, "Sunrise Aviation", domain="sunriseaviation.com"),
    ]
    assert plan_clusters(snapshots, reviewed_pairs={ordered_pair(ID_B, ID_A)}) == []


class FakeDedupeRepository:
    def __init__(self, snapshots: list[InstitutionSnapshot]) -> None:
        self.snapshots = {snapshot.institution_id: snapshot for snapshot in snapshots}
        self.merged_into: dict[str, str] = {}
        self.reviewed: set[tuple[str, str]] = set()
        self.fail_on: set[str] = set()

    async def list_dedupe_snapshots(self) -> list[InstitutionSnapshot]:
        return [row for key, row in sorted(self.snapshots.items()) if key not in self.merged_into]

    async def list_reviewed_pairs(self) -> set[tuple[str, str]]:
        return set(self.reviewed)

    async def merge_cluster(self, *, winner_id: str, loser_ids: list[str], evidence: dict, actor_id: str | None) -> int:
        if winner_id in self.merged_into:
            return 0
        staged = {}
        for loser_id in loser_ids:
            if loser_id in self.fail_on:
                raise RuntimeError("lock timeout")
            if loser_id not in self.merged_into:
                staged[loser_id] = winner_id
        self.merged_into.update(staged)
        return len(staged)

    async def record_distinct_cluster(self, *, institution_ids: list[str], evidence: dict, actor_id: str | None) -> int:
        new_pairs = 0
        for index, left in enumerate(institution_ids):
            for right in institution_ids[index + 1 :]:
                pair = ordered_pair(left, right)
                if pair not in self.reviewed:
                    self.reviewed.add(pair)
                    new_pairs += 1
        return new_pairs


def _cluster_fixture() -> list[InstitutionSnapshot]:
    return [
        _snapshot(ID_A, "Sunrise Aviation", domain="sunriseaviation.com", facts=4),
        _snapshot(ID_B, "Sunrise Aviation LLC", domain="sunriseaviation.com"),
        _snapshot(ID_C, "Eagle Flight School", domain="eagleflight.com", phone="5125550111", city="Dallas"),
        _snapshot(ID_D, "Eagle Flight School", domain="eagle-aero.com", phone="5125550111", city="Dallas"),
    ]


def test_run_deduplication_second_run_has_no_effect() -> None:
    repository = FakeDedupeRepository(_cluster_fixture())

    first = asyncio.run(run_deduplication(repository, actor_id="scheduler"))
    second = asyncio.run(run_deduplication(repository, actor_id="scheduler"))

    assert (first.merged, first.promoted, first.errors) == (1, 1, [])
    assert repository.merged_into == {ID_B: ID_A}
    assert (second.merged, second.promoted, second.errors) == (0, 0, [])


def test_run_deduplication_collects_cluster_errors() -> None:
    repository = FakeDedupeRepository(_cluster_fixture())
    repository.fail_on.add(ID_B)

    result = asyncio.run(run_deduplication(repository))

    assert result.merged == 0
    assert result.promoted == 1
    assert result.errors == [{"id": ID_A, "error": "lock timeout"}]


def test_run_deduplication_rolls_back_a_partially_failed_cluster() -> None:
    repository = FakeDedupeRepository(
        [
            _snapshot(ID_A, "Sunrise Aviation", domain="sunriseaviation.com", facts=4),
            _snapshot(ID_B, "Sunrise Aviation LLC", domain="sunriseaviation.com"),
            _snapshot(ID_E, "Sunrise Aviation Inc", domain="sunriseaviation.com"),
        ]
    )
    repository.fail_on.add(ID_E)

    result = asyncio.run(run_deduplication(repository))

    assert result.merged == 0
    assert repository.merged_into == {}
    assert result.errors == [{"id": ID_A, "error": "lock timeout"}]
