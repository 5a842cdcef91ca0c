from __future__ import annotations

import logging
import math
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Any, Literal

from opentelemetry import trace
from rapidfuzz.distance import Levenshtein

from atlas_api.core.domains import normalize_domain, normalize_phone

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ClusterDecision = Literal["merge", "promote"]

_NAME_SUFFIX_RE = re.compile(
    r"\b(?:llc|inc|corp|corporation|co|ltd|company|"
    r"flight\s+school|flight\s+academy|flight\s+training|flight\s+center|aviation|aero)\b"
)
_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")
_SPACE_RE = re.compile(r"\s+")

GEO_PROXIMITY_KM = 2.0


@dataclass(slots=True)
class InstitutionSnapshot:
    institution_id: str
    canonical_name: str
    domain: str | None
    phone: str | None
    city: str | None
    state: str | None
    lat: float | None
    lng: float | None
    approved_fact_count: int
    created_at: datetime


@dataclass(slots=True)
class PairScore:
    left_id: str
    right_id: str
    confidence: float
    strong_signals: list[str]
    risk_flags: list[str]
    components: dict[str, float]

    @property
    def pair(self) -> tuple[str, str]:
        return ordered_pair(self.left_id, self.right_id)


@dataclass(slots=True)
class ClusterPlan:
    institution_ids: list[str]
    canonical_id: str
    decision: ClusterDecision
    links: list[PairScore]

    @property
    def loser_ids(self) -> list[str]:
        return [institution_id for institution_id in self.institution_ids if institution_id != self.canonical_id]


@dataclass(slots=True)
class DedupeRunResult:
    merged: int = 0
    promoted: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


def ordered_pair(left: str, right: str) -> tuple[str, str]:
    return (left, right) if left <= right else (right, left)


def normalize_name(name: str | None) -> str:
    if not name:
        return ""
    lowered = _NON_WORD_RE.sub(" ", name.lower())
    stripped = _NAME_SUFFIX_RE.sub(" ", lowered)
    return _SPACE_RE.sub(" ", stripped).strip()


def name_similarity(left: str | None, right: str | None) -> float:
    left_name = normalize_name(left)
    right_name = normalize_name(right)
    if not left_name or not right_name:
        return 0.0
    return float(Levenshtein.normalized_similarity(left_name, right_name))


def score_institution_pair(left: InstitutionSnapshot, right: InstitutionSnapshot) -> PairScore:
    strong_signals: list[str] = []
    risk_flags: list[str] = []
    score = 0.0

    left_domain = normalize_domain(left.domain)
    right_domain = normalize_domain(right.domain)
    if left_domain and right_domain:
        if left_domain == right_domain:
            strong_signals.append("domain")
            score += 0.75
        else:
            risk_flags.append("conflict_domain_mismatch")

    left_phone = normalize_phone(left.phone)
    right_phone = normalize_phone(right.phone)
    if left_phone and right_phone:
        if left_phone == right_phone:
            strong_signals.append("phone")
            score += 0.40
        else:
            risk_flags.append("conflict_phone_mismatch")

    similarity = name_similarity(left.canonical_name, right.canonical_name)
    score += 0.6 * similarity

    same_city = _same_text(left.city, right.city)
    same_state = _same_text(left.state, right.state)
    if same_city:
        score += 0.20
    if same_state:
        score += 0.05

    distance_km = _distance_km(left, right)
    if distance_km is not None and distance_km <= GEO_PROXIMITY_KM:
        score += 0.05

    if not strong_signals:
        score = min(score, 0.89)

    return PairScore(
        left_id=left.institution_id,
        right_id=right.institution_id,
        confidence=round(min(score, 0.9999), 4),
        strong_signals=strong_signals,
        risk_flags=risk_flags,
        components={
            "name_similarity": round(similarity, 4),
            "same_city": 1.0 if same_city else 0.0,
            "same_state": 1.0 if same_state else 0.0,
            "distance_km": round(distance_km, 3) if distance_km is not None else -1.0,
        },
    )


def link_pairs(
    snapshots: list[InstitutionSnapshot],
    *,
    link_threshold: float = 0.72,
    reviewed_pairs: set[tuple[str, str]] | frozenset[tuple[str, str]] = frozenset(),
) -> list[PairScore]:
    """Score candidate pairs and keep those at or above ``link_threshold``.

    Only records sharing a domain, a phone or a city are compared; without one of
    those a pair cannot reach 0.72 under the weights above.
    """
    by_id = {snapshot.institution_id: snapshot for snapshot in snapshots}
    links: list[PairScore] = []
    for left_id, right_id in sorted(_candidate_pairs(snapshots)):
        if (left_id, right_id) in reviewed_pairs:
            continue
        scored = score_institution_pair(by_id[left_id], by_id[right_id])
        if scored.confidence >= link_threshold:
            links.append(scored)
    return links


def build_clusters(links: list[PairScore]) -> list[list[str]]:
    parent: dict[str, str] = {}

    def find(node: str) -> str:
        parent.setdefault(node, node)
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = parent[node]
        return node

    for link in links:
        left_root = find(link.left_id)
        right_root = find(link.right_id)
        if left_root != right_root:
            parent[max(left_root, right_root)] = min(left_root, right_root)

    groups: dict[str, list[str]] = defaultdict(list)
    for node in list(parent):
        groups[find(node)].append(node)
    return sorted((sorted(members) for members in groups.values() if len(members) >= 2), key=lambda row: row[0])


def choose_canonical(members: list[InstitutionSnapshot]) -> InstitutionSnapshot:
    return min(
        members,
        key=lambda row: (-row.approved_fact_count, row.created_at, row.institution_id),
    )


def plan_clusters(
    snapshots: list[InstitutionSnapshot],
    *,
    link_threshold: float = 0.72,
    merge_threshold: float = 0.85,
    reviewed_pairs: set[tuple[str, str]] | frozenset[tuple[str, str]] = frozenset(),
) -> list[ClusterPlan]:
    by_id = {snapshot.institution_id: snapshot for snapshot in snapshots}
    links = link_pairs(snapshots, link_threshold=link_threshold, reviewed_pairs=reviewed_pairs)
    plans: list[ClusterPlan] = []

    for member_ids in build_clusters(links):
        member_set = set(member_ids)
        cluster_links = [link for link in links if link.left_id in member_set]
        members = [by_id[member_id] for member_id in member_ids]
        domains = {normalize_domain(member.domain) for member in members} - {None}
        has_conflict = len(domains) > 1 or any(
            flag.startswith("conflict_") for link in cluster_links for flag in link.risk_flags
        )
        all_confident = all(link.strong_signals or link.confidence >= merge_threshold for link in cluster_links)
        decision: ClusterDecision = "merge" if all_confident and not has_conflict else "promote"
        plans.append(
            ClusterPlan(
                institution_ids=member_ids,
                canonical_id=choose_canonical(members).institution_id,
                decision=decision,
                links=cluster_links,
            )
        )
    return plans


async def run_deduplication(
    repository,
    *,
    link_threshold: float = 0.72,
    merge_threshold: float = 0.85,
    actor_id: str | None = None,
) -> DedupeRunResult:
    snapshots = await repository.list_dedupe_snapshots()
    reviewed_pairs = await repository.list_reviewed_pairs()
    plans = plan_clusters(
        snapshots,
        link_threshold=link_threshold,
        merge_threshold=merge_threshold,
        reviewed_pairs=reviewed_pairs,
    )

    result = DedupeRunResult()
    for plan in plans:
        with tracer.start_as_current_span("dedupe.cluster") as span:
            span.set_attribute("dedupe.decision", plan.decision)
            span.set_attribute("dedupe.size", len(plan.institution_ids))
            try:
                if plan.decision == "merge":
                    result.merged += await repository.merge_cluster(
                        winner_id=plan.canonical_id,
                        loser_ids=plan.loser_ids,
                        evidence=_plan_evidence(plan),
                        actor_id=actor_id,
                    )
                else:
                    recorded = await repository.record_distinct_cluster(
                        institution_ids=plan.institution_ids,
                        evidence=_plan_evidence(plan),
                        actor_id=actor_id,
                    )
                    if recorded:
                        result.promoted += 1
            except Exception as exc:
                logger.exception("dedupe cluster failed canonical_id=%s decision=%s", plan.canonical_id, plan.decision)
                result.errors.append({"id": plan.canonical_id, "error": str(exc)})

    logger.info(
        "dedupe run clusters=%s merged=%s promoted=%s errors=%s",
        len(plans),
        result.merged,
        result.promoted,
        len(result.errors),
    )
    return result


def _plan_evidence(plan: ClusterPlan) -> dict[str, Any]:
    return {
        "institution_ids": plan.institution_ids,
        "canonical_id": plan.canonical_id,
        "links": [
            {
                "pair": list(link.pair),
                "confidence": link.confidence,
                "strong_signals": link.strong_signals,
                "risk_flags": link.risk_flags,
            }
            for link in plan.links
        ],
    }


def _candidate_pairs(snapshots: list[InstitutionSnapshot]) -> set[tuple[str, str]]:
    blocks: dict[str, list[str]] = defaultdict(list)
    for snapshot in snapshots:
        domain = normalize_domain(snapshot.domain)
        phone = normalize_phone(snapshot.phone)
        if domain:
            blocks[f"domain:{domain}"].append(snapshot.institution_id)
        if phone:
            blocks[f"phone:{phone}"].append(snapshot.institution_id)
        if snapshot.city and snapshot.city.strip():
            blocks[f"city:{snapshot.city.strip().casefold()}"].append(snapshot.institution_id)

    pairs: set[tuple[str, str]] = set()
    for members in blocks.values():
        for left_id, right_id in combinations(sorted(set(members)), 2):
            pairs.add((left_id, right_id))
    return pairs


def _same_text(left: str | None, right: str | None) -> bool:
    return bool(left and right and left.strip().casefold() == right.strip().casefold())


def _distance_km(left: InstitutionSnapshot, right: InstitutionSnapshot) -> float | None:
    if None in (left.lat, left.lng, right.lat, right.lng):
        return None
    lat1, lng1, lat2, lng2 = map(math.radians, (left.lat, left.lng, right.lat, right.lng))
    hav = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    return 6371.0 * 2 * math.asin(math.sqrt(hav))
