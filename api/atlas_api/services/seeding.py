from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

from atlas_api.core.domains import normalize_domain, normalize_phone
from atlas_api.services.places import component_text
from atlas_api.services.resolver import RESOLVED_THRESHOLD, DomainResolver, SeedIdentity

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RESOLUTION_METHOD = "pattern_match"


@dataclass(slots=True)
class ResolveBatchResult:
    processed: int = 0
    found: int = 0
    missed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class PromoteBatchResult:
    processed: int = 0
    created: int = 0
    linked: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


async def resolve_seed_batch(
    repository,
    resolver: DomainResolver,
    *,
    limit: int = 50,
    threshold: float = RESOLVED_THRESHOLD,
) -> ResolveBatchResult:
    """Resolve the least recently attempted seeds, one at a time.

    ``last_seen_at`` advances for every attempted seed, including failures, so a
    failing seed drops to the back of the queue.
    """
    seeds = await repository.list_seeds_for_resolution(limit=limit, threshold=threshold)
    result = ResolveBatchResult()

    for seed in seeds:
        if seed.get("confidence") is not None and seed["confidence"] >= threshold and seed.get("website"):
            continue
        result.processed += 1
        with tracer.start_as_current_span("seeds.resolve_seed") as span:
            span.set_attribute("seed.id", seed["id"])
            try:
                resolution = await resolver.resolve(
                    SeedIdentity(
                        name=seed["name"],
                        city=seed.get("city"),
                        state=seed.get("state"),
                        phone=seed.get("phone"),
                    )
                )
            except Exception as exc:
                logger.warning("seed resolution failed seed_id=%s error=%s", seed["id"], exc)
                result.errors.append({"id": seed["id"], "error": str(exc)})
                await _touch_quietly(repository, seed["id"], result)
                continue

            span.set_attribute("seed.confidence", resolution.confidence)
            try:
                await repository.update_seed_resolution(
                    seed["id"],
                    website=resolution.domain,
                    confidence=resolution.confidence,
                    evidence=resolution.evidence,
                    resolution_method=RESOLUTION_METHOD,
                )
            except Exception as exc:
                logger.exception("seed resolution write failed seed_id=%s", seed["id"])
                result.errors.append({"id": seed["id"], "error": str(exc)})
                continue

            if resolution.domain:
                result.found += 1
            else:
                result.missed += 1

    logger.info(
        "seed resolution batch processed=%s found=%s missed=%s errors=%s",
        result.processed,
        result.found,
        result.missed,
        len(result.errors),
    )
    return result


async def promote_seed_batch(
    repository,
    *,
    limit: int = 50,
    threshold: float = RESOLVED_THRESHOLD,
    actor_id: str | None = None,
) -> PromoteBatchResult:
    seeds = await repository.list_promotable_seeds(limit=limit, threshold=threshold)
    result = PromoteBatchResult()
    for seed in seeds:
        result.processed += 1
        try:
            promoted = await repository.promote_seed(seed["id"], actor_id=actor_id)
        except Exception as exc:
            logger.warning("seed promotion failed seed_id=%s error=%s", seed["id"], exc)
            result.errors.append({"id": seed["id"], "error": str(exc)})
            continue
        if promoted["created"]:
            result.created += 1
        else:
            result.linked += 1
    return result


def seed_from_place(record: dict[str, Any]) -> dict[str, Any] | None:
    name = (record.get("name") or "").strip()
    if not name:
        return None
    location = record.get("location") or {}
    return {
        "name": name,
        "city": component_text(record, "locality"),
        "state": component_text(record, "administrative_area_level_1"),
        "country": component_text(record, "country"),
        "street_address": record.get("formatted_address"),
        "postal_code": component_text(record, "postal_code"),
        "phone": record.get("phone"),
        "website": record.get("website"),
        "lat": location.get("lat"),
        "lng": location.get("lng"),
        "google_place_id": record.get("place_id"),
    }


def institution_from_place(record: dict[str, Any]) -> dict[str, Any]:
    location = record.get("location") or {}
    phone = record.get("phone")
    return {
        "canonical_name": (record.get("name") or "").strip(),
        "addr_std": record.get("formatted_address"),
        "city": component_text(record, "locality"),
        "state": component_text(record, "administrative_area_level_1"),
        "phone": normalize_phone(phone) or phone,
        "domain": normalize_domain(record.get("website")),
        "lat": location.get("lat"),
        "lng": location.get("lng"),
        "google_place_id": record.get("place_id"),
    }


async def _touch_quietly(repository, seed_id: str, result: ResolveBatchResult) -> None:
    try:
        await repository.touch_seed(seed_id)
    except Exception as exc:
        logger.warning("seed touch failed seed_id=%s error=%s", seed_id, exc)
        result.errors.append({"id": seed_id, "error": f"touch failed: {exc}"})
