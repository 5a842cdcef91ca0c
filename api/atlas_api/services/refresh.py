from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from atlas_api.services.normalize import normalize_snapshot

logger = logging.getLogger(__name__)

TRACKED_CHANGE_KEYS = ("cost.band", "cost.notes", "fleet.aircraft", "fleet.count")


@dataclass(slots=True)
class RefreshRunResult:
    enqueued: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class FactChange:
    fact_key: str
    previous: Any
    current: Any


async def enqueue_stale(
    repository,
    *,
    limit: int = 50,
    stale_after_days: int = 180,
    now: datetime | None = None,
) -> RefreshRunResult:
    """Re-enqueue institutions whose newest approved fact is older than the staleness window.

    Institutions with no approved facts at all count as stale. An institution that
    already has an open crawl entry is reported as skipped.
    """
    current = now or datetime.now(timezone.utc)
    stale_before = current - timedelta(days=stale_after_days)
    institutions = await repository.list_stale_institutions(limit=limit, stale_before=stale_before)

    result = RefreshRunResult()
    for institution in institutions:
        try:
            _, created = await repository.enqueue_crawl(institution["id"])
        except Exception as exc:
            logger.warning("refresh enqueue failed institution_id=%s error=%s", institution["id"], exc)
            result.errors.append({"id": institution["id"], "error": str(exc)})
            continue
        if created:
            result.enqueued += 1
        else:
            result.skipped += 1

    logger.info(
        "refresh run enqueued=%s skipped=%s errors=%s stale_before=%s",
        result.enqueued,
        result.skipped,
        len(result.errors),
        stale_before.isoformat(),
    )
    return result


def detect_snapshot_changes(previous: dict[str, Any] | None, current: dict[str, Any]) -> list[FactChange]:
    """Compare pricing and fleet facts derived from two raw snapshot payloads."""
    if previous is None:
        return []
    before = {fact.fact_key: fact.fact_value for fact in normalize_snapshot(previous)}
    after = {fact.fact_key: fact.fact_value for fact in normalize_snapshot(current)}

    changes: list[FactChange] = []
    for key in TRACKED_CHANGE_KEYS:
        old_value = before.get(key)
        new_value = after.get(key)
        if isinstance(old_value, list) and isinstance(new_value, list):
            if sorted(old_value) == sorted(new_value):
                continue
        elif old_value == new_value:
            continue
        changes.append(FactChange(fact_key=key, previous=old_value, current=new_value))
    return changes
