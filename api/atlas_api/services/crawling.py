from __future__ import annotations

import logging
from dataclasses import dataclass, field

from opentelemetry import trace

from atlas_api.services.extraction import ExtractionClient
from atlas_api.services.normalize import normalize_snapshot

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class CrawlItemError(Exception):
    """Raised inside a batch when a single entry cannot be crawled."""


@dataclass(slots=True)
class CrawlBatchResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class LeaseReapResult:
    reaped: int = 0
    entry_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class NormalizeRunResult:
    processed: int = 0
    inserted: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


def moderation_status_for_pipeline(auto_approve: bool) -> str:
    return "APPROVED" if auto_approve else "PENDING"


async def process_crawl_batch(
    repository,
    extractor: ExtractionClient,
    *,
    limit: int = 20,
    auto_approve: bool = True,
) -> CrawlBatchResult:
    """Claim up to ``limit`` pending entries and crawl them sequentially.

    An extraction or persistence failure fails that entry only; the batch
    carries on and reports it in ``errors``.
    """
    entries = await repository.claim_crawl_batch(limit=limit)
    result = CrawlBatchResult()
    moderation_status = moderation_status_for_pipeline(auto_approve)

    for entry in entries:
        result.processed += 1
        with tracer.start_as_current_span("crawl.process_entry") as span:
            span.set_attribute("crawl.entry_id", entry["id"])
            span.set_attribute("crawl.domain", entry["domain"])
            try:
                extraction = await extractor.extract(entry["domain"])
                if not extraction.success:
                    raise CrawlItemError(extraction.error or "extraction failed")
                facts = normalize_snapshot(extraction.data)
                await repository.complete_crawl_entry(
                    entry_id=entry["id"],
                    raw_json=extraction.data,
                    confidence=extraction.confidence,
                    facts=facts,
                    moderation_status=moderation_status,
                )
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                span.set_attribute("crawl.error", message)
                logger.warning("crawl entry failed entry_id=%s domain=%s error=%s", entry["id"], entry["domain"], message)
                result.failed += 1
                result.errors.append({"id": entry["id"], "error": message})
                try:
                    await repository.fail_crawl_entry(entry["id"], error=message)
                except Exception:
                    logger.exception("crawl entry fail write failed entry_id=%s", entry["id"])
                continue

            result.completed += 1

    logger.info(
        "crawl batch processed=%s completed=%s failed=%s",
        result.processed,
        result.completed,
        result.failed,
    )
    return result


async def normalize_pending_snapshots(repository, *, limit: int = 20, auto_approve: bool = True) -> NormalizeRunResult:
    snapshots = await repository.list_unnormalized_snapshots(limit=limit)
    result = NormalizeRunResult()
    moderation_status = moderation_status_for_pipeline(auto_approve)
    for snapshot in snapshots:
        result.processed += 1
        try:
            facts = normalize_snapshot(snapshot["raw_json"])
            result.inserted += await repository.record_snapshot_facts(
                snapshot_id=snapshot["id"],
                institution_id=snapshot["institution_id"],
                as_of=snapshot["as_of"],
                facts=facts,
                moderation_status=moderation_status,
            )
        except Exception as exc:
            logger.warning("snapshot normalization failed snapshot_id=%s error=%s", snapshot["id"], exc)
            result.errors.append({"id": snapshot["id"], "error": str(exc)})
    return result

async def reap_expired_leases(repository, *, lease_seconds: int = 900, limit: int = 100) -> LeaseReapResult:
    """Fail crawl entries left in ``processing`` longer than ``lease_seconds``.

    A worker that dies mid-batch never completes or fails its entries. Until they
    are reaped they hold the institution's open-entry slot and refresh skips it.
    """
    rows = await repository.reap_expired_crawl_entries(lease_seconds=lease_seconds, limit=limit)
    result = LeaseReapResult(reaped=len(rows), entry_ids=[row["id"] for row in rows])
    if rows:
        logger.warning("crawl leases expired reaped=%s lease_seconds=%s", result.reaped, lease_seconds)
    return result
