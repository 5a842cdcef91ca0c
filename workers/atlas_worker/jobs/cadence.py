from __future__ import annotations

import random
from dataclasses import dataclass

from atlas_worker.core.config import Settings


@dataclass(frozen=True, slots=True)
class PipelineStep:
    name: str
    interval_seconds: float
    limit: int | None = None


def build_schedule(settings: Settings) -> list[PipelineStep]:
    """Steps in data-flow order: a seed resolved in a cycle can be promoted and crawled in the same cycle."""
    return [
        PipelineStep("resolve", settings.resolve_interval_seconds, settings.resolve_batch_size),
        PipelineStep("promote", settings.promote_interval_seconds, settings.promote_batch_size),
        PipelineStep("reap", settings.reap_interval_seconds, settings.reap_batch_size),
        PipelineStep("refresh", settings.refresh_interval_seconds, settings.refresh_batch_size),
        PipelineStep("crawl", settings.crawl_interval_seconds, settings.crawl_batch_size),
        PipelineStep("normalize", settings.normalize_interval_seconds, settings.normalize_batch_size),
        PipelineStep("dedupe", settings.dedupe_interval_seconds),
    ]


def is_due(last_run_at: float | None, now: float, interval_seconds: float) -> bool:
    if last_run_at is None:
        return True
    return now - last_run_at >= interval_seconds


def next_backoff(
    current: float,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter: float | None = None,
) -> float:
    spread = random.uniform(0.0, 0.5) if jitter is None else jitter
    return min(max(current, base_seconds) * (2.0 + spread), max_seconds)
