from __future__ import annotations

import asyncio
import logging
import time

from opentelemetry import trace

from atlas_worker.core.config import get_settings
from atlas_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from atlas_worker.jobs.cadence import build_schedule, next_backoff
from atlas_worker.jobs.runner import run_due_steps
from atlas_worker.services.pipeline_client import PipelineClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = PipelineClient(
        base_url=settings.api_base_url,
        scheduler_key=settings.scheduler_key,
        timeout_seconds=settings.request_timeout_seconds,
    )
    steps = build_schedule(settings)
    last_runs: dict[str, float] = {}
    backoff = settings.poll_interval_seconds

    try:
        while True:
            with tracer.start_as_current_span("worker.cycle"):
                report = await run_due_steps(client, steps, last_runs, now=time.monotonic())

            if report.failed:
                backoff = next_backoff(
                    backoff,
                    base_seconds=settings.poll_interval_seconds,
                    max_seconds=settings.max_backoff_seconds,
                )
                logger.warning("worker cycle had failures steps=%s; retry in %.1fs", report.failed, backoff)
                await asyncio.sleep(backoff)
                continue

            backoff = settings.poll_interval_seconds
            await asyncio.sleep(settings.poll_interval_seconds)
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
