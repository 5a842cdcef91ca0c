from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

from atlas_worker.jobs.cadence import PipelineStep, is_due

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class CycleReport:
    ran: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    results: dict[str, dict[str, Any]] = field(default_factory=dict)


async def run_due_steps(
    client,
    steps: list[PipelineStep],
    last_runs: dict[str, float],
    *,
    now: float,
) -> CycleReport:
    """Run every step whose interval has elapsed.

    A failing step is logged and keeps its previous ``last_runs`` entry so it is
    retried next cycle; the remaining steps still run.
    """
    report = CycleReport()
    for step in steps:
        if not is_due(last_runs.get(step.name), now, step.interval_seconds):
            continue
        with tracer.start_as_current_span("worker.pipeline_step") as span:
            span.set_attribute("pipeline.step", step.name)
            try:
                result = await client.run_step(step.name, limit=step.limit)
            except Exception:
                logger.exception("pipeline step failed step=%s", step.name)
                report.failed.append(step.name)
                continue

        last_runs[step.name] = now
        report.ran.append(step.name)
        report.results[step.name] = result
        errors = result.get("errors") if isinstance(result, dict) else None
        logger.info(
            "pipeline step finished step=%s result=%s item_errors=%s",
            step.name,
            {key: value for key, value in result.items() if key != "errors"} if isinstance(result, dict) else result,
            len(errors) if isinstance(errors, list) else 0,
        )
    return report
