from __future__ import annotations

import asyncio
from typing import Any

from atlas_worker.jobs.cadence import PipelineStep
from atlas_worker.jobs.runner import run_due_steps


class FakePipelineClient:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str, int | None]] = []

    async def run_step(self, step: str, *, limit: int | None = None) -> dict[str, Any]:
        self.calls.append((step, limit))
        if step in self.failing:
            raise RuntimeError(f"{step} endpoint returned 503")
        return {"processed": 1, "errors": []}


STEPS = [
    PipelineStep("resolve", 300, 50),
    PipelineStep("crawl", 60, 20),
    PipelineStep("dedupe", 3600),
]


def test_first_cycle_runs_every_step() -> None:
    client = FakePipelineClient()
    last_runs: dict[str, float] = {}

    report = asyncio.run(run_due_steps(client, STEPS, last_runs, now=1000.0))

    assert report.ran == ["resolve", "crawl", "dedupe"]
    assert report.failed == []
    assert client.calls == [("resolve", 50), ("crawl", 20), ("dedupe", None)]
    assert last_runs == {"resolve": 1000.0, "crawl": 1000.0, "dedupe": 1000.0}


def test_only_due_steps_run() -> None:
    client = FakePipelineClient()
    last_runs = {"resolve": 1000.0, "crawl": 1000.0, "dedupe": 1000.0}

    report = asyncio.run(run_due_steps(client, STEPS, last_runs, now=1061.0))

    assert report.ran == ["crawl"]
    assert last_runs["crawl"] == 1061.0
    assert last_runs["resolve"] == 1000.0


def test_failed_step_is_retried_next_cycle_and_others_continue() -> None:
    client = FakePipelineClient(failing={"crawl"})
    last_runs: dict[str, float] = {}

    report = asyncio.run(run_due_steps(client, STEPS, last_runs, now=1000.0))

    assert report.failed == ["crawl"]
    assert report.ran == ["resolve", "dedupe"]
    assert "crawl" not in last_runs
    assert report.results["dedupe"] == {"processed": 1, "errors": []}
