from __future__ import annotations

from typing import Any

import httpx

SCHEDULER_KEY_HEADER = "X-Scheduler-Key"

STEP_ENDPOINTS: dict[str, str] = {
    "resolve": "/seeds/resolve",
    "promote": "/seeds/promote",
    "crawl": "/crawl/run",
    "reap": "/crawl/reap",
    "normalize": "/facts/normalize",
    "dedupe": "/dedupe/run",
    "refresh": "/refresh/run",
}


class PipelineClient:
    """Calls the API batch endpoints with the scheduler key."""

    def __init__(
        self,
        base_url: str,
        scheduler_key: str,
        *,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {SCHEDULER_KEY_HEADER: scheduler_key}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def run_step(self, step: str, *, limit: int | None = None) -> dict[str, Any]:
        try:
            path = STEP_ENDPOINTS[step]
        except KeyError as exc:
            raise ValueError(f"unknown pipeline step: {step}") from exc

        params = {"limit": limit} if limit is not None else None
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}{path}", params=params, headers=self.headers)
            response.raise_for_status()
            return response.json()
