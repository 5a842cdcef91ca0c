from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import httpx

from atlas_api.core.config import get_settings

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = (
    "Extract flight school information from this website: training programs offered, "
    "pricing and cost information, aircraft fleet, airport or address, and contact details. "
    'If the page is an error page or not found, set siteStatus to "404".'
)

EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "programs": {"type": "array", "items": {"type": "string"}},
        "pricing": {"type": "array", "items": {"type": "string"}},
        "fleet": {"type": "array", "items": {"type": "string"}},
        "location": {"type": "string"},
        "contact": {"type": "string"},
        "email": {"type": "string"},
        "phone": {"type": "string"},
        "locations": {"type": "array", "items": {"type": "string"}},
        "financingAvailable": {"type": "boolean"},
        "financingUrl": {"type": "string"},
        "financingTypes": {"type": "array", "items": {"type": "string"}},
        "trainingType": {"type": "array", "items": {"type": "string"}},
        "simulatorAvailable": {"type": "boolean"},
        "instructorCount": {"type": "string"},
        "typicalTimeline": {
            "type": "object",
            "properties": {"minMonths": {"type": "number"}, "maxMonths": {"type": "number"}},
        },
        "siteStatus": {"type": "string"},
    },
}


@dataclass(slots=True)
class ExtractionResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    confidence: float | None = None
    error: str | None = None


class ExtractionClient:
    """Structured extraction over the Firecrawl scrape API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def extract(self, domain: str) -> ExtractionResult:
        if not self.api_key:
            return ExtractionResult(success=False, error="extraction API key is not configured")

        payload = {
            "url": f"https://{domain}",
            "formats": ["json"],
            "onlyMainContent": True,
            "timeout": int(self.timeout_seconds * 1000),
            "jsonOptions": {"schema": EXTRACTION_SCHEMA, "prompt": EXTRACTION_PROMPT},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/v1/scrape", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("extraction transport failure domain=%s error=%s", domain, exc)
            return ExtractionResult(success=False, error=f"extraction transport error: {type(exc).__name__}")

        if response.status_code >= 400:
            return ExtractionResult(success=False, error=f"extraction failed with HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            return ExtractionResult(success=False, error="extraction returned a non-JSON body")

        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("error") if isinstance(body, dict) else None
            return ExtractionResult(success=False, error=str(message or "extraction reported failure"))

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        extracted = data.get("json") or data.get("extract")
        if not isinstance(extracted, dict) or not extracted:
            return ExtractionResult(success=False, error="extraction returned no structured data")
        if str(extracted.get("siteStatus") or "") == "404":
            return ExtractionResult(success=False, error="site returned a not-found page")

        confidence = data.get("confidence")
        return ExtractionResult(
            success=True,
            data=extracted,
            confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
        )


@lru_cache
def get_extraction_client() -> ExtractionClient:
    settings = get_settings()
    return ExtractionClient(
        base_url=settings.extract_base_url,
        api_key=settings.extract_api_key,
        timeout_seconds=settings.extract_timeout_seconds,
    )
