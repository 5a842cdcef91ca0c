from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import httpx

from atlas_api.core.config import get_settings

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; FlightSchoolResolver/1.0)"
RESOLVED_THRESHOLD = 0.7

WEIGHT_DOMAIN_PATTERN = 0.3
WEIGHT_TITLE = 0.4
WEIGHT_PHONE = 0.2
WEIGHT_LOCATION = 0.1

_LEGAL_SUFFIXES = {"llc", "inc", "corp", "corporation", "co", "ltd", "pllc", "lp"}
_GENERIC_TAIL = {"aviation", "flight", "flying", "school", "academy", "training", "center", "centre"}
_NON_NAME_RE = re.compile(r"[^a-z0-9\s-]")
_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_OG_TITLE_RE = re.compile(r"<meta[^>]*property=[\"']og:title[\"'][^>]*content=[\"']([^\"']+)[\"']", re.IGNORECASE)
_PHONE_RE = re.compile(r"\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")


@dataclass(slots=True)
class SeedIdentity:
    name: str
    city: str | None = None
    state: str | None = None
    phone: str | None = None


@dataclass(slots=True)
class CandidateScore:
    domain: str
    source_url: str
    title: str
    confidence: float
    matched_fields: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.confidence >= RESOLVED_THRESHOLD and "title" in self.matched_fields


@dataclass(slots=True)
class DomainResolution:
    domain: str | None
    confidence: float
    evidence: dict[str, Any]


def name_words(name: str) -> list[str]:
    cleaned = _NON_NAME_RE.sub("", name.lower()).replace("-", " ")
    words = [word for word in cleaned.split() if word]
    while words and words[-1] in _LEGAL_SUFFIXES:
        words.pop()
    return words


def candidate_domains(name: str) -> list[str]:
    words = name_words(name)
    if not words:
        return []

    core = list(words)
    while len(core) > 1 and core[-1] in _GENERIC_TAIL:
        core.pop()

    full_stem = "".join(words)
    core_stem = "".join(core)
    ordered = [
        f"{full_stem}.com",
        f"{core_stem}flightschool.com",
        f"{core_stem}flight.com",
        f"{core_stem}aviation.com",
        f"{core_stem}.com",
    ]
    if len(words) > 1:
        ordered.append(f"{'-'.join(words)}.com")

    candidates: list[str] = []
    for domain in ordered:
        if domain not in candidates:
            candidates.append(domain)
    return candidates


def extract_title(html: str) -> str:
    for pattern in (_TITLE_RE, _OG_TITLE_RE):
        match = pattern.search(html)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return ""


def name_in_title(title: str, name: str) -> bool:
    lowered_title = title.lower()
    lowered_name = name.lower().strip()
    if lowered_name and lowered_name in lowered_title:
        return True

    significant = [word for word in lowered_name.split() if len(word) > 3]
    if not significant:
        return False
    matching = [word for word in significant if word in lowered_title]
    return len(matching) * 2 >= len(significant)


def score_candidate(domain: str, html: str, identity: SeedIdentity) -> CandidateScore | None:
    """Score one fetched page; pages without a title are not candidates."""
    title = extract_title(html)
    if not title:
        return None

    confidence = WEIGHT_DOMAIN_PATTERN
    matched = ["domain_pattern"]

    if name_in_title(title, identity.name):
        confidence += WEIGHT_TITLE
        matched.append("title")

    seed_phone = _digits(identity.phone)
    if seed_phone:
        page_phones = {_digits(found) for found in _PHONE_RE.findall(html)}
        if seed_phone in page_phones or seed_phone[-10:] in page_phones:
            confidence += WEIGHT_PHONE
            matched.append("phone")

    if _location_mentioned(html, identity.city, identity.state):
        confidence += WEIGHT_LOCATION
        matched.append("location")

    return CandidateScore(
        domain=domain,
        source_url=f"https://{domain}",
        title=title,
        confidence=round(min(confidence, 1.0), 4),
        matched_fields=matched,
    )


class DomainResolver:
    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def resolve(self, identity: SeedIdentity) -> DomainResolution:
        candidates = candidate_domains(identity.name)
        if not candidates:
            return DomainResolution(domain=None, confidence=0.0, evidence={"candidates_tried": []})

        best: CandidateScore | None = None
        failures: dict[str, str] = {}
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=self.transport,
        ) as client:
            for domain in candidates:
                try:
                    response = await client.get(f"https://{domain}")
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    failures[domain] = type(exc).__name__
                    continue

                scored = score_candidate(domain, response.text, identity)
                if scored is None or not scored.accepted:
                    continue
                if best is None or scored.confidence > best.confidence:
                    best = scored

        logger.debug(
            "domain resolution name=%s tried=%s failed=%s resolved=%s",
            identity.name,
            len(candidates),
            len(failures),
            best.domain if best else None,
        )
        if best is None:
            return DomainResolution(
                domain=None,
                confidence=0.0,
                evidence={"candidates_tried": candidates, "failures": failures},
            )
        return DomainResolution(
            domain=best.domain,
            confidence=best.confidence,
            evidence={
                "title": best.title,
                "source_url": best.source_url,
                "matched_fields": best.matched_fields,
                "candidates_tried": candidates,
            },
        )


@lru_cache
def get_domain_resolver() -> DomainResolver:
    settings = get_settings()
    return DomainResolver(timeout_seconds=settings.resolver_timeout_seconds)


def _digits(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"\D", "", value)


def _location_mentioned(html: str, city: str | None, state: str | None) -> bool:
    lowered = html.lower()
    for value in (city, state):
        if value and value.strip():
            if re.search(rf"\b{re.escape(value.strip().lower())}\b", lowered):
                return True
    return False
