from __future__ import annotations

import asyncio

import httpx

from atlas_api.services.resolver import (
    USER_AGENT,
    DomainResolver,
    SeedIdentity,
    candidate_domains,
    name_in_title,
    score_candidate,
)

SUNRISE = SeedIdentity(name="Sunrise Aviation", city="Austin", state="TX", phone="512-555-0100")


def test_candidate_domains_for_generic_suffix() -> None:
    assert candidate_domains("Sunrise Aviation") == [
        "sunriseaviation.com",
        "sunriseflightschool.com",
        "sunriseflight.com",
        "sunrise.com",
        "sunrise-aviation.com",
    ]


def test_candidate_domains_strip_legal_suffix_and_punctuation() -> None:
    domains = candidate_domains("Blue Sky Flyers, LLC")
    assert domains[0] == "blueskyflyers.com"
    assert "blueskyflyersaviation.com" in domains
    assert all("llc" not in domain for domain in domains)


def test_candidate_domains_empty_name() -> None:
    assert candidate_domains("!!!") == []


def test_name_in_title_accepts_half_of_significant_words() -> None:
    assert name_in_title("Sunrise Aviation | Austin", "Sunrise Aviation")
    assert name_in_title("Welcome to Sunrise Flight Training", "Sunrise Aviation")
    assert not name_in_title("Welcome to Sunrise Flight Training", "Sunrise Aviation Academy")
    assert not name_in_title("Domain for sale", "Sunrise Aviation")


def test_score_candidate_combines_signals() -> None:
    html = "<html><title>Sunrise Aviation - Flight Training</title><p>Austin, TX. Call (512) 555-0100</p></html>"
    scored = score_candidate("sunriseaviation.com", html, SUNRISE)

    assert scored is not None
    assert scored.confidence == 1.0
    assert scored.matched_fields == ["domain_pattern", "title", "phone", "location"]
    assert scored.accepted


def test_score_candidate_pattern_alone_is_not_accepted() -> None:
    html = "<title>Parked domain</title><p>Austin TX 512-555-0100</p>"
    scored = score_candidate("sunrise.com", html, SUNRISE)

    assert scored is not None
    assert scored.confidence == 0.6
    assert not scored.accepted


def test_score_candidate_without_title() -> None:
    assert score_candidate("sunrise.com", "<p>no title</p>", SUNRISE) is None


def test_resolver_picks_best_accepted_candidate() -> None:
    seen_agents: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_agents.append(request.headers["User-Agent"])
        if request.url.host == "sunriseaviation.com":
            return httpx.Response(200, text="<title>Sunrise Aviation</title><p>Austin, TX</p>")
        if request.url.host == "sunriseflightschool.com":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(404, text="<title>Not found</title>")

    resolver = DomainResolver(timeout_seconds=1.0, transport=httpx.MockTransport(handler))
    resolution = asyncio.run(resolver.resolve(SUNRISE))

    assert resolution.domain == "sunriseaviation.com"
    assert resolution.confidence == 0.8
    assert resolution.evidence["title"] == "Sunrise Aviation"
    assert resolution.evidence["source_url"] == "https://sunriseaviation.com"
    assert resolution.evidence["matched_fields"] == ["domain_pattern", "title", "location"]
    assert len(resolution.evidence["candidates_tried"]) == 5
    assert set(seen_agents) == {USER_AGENT}


def test_resolver_returns_no_domain_when_nothing_is_accepted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<title>Buy this domain</title>")

    resolver = DomainResolver(timeout_seconds=1.0, transport=httpx.MockTransport(handler))
    resolution = asyncio.run(resolver.resolve(SUNRISE))

    assert resolution.domain is None
    assert resolution.confidence == 0.0
    assert resolution.evidence["candidates_tried"][0] == "sunriseaviation.com"
