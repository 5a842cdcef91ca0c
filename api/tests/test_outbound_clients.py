from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from atlas_api.services.email import EmailDeliveryError, VerificationMailer
from atlas_api.services.places import PlacesClient, PlacesError, component_text, to_place_record


def _mailer(handler, *, api_key: str | None = "re-test", token_ttl_hours: int = 24) -> VerificationMailer:
    return VerificationMailer(
        base_url="https://mail.test",
        api_key=api_key,
        sender="Directory <noreply@example.com>",
        public_base_url="https://directory.test/",
        token_ttl_hours=token_ttl_hours,
        transport=httpx.MockTransport(handler),
    )


def test_verification_email_contains_verify_link() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email-1"})

    mailer = _mailer(handler)
    asyncio.run(mailer.send_verification(email="ops@sunriseaviation.com", token="abc123", institution_name="Sunrise & Co"))

    body = captured["body"]
    assert captured["url"] == "https://mail.test/emails"
    assert body["to"] == ["ops@sunriseaviation.com"]
    assert "https://directory.test/claim/verify?token=abc123" in body["html"]
    assert "Sunrise &amp; Co" in body["html"]
    assert "expires in 24 hours" in body["html"]


def test_verification_email_states_configured_ttl() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email-2"})

    asyncio.run(_mailer(handler, token_ttl_hours=48).send_verification(email="a@b.com", token="t", institution_name="X"))
    asyncio.run(_mailer(handler, token_ttl_hours=1).send_verification(email="a@b.com", token="t", institution_name="X"))

    assert "expires in 48 hours" in bodies[0]["html"]
    assert "expires in 1 hour." in bodies[1]["html"]


def test_verification_email_failure_raises_delivery_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "invalid from"})

    with pytest.raises(EmailDeliveryError):
        asyncio.run(_mailer(handler).send_verification(email="a@b.com", token="t", institution_name="X"))


def test_verification_email_requires_api_key() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("provider must not be called")

    with pytest.raises(EmailDeliveryError):
        asyncio.run(_mailer(handler, api_key=None).send_verification(email="a@b.com", token="t", institution_name="X"))


PLACE = {
    "id": "ChIJ-sunrise",
    "displayName": {"text": "Sunrise Aviation", "languageCode": "en"},
    "formattedAddress": "100 Airport Blvd, Austin, TX 78719, USA",
    "addressComponents": [
        {"longText": "Austin", "shortText": "Austin", "types": ["locality", "political"]},
        {"longText": "Texas", "shortText": "TX", "types": ["administrative_area_level_1", "political"]},
        {"longText": "78719", "shortText": "78719", "types": ["postal_code"]},
    ],
    "nationalPhoneNumber": "(512) 555-0100",
    "websiteUri": "https://www.sunriseaviation.com/",
    "location": {"latitude": 30.19, "longitude": -97.67},
    "rating": 4.8,
    "userRatingCount": 112,
}


def test_to_place_record_flattens_places_result() -> None:
    record = to_place_record(PLACE)

    assert record["place_id"] == "ChIJ-sunrise"
    assert record["name"] == "Sunrise Aviation"
    assert record["location"] == {"lat": 30.19, "lng": -97.67}
    assert record["user_rating_count"] == 112
    assert component_text(record, "administrative_area_level_1") == "TX"
    assert component_text(record, "country") is None


def test_places_search_sends_field_mask_and_query() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["mask"] = request.headers.get("X-Goog-FieldMask")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"places": [PLACE]})

    client = PlacesClient(base_url="https://places.test", api_key="gk", transport=httpx.MockTransport(handler))
    records = asyncio.run(client.search_text(city="Austin, TX", max_results=50))

    assert [record["name"] for record in records] == ["Sunrise Aviation"]
    assert captured["body"] == {"textQuery": "flight school in Austin, TX", "maxResultCount": 20}
    assert "places.websiteUri" in str(captured["mask"])


def test_places_search_maps_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": {"status": "PERMISSION_DENIED"}})

    client = PlacesClient(base_url="https://places.test", api_key="gk", transport=httpx.MockTransport(handler))
    with pytest.raises(PlacesError, match="HTTP 403"):
        asyncio.run(client.search_text(city="Austin, TX"))
