from __future__ import annotations

from functools import lru_cache
from typing import Any

import httpx

from atlas_api.core.config import get_settings

FIELD_MASK = ",".join(
    f"places.{field}"
    for field in (
        "id",
        "displayName",
        "formattedAddress",
        "addressComponents",
        "nationalPhoneNumber",
        "websiteUri",
        "location",
        "types",
        "rating",
        "userRatingCount",
        "businessStatus",
        "priceLevel",
    )
)


class PlacesError(Exception):
    """Raised when the Places search call fails."""


class PlacesClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def search_text(self, *, city: str, query: str | None = None, max_results: int = 20) -> list[dict[str, Any]]:
        if not self.api_key:
            raise PlacesError("places API key is not configured")

        body = {
            "textQuery": f"{query or 'flight school'} in {city}",
            "maxResultCount": max(1, min(max_results, 20)),
        }
        headers = {"X-Goog-Api-Key": self.api_key, "X-Goog-FieldMask": FIELD_MASK}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/v1/places:searchText", json=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PlacesError(f"places search failed with HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise PlacesError(f"places search unavailable: {type(exc).__name__}") from exc

        places = response.json().get("places")
        if not isinstance(places, list):
            return []
        return [to_place_record(place) for place in places if isinstance(place, dict)]


def to_place_record(place: dict[str, Any]) -> dict[str, Any]:
    """Flatten a Places API (New) result into the snake_case record used for seeds and facts."""
    display_name = place.get("displayName")
    location = place.get("location") if isinstance(place.get("location"), dict) else {}
    components = []
    for component in place.get("addressComponents") or []:
        if isinstance(component, dict):
            components.append(
                {
                    "long_text": component.get("longText"),
                    "short_text": component.get("shortText"),
                    "types": component.get("types") or [],
                }
            )
    lat = location.get("latitude")
    lng = location.get("longitude")
    return {
        "place_id": place.get("id"),
        "name": display_name.get("text") if isinstance(display_name, dict) else display_name,
        "formatted_address": place.get("formattedAddress"),
        "address_components": components,
        "phone": place.get("nationalPhoneNumber"),
        "website": place.get("websiteUri"),
        "location": {"lat": lat, "lng": lng} if lat is not None and lng is not None else None,
        "types": place.get("types") or [],
        "rating": place.get("rating"),
        "user_rating_count": place.get("userRatingCount"),
        "business_status": place.get("businessStatus"),
        "price_level": place.get("priceLevel"),
    }


def component_text(record: dict[str, Any], component_type: str) -> str | None:
    for component in record.get("address_components") or []:
        if component_type in (component.get("types") or []):
            return component.get("short_text") or component.get("long_text")
    return None


@lru_cache
def get_places_client() -> PlacesClient:
    settings = get_settings()
    return PlacesClient(
        base_url=settings.places_base_url,
        api_key=settings.places_api_key,
        timeout_seconds=settings.places_timeout_seconds,
    )
