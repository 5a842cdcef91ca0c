from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

FactKind = Literal["string", "number", "string_array", "enum", "enum_array", "object", "object_array"]
Provenance = Literal["CRAWL", "CLAIM", "GOOGLE", "ADMIN"]
ModerationStatus = Literal["PENDING", "APPROVED", "REJECTED"]

PROGRAM_TYPES = ("PPL", "IR", "CPL", "CFI", "CFII", "ME")
COST_BANDS = ("LOW", "MID", "HIGH")
TEXT_LIMIT = 500


class FactValidationError(ValueError):
    """Raised when a fact key is unknown or its value does not match the declared kind."""


@dataclass(frozen=True, slots=True)
class FactSpec:
    key: str
    kind: FactKind
    choices: tuple[str, ...] = ()
    max_length: int | None = None
    minimum: float | None = None
    maximum: float | None = None


@dataclass(slots=True)
class NormalizedFact:
    fact_key: str
    fact_value: Any


FACT_VOCABULARY: dict[str, FactSpec] = {
    spec.key: spec
    for spec in (
        FactSpec("program.type", "enum_array", choices=PROGRAM_TYPES),
        FactSpec("cost.band", "enum", choices=COST_BANDS),
        FactSpec("cost.notes", "string", max_length=TEXT_LIMIT),
        FactSpec("fleet.aircraft", "string_array"),
        FactSpec("fleet.count", "number", minimum=0),
        FactSpec("location.airport_code", "string", max_length=4),
        FactSpec("location.address", "string", max_length=TEXT_LIMIT),
        FactSpec("contact.email", "string", max_length=320),
        FactSpec("contact.phone", "string", max_length=32),
        FactSpec("rating.value", "number", minimum=0, maximum=5),
        FactSpec("rating.count", "number", minimum=0),
        FactSpec("business.status", "string"),
        FactSpec("price.level", "string"),
        FactSpec("photos", "object_array"),
        FactSpec("opening_hours", "object"),
        FactSpec("google.coordinates", "object"),
        FactSpec("google.place_id", "string"),
        FactSpec("google.place_types", "string_array"),
        FactSpec("signals.training_velocity", "number", minimum=0, maximum=1),
        FactSpec("signals.schedule_reliability", "number", minimum=0, maximum=1),
        FactSpec("signals.safety_notes", "string", max_length=TEXT_LIMIT),
    )
}

CLAIM_EDITABLE_KEYS = frozenset(
    {"contact.email", "contact.phone", "program.type", "fleet.aircraft", "fleet.count", "cost.band"}
)


def validate_fact_value(fact_key: str, value: Any) -> Any:
    spec = FACT_VOCABULARY.get(fact_key)
    if spec is None:
        raise FactValidationError(f"unknown fact key: {fact_key}")
    if value is None:
        raise FactValidationError(f"{fact_key} must not be null")

    if spec.kind == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise FactValidationError(f"{fact_key} must be a number")
        if spec.minimum is not None and value < spec.minimum:
            raise FactValidationError(f"{fact_key} must be >= {spec.minimum}")
        if spec.maximum is not None and value > spec.maximum:
            raise FactValidationError(f"{fact_key} must be <= {spec.maximum}")
    elif spec.kind in {"string", "enum"}:
        if not isinstance(value, str) or not value.strip():
            raise FactValidationError(f"{fact_key} must be a non-empty string")
        if spec.kind == "enum" and value not in spec.choices:
            raise FactValidationError(f"{fact_key} must be one of: {', '.join(spec.choices)}")
        if spec.max_length is not None and len(value) > spec.max_length:
            raise FactValidationError(f"{fact_key} must be at most {spec.max_length} characters")
    elif spec.kind in {"string_array", "enum_array"}:
        if not isinstance(value, list) or not value:
            raise FactValidationError(f"{fact_key} must be a non-empty list")
        if not all(isinstance(item, str) and item.strip() for item in value):
            raise FactValidationError(f"{fact_key} must contain only non-empty strings")
        if spec.kind == "enum_array":
            invalid = sorted({item for item in value if item not in spec.choices})
            if invalid:
                raise FactValidationError(f"{fact_key} has unknown values: {', '.join(invalid)}")
    elif spec.kind == "object":
        if not isinstance(value, dict) or not value:
            raise FactValidationError(f"{fact_key} must be a non-empty object")
    elif spec.kind == "object_array":
        if not isinstance(value, list) or not value or not all(isinstance(item, dict) for item in value):
            raise FactValidationError(f"{fact_key} must be a non-empty list of objects")
    return value


def normalize_snapshot(raw_json: Mapping[str, Any]) -> list[NormalizedFact]:
    """Map an extracted crawl payload onto the fact vocabulary.

    Absent or empty source fields produce no fact. Every emitted value is
    validated against its declared kind.
    """
    facts: list[NormalizedFact] = []

    programs = _string_items(raw_json.get("programs"))
    if programs:
        program_types = parse_programs(programs)
        if program_types:
            facts.append(NormalizedFact("program.type", program_types))

    pricing = _string_items(raw_json.get("pricing"))
    if pricing:
        band, notes = parse_pricing(pricing)
        if band:
            facts.append(NormalizedFact("cost.band", band))
        if notes:
            facts.append(NormalizedFact("cost.notes", notes))

    fleet = _string_items(raw_json.get("fleet"))
    if fleet:
        aircraft, count = parse_fleet(fleet)
        if aircraft:
            facts.append(NormalizedFact("fleet.aircraft", aircraft))
        if count is not None:
            facts.append(NormalizedFact("fleet.count", count))

    location = _text(raw_json.get("location"))
    if location:
        airport_code, address = parse_location(location)
        if airport_code:
            facts.append(NormalizedFact("location.airport_code", airport_code))
        if address:
            facts.append(NormalizedFact("location.address", address))

    email, phone = parse_contact(_text(raw_json.get("contact")) or "")
    email = email or parse_contact(_text(raw_json.get("email")) or "")[0]
    phone = phone or parse_contact(_text(raw_json.get("phone")) or "")[1]
    if email:
        facts.append(NormalizedFact("contact.email", email))
    if phone:
        facts.append(NormalizedFact("contact.phone", phone))

    for fact in facts:
        validate_fact_value(fact.fact_key, fact.fact_value)
    return facts


_PROGRAM_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("CFII", re.compile(r"\bcfii\b|instrument instructor")),
    ("CFI", re.compile(r"\bcfi\b|flight instructor")),
    ("PPL", re.compile(r"\bprivate\b|\bppl\b|^pilot licen[cs]e$")),
    ("IR", re.compile(r"\binstrument\b|\bifr\b|\bir\b")),
    ("CPL", re.compile(r"\bcommercial\b|\bcpl\b")),
    ("ME", re.compile(r"\bmulti[- ]?engine\b|\bmulti\b|\bmei?\b|\bamel\b")),
)


def parse_programs(programs: list[str]) -> list[str]:
    matched: list[str] = []
    for program in programs:
        normalized = program.strip().lower()
        for program_type, pattern in _PROGRAM_RULES:
            if pattern.search(normalized):
                if program_type not in matched:
                    matched.append(program_type)
                break
    return matched


_DOLLAR_RE = re.compile(r"\$[\d,]+")
_LOW_COST_RE = re.compile(r"\b(?:affordable|low|budget)\b")
_HIGH_COST_RE = re.compile(r"\b(?:premium|high|luxury)\b")


def parse_pricing(pricing: list[str]) -> tuple[str | None, str | None]:
    text = "; ".join(pricing).strip()
    if not text:
        return None, None

    amounts = []
    for match in _DOLLAR_RE.findall(text):
        digits = match.replace("$", "").replace(",", "")
        if digits:
            amounts.append(int(digits))

    if amounts:
        average = sum(amounts) / len(amounts)
        if average < 10000:
            band = "LOW"
        elif average <= 20000:
            band = "MID"
        else:
            band = "HIGH"
    else:
        lowered = text.lower()
        if _LOW_COST_RE.search(lowered):
            band = "LOW"
        elif _HIGH_COST_RE.search(lowered):
            band = "HIGH"
        else:
            band = "MID"

    return band, text[:TEXT_LIMIT]


_AIRCRAFT_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(Cessna\s+\d+[A-Z]?)",
        r"(Piper\s+PA-?\d+)",
        r"(Beechcraft\s+\w+)",
        r"(Cirrus\s+SR\d+)",
        r"(Diamond\s+DA\d+)",
        r"(Mooney\s+\w+)",
        r"(Bonanza\s+\w+)",
        r"(Cherokee\s+\w+)",
        r"(Warrior\s+\w+)",
        r"(Archer\s+\w+)",
        r"(Arrow\s+\w+)",
        r"(Skyhawk(?:\s+\w+)?)",
        r"\b(C172)\b",
        r"\b(C152)\b",
    )
)
_FLEET_COUNT_RE = re.compile(r"(\d+)\s*(?:aircraft|airplanes?|planes?)\b", re.IGNORECASE)


def parse_fleet(fleet: list[str]) -> tuple[list[str], int | None]:
    aircraft: list[str] = []
    seen: set[str] = set()
    total: int | None = None

    for item in fleet:
        for pattern in _AIRCRAFT_PATTERNS:
            match = pattern.search(item)
            if not match:
                continue
            model = match.group(1).strip()
            if model.casefold() not in seen:
                seen.add(model.casefold())
                aircraft.append(model)

        count_match = _FLEET_COUNT_RE.search(item)
        if count_match:
            total = (total or 0) + int(count_match.group(1))

    return aircraft, total


_AIRPORT_PREFIX_RE = re.compile(r"^([A-Z]{3,4})(?:\s|$|-)")


def parse_location(location: str) -> tuple[str | None, str | None]:
    trimmed = location.strip()
    match = _AIRPORT_PREFIX_RE.match(trimmed)
    if match:
        return match.group(1), None
    return None, trimmed[:TEXT_LIMIT]


_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PHONE_RE = re.compile(r"(\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4})")


def parse_contact(contact: str) -> tuple[str | None, str | None]:
    email_match = _EMAIL_RE.search(contact)
    email = email_match.group(0) if email_match else None

    phone = None
    phone_match = _PHONE_RE.search(contact)
    if phone_match:
        digits = re.sub(r"\D", "", phone_match.group(1))
        if len(digits) == 10:
            phone = digits
    return email, phone


def normalize_google_places(place: Mapping[str, Any]) -> list[NormalizedFact]:
    """Map a Places record (snake_case keys) onto GOOGLE-provenance facts."""
    facts: list[NormalizedFact] = []

    rating = place.get("rating")
    if _is_number(rating):
        facts.append(NormalizedFact("rating.value", rating))
    rating_count = place.get("user_rating_count")
    if _is_number(rating_count):
        facts.append(NormalizedFact("rating.count", rating_count))

    for source_key, fact_key in (
        ("business_status", "business.status"),
        ("price_level", "price.level"),
        ("phone", "contact.phone"),
        ("formatted_address", "location.address"),
        ("place_id", "google.place_id"),
    ):
        value = _text(place.get(source_key))
        if value:
            facts.append(NormalizedFact(fact_key, value[:TEXT_LIMIT]))

    photos = place.get("photos")
    if isinstance(photos, list) and photos and all(isinstance(item, dict) for item in photos):
        facts.append(NormalizedFact("photos", photos))

    opening_hours = place.get("opening_hours")
    if isinstance(opening_hours, dict) and opening_hours:
        facts.append(NormalizedFact("opening_hours", opening_hours))

    airport_code = extract_airport_code(
        name=_text(place.get("name")),
        formatted_address=_text(place.get("formatted_address")),
        address_components=place.get("address_components"),
        types=_string_items(place.get("types")),
    )
    if airport_code:
        facts.append(NormalizedFact("location.airport_code", airport_code))

    location = place.get("location")
    if isinstance(location, Mapping) and _is_number(location.get("lat")) and _is_number(location.get("lng")):
        facts.append(NormalizedFact("google.coordinates", {"lat": location["lat"], "lng": location["lng"]}))

    types = _string_items(place.get("types"))
    if types:
        facts.append(NormalizedFact("google.place_types", types))

    for fact in facts:
        validate_fact_value(fact.fact_key, fact.fact_value)
    return facts


COUNTRY_CODES = frozenset(
    {
        "USA", "CAN", "MEX", "GBR", "FRA", "DEU", "ITA", "ESP", "NLD", "BEL", "AUS", "NZL", "JPN",
        "CHN", "IND", "BRA", "ARG", "CHL", "COL", "PER", "RUS", "UKR", "POL", "SWE", "NOR", "DNK",
        "FIN", "CHE", "AUT", "PRT", "GRC", "TUR", "EGY", "ZAF", "KEN", "NGA", "THA", "IDN", "PHL",
        "VNM", "KOR", "SGP", "MYS", "ARE", "SAU", "ISR", "IRN", "IRQ", "PAK", "BGD",
    }
)
_ICAO_RE = re.compile(r"\b(K[A-Z]{3})\b")
_PAREN_CODE_RE = re.compile(r"\(([A-Z]{3,4})\)")
_AFTER_AIRPORT_RE = re.compile(r"Airport[-\s]+([A-Z]{3,4})\b", re.IGNORECASE)
_BEFORE_AIRPORT_RE = re.compile(r"\b([A-Z]{3,4})\s+Airport", re.IGNORECASE)
_ANY_CODE_RE = re.compile(r"\b([A-Z]{3,4})\b")


def extract_airport_code(
    *,
    name: str | None,
    formatted_address: str | None,
    address_components: Any,
    types: list[str],
) -> str | None:
    at_airport = any("airport" in place_type for place_type in types)

    if name:
        for pattern in (_ICAO_RE, _PAREN_CODE_RE):
            code = _accept_code(pattern, name)
            if code:
                return code
        code = _accept_code(_AFTER_AIRPORT_RE, name, upper=True)
        if code:
            return f"K{code}" if len(code) == 3 and at_airport else code
        code = _accept_code(_BEFORE_AIRPORT_RE, name, upper=True)
        if code:
            return code

    if formatted_address:
        for pattern in (_ICAO_RE, _PAREN_CODE_RE, _BEFORE_AIRPORT_RE, _ANY_CODE_RE):
            code = _accept_code(pattern, formatted_address, upper=pattern is _BEFORE_AIRPORT_RE)
            if code:
                return code

    if isinstance(address_components, list):
        for component in address_components:
            if not isinstance(component, Mapping):
                continue
            text = (_text(component.get("long_text")) or _text(component.get("short_text")) or "").upper()
            component_types = _string_items(component.get("types"))
            if "airport" in component_types or "AIRPORT" in text:
                code = _accept_code(_ICAO_RE, text) or _accept_code(_ANY_CODE_RE, text)
                if code:
                    return f"K{code}" if len(code) == 3 and at_airport else code
    return None


def _accept_code(pattern: re.Pattern[str], text: str, *, upper: bool = False) -> str | None:
    match = pattern.search(text)
    if not match:
        return None
    code = match.group(1).upper() if upper else match.group(1)
    if code in COUNTRY_CODES:
        return None
    if len(code) == 3 or (len(code) == 4 and code.startswith("K")):
        return code
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _string_items(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]
