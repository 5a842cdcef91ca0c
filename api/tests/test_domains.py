from __future__ import annotations

import pytest

from atlas_api.core.domains import email_domain, normalize_domain, normalize_phone


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("sunriseaviation.com", "sunriseaviation.com"),
        ("https://www.SunriseAviation.com/about", "sunriseaviation.com"),
        ("http://flight.example.org:8080", "flight.example.org"),
        ("  www.eagle-aero.net.  ", "eagle-aero.net"),
        ("not a domain", None),
        ("localhost", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_domain(raw: str | None, expected: str | None) -> None:
    assert normalize_domain(raw) == expected


def test_email_domain() -> None:
    assert email_domain("ops@www.sunriseaviation.com") == "sunriseaviation.com"
    assert email_domain("no-at-sign") is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("512-555-0100", "5125550100"),
        ("(512) 555-0100", "5125550100"),
        ("+1 512 555 0100", "5125550100"),
        ("555-0100", None),
        (None, None),
    ],
)
def test_normalize_phone(raw: str | None, expected: str | None) -> None:
    assert normalize_phone(raw) == expected
