from __future__ import annotations

import pytest

from atlas_api.services.tiers import compute_tier


@pytest.mark.parametrize(
    ("velocity", "reliability", "expected"),
    [
        (0.9, 0.9, "GOLD"),
        (0.80, 0.85, "GOLD"),
        (0.65, 0.75, "SILVER"),
        (0.9, 0.8, "SILVER"),
        (0.3, 0.3, "BRONZE"),
        (0.95, 0.5, "BRONZE"),
        (None, None, "BRONZE"),
        (0.9, None, "BRONZE"),
    ],
)
def test_compute_tier(velocity: float | None, reliability: float | None, expected: str) -> None:
    assert compute_tier(velocity, reliability) == expected
