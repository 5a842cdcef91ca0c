from __future__ import annotations

from typing import Literal

TrustTier = Literal["GOLD", "SILVER", "BRONZE"]

GOLD_VELOCITY = 0.80
GOLD_RELIABILITY = 0.85
SILVER_VELOCITY = 0.60
SILVER_RELIABILITY = 0.70


def compute_tier(velocity: float | None, reliability: float | None) -> TrustTier:
    """Derive the trust tier from training velocity and schedule reliability.

    Unknown metrics count as 0, so missing data can only keep a school at BRONZE.
    """
    velocity_value = velocity if velocity is not None else 0.0
    reliability_value = reliability if reliability is not None else 0.0

    if velocity_value >= GOLD_VELOCITY and reliability_value >= GOLD_RELIABILITY:
        return "GOLD"
    if velocity_value >= SILVER_VELOCITY and reliability_value >= SILVER_RELIABILITY:
        return "SILVER"
    return "BRONZE"
