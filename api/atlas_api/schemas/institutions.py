from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from atlas_api.schemas.facts import FactOut

TrustTier = Literal["GOLD", "SILVER", "BRONZE"]


class InstitutionOut(BaseModel):
    id: str
    canonical_name: str
    addr_std: str | None = None
    city: str | None = None
    state: str | None = None
    phone: str | None = None
    domain: str | None = None
    lat: float | None = None
    lng: float | None = None
    google_place_id: str | None = None
    created_at: datetime
    updated_at: datetime
    facts: list[FactOut] = Field(default_factory=list)
    tier: TrustTier


class SignalsUpdateRequest(BaseModel):
    training_velocity: float | None = Field(default=None, ge=0, le=1)
    schedule_reliability: float | None = Field(default=None, ge=0, le=1)
    safety_notes: str | None = Field(default=None, max_length=500)


class SignalsOut(BaseModel):
    institution_id: str
    inserted: int
    training_velocity: float | None = None
    schedule_reliability: float | None = None
    tier: TrustTier


class SnapshotChangeOut(BaseModel):
    fact_key: str
    previous: Any = None
    current: Any = None


class InstitutionChangesOut(BaseModel):
    institution_id: str
    previous_snapshot_id: str | None = None
    current_snapshot_id: str | None = None
    changes: list[SnapshotChangeOut] = Field(default_factory=list)


class PlaceImportRequest(BaseModel):
    place: dict[str, Any]


class PlaceImportOut(BaseModel):
    institution_id: str
    queue_id: str | None = None
    is_new: bool
