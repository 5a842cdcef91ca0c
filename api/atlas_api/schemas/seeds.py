from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SeedIn(BaseModel):
    name: str = Field(min_length=1, max_length=300)
    city: str | None = None
    state: str | None = None
    country: str | None = None
    street_address: str | None = None
    postal_code: str | None = None
    phone: str | None = None
    website: str | None = None
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    google_place_id: str | None = None


class SeedImportRequest(BaseModel):
    seeds: list[SeedIn] = Field(min_length=1, max_length=500)


class QuotaOut(BaseModel):
    allowed: bool
    remaining: int | None = None
    reset_at: datetime | None = None
    error: str | None = None


class SeedImportOut(BaseModel):
    inserted: int
    quota: QuotaOut


class SeedDiscoverRequest(BaseModel):
    city: str = Field(min_length=1, max_length=200)
    query: str | None = Field(default=None, max_length=200)
    max_results: int = Field(default=20, ge=1, le=20)


class SeedDiscoverOut(BaseModel):
    discovered: int
    inserted: int
    quota: QuotaOut


class SeedOut(BaseModel):
    id: str
    name: str
    city: str | None = None
    state: str | None = None
    country: str | None = None
    street_address: str | None = None
    postal_code: str | None = None
    phone: str | None = None
    website: str | None = None
    lat: float | None = None
    lng: float | None = None
    google_place_id: str | None = None
    resolution_method: str | None = None
    confidence: float | None = None
    evidence_json: dict[str, Any] = Field(default_factory=dict)
    promoted_institution_id: str | None = None
    first_seen_at: datetime
    last_seen_at: datetime | None = None
    created_at: datetime


class BatchError(BaseModel):
    id: str
    error: str


class ResolveBatchOut(BaseModel):
    processed: int
    found: int
    missed: int
    errors: list[BatchError] = Field(default_factory=list)


class PromoteBatchOut(BaseModel):
    processed: int
    created: int
    linked: int
    errors: list[BatchError] = Field(default_factory=list)
