from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from atlas_api.schemas.seeds import BatchError

FactProvenance = Literal["CRAWL", "CLAIM", "GOOGLE", "ADMIN"]
ModerationStatus = Literal["PENDING", "APPROVED", "REJECTED"]


class FactOut(BaseModel):
    institution_id: str
    fact_key: str
    fact_value: Any
    as_of: datetime
    provenance: FactProvenance
    moderation_status: ModerationStatus
    verified_by: str | None = None
    verified_at: datetime | None = None
    created_at: datetime


class FactModerateRequest(BaseModel):
    institution_id: str = Field(min_length=1)
    fact_key: str = Field(min_length=1)
    as_of: datetime
    status: Literal["APPROVED", "REJECTED"]


class FactInput(BaseModel):
    fact_key: str = Field(min_length=1)
    fact_value: Any


class NormalizeRunOut(BaseModel):
    processed: int
    inserted: int
    errors: list[BatchError] = Field(default_factory=list)
