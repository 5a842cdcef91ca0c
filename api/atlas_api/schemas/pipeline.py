from pydantic import BaseModel, Field

from atlas_api.schemas.seeds import BatchError


class DedupeRunOut(BaseModel):
    merged: int
    promoted: int
    errors: list[BatchError] = Field(default_factory=list)


class RefreshRunOut(BaseModel):
    enqueued: int
    skipped: int
    errors: list[BatchError] = Field(default_factory=list)
