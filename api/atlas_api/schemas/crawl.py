from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from atlas_api.schemas.seeds import BatchError

CrawlStatus = Literal["pending", "processing", "completed", "failed"]


class CrawlEnqueueRequest(BaseModel):
    institution_id: str = Field(min_length=1)


class CrawlEntryOut(BaseModel):
    id: str
    institution_id: str
    domain: str
    status: CrawlStatus
    attempts: int
    scheduled_at: datetime
    last_error: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime


class CrawlEnqueueOut(CrawlEntryOut):
    created: bool


class CrawlBatchOut(BaseModel):
    processed: int
    completed: int
    failed: int
    errors: list[BatchError] = Field(default_factory=list)


class CrawlReapOut(BaseModel):
    reaped: int
    entry_ids: list[str] = Field(default_factory=list)
