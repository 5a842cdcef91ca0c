from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from atlas_api.schemas.facts import FactInput

ClaimStatus = Literal["PENDING", "VERIFIED"]


class ClaimRequest(BaseModel):
    institution_id: str = Field(min_length=1)
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")


class ClaimRequestOut(BaseModel):
    claim_id: str
    status: ClaimStatus
    email_sent: bool


class ClaimVerifyRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)


class ClaimOut(BaseModel):
    id: str
    institution_id: str
    email: str
    status: ClaimStatus
    created_at: datetime
    updated_at: datetime


class ClaimEditRequest(BaseModel):
    institution_id: str = Field(min_length=1)
    token: str = Field(min_length=1, max_length=128)
    facts: list[FactInput] = Field(min_length=1, max_length=50)


class ClaimEditOut(BaseModel):
    inserted: int
