"""
VulnWatch - Bounty Schemas
"""
from datetime import datetime
from typing import Optional
from pydantic import Field

from backend.schemas.base import CamelModel


class BountyCreate(CamelModel):
    """Manually entered bounty"""
    repository_url: str
    amount: float = Field(..., gt=0)
    currency: str = "USD"
    title: str = ""
    description: str = ""
    external_id: Optional[str] = None
    cve_id: Optional[str] = None
    finding_id: Optional[str] = None
    deadline: Optional[datetime] = None


class BountyLink(CamelModel):
    """Manual resolution of an ambiguous match"""
    submission_id: str


class PayoutEvent(CamelModel):
    """Payout status pushed by a bounty platform"""
    external_id: str
    state: str = Field(..., pattern="^(pending|paid|rejected)$")
    reason: str = ""


class BountyResponse(CamelModel):
    id: str
    platform: str
    external_id: str
    title: Optional[str] = None
    repository_url: Optional[str] = None
    cve_id: Optional[str] = Field(None, validation_alias="vulnerability_ref")
    finding_id: Optional[str] = Field(None, validation_alias="finding_ref")
    amount: Optional[float] = None
    currency: str
    status: str
    submission_id: Optional[str] = None
    deadline: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
