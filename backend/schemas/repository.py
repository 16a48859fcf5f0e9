"""
VulnWatch - Repository Schemas
"""
from datetime import datetime
from typing import Optional
from pydantic import Field, field_validator

from backend.schemas.base import CamelModel


class RepositoryCreate(CamelModel):
    """Schema for registering a repository"""
    url: str = Field(..., description="Repository URL, https://<host>/<owner>/<repo>")
    language: Optional[str] = Field(None, description="Primary language; looked up on the host when omitted")
    default_branch: Optional[str] = None

    @field_validator("url")
    @classmethod
    def strip_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("URL cannot be empty")
        return v


class RepositoryResponse(CamelModel):
    """Schema for repository response"""
    id: str
    url: str
    owner: str
    name: str
    default_branch: str
    language: Optional[str] = None
    checkpoint_sha: Optional[str] = None
    checkpoint_at: Optional[datetime] = None
    active: bool
    created_at: datetime
