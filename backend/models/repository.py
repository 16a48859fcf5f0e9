"""
VulnWatch - Repository Model
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from backend.db.database import Base
import uuid


class Repository(Base):
    """A monitored source repository and its ingestion checkpoint"""
    __tablename__ = "repositories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    url: Mapped[str] = mapped_column(String(512), unique=True, index=True)

    # Parsed from the canonical URL
    host: Mapped[str] = mapped_column(String(255))
    owner: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255))
    default_branch: Mapped[str] = mapped_column(String(255), default="main")
    language: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Ingestion checkpoint, written only by the commit ingestor
    checkpoint_sha: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    checkpoint_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Soft deregistration
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            "id": self.id,
            "url": self.url,
            "owner": self.owner,
            "name": self.name,
            "default_branch": self.default_branch,
            "language": self.language,
            "checkpoint_sha": self.checkpoint_sha,
            "checkpoint_at": self.checkpoint_at.isoformat() if self.checkpoint_at else None,
            "active": self.active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
