"""
VulnWatch - Submission Model
"""
from datetime import datetime
from typing import List, Optional
from sqlalchemy import String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from backend.db.database import Base
import uuid

SUBMISSION_OPEN = "open"
SUBMISSION_MERGED = "merged"
SUBMISSION_CLOSED = "closed"


class Submission(Base):
    """Remediation pull request opened for a confirmed finding"""
    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    finding_id: Mapped[str] = mapped_column(String(36), ForeignKey("findings.id"), unique=True)

    # Host-side identity of the pull request
    host_ref: Mapped[str] = mapped_column(String(64))  # PR number
    url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=SUBMISSION_OPEN)  # open, merged, closed

    # Bounty matching outcome: linked, none, ambiguous (held for manual link)
    bounty_match: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    bounty_candidates: Mapped[Optional[List]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    finding: Mapped["Finding"] = relationship("Finding", lazy="joined")

    @property
    def is_terminal(self) -> bool:
        return self.status in (SUBMISSION_MERGED, SUBMISSION_CLOSED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "finding_id": self.finding_id,
            "host_ref": self.host_ref,
            "url": self.url,
            "branch": self.branch,
            "status": self.status,
            "bounty_match": self.bounty_match,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
