"""
VulnWatch - Bounty Model
"""
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional
from sqlalchemy import String, Float, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from backend.db.database import Base
import uuid


class BountyStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    CLAIMED = "CLAIMED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


BOUNTY_TERMINAL: FrozenSet[BountyStatus] = frozenset({
    BountyStatus.COMPLETED, BountyStatus.FAILED, BountyStatus.EXPIRED,
})

BOUNTY_TRANSITIONS: Dict[BountyStatus, FrozenSet[BountyStatus]] = {
    BountyStatus.OPEN: frozenset({BountyStatus.IN_PROGRESS, BountyStatus.EXPIRED}),
    BountyStatus.IN_PROGRESS: frozenset({BountyStatus.CLAIMED, BountyStatus.FAILED, BountyStatus.EXPIRED}),
    BountyStatus.CLAIMED: frozenset({BountyStatus.COMPLETED, BountyStatus.FAILED}),
    BountyStatus.COMPLETED: frozenset(),
    BountyStatus.FAILED: frozenset(),
    BountyStatus.EXPIRED: frozenset(),
}


class Bounty(Base):
    """Bounty listed on an external platform for a repository"""
    __tablename__ = "bounties"
    __table_args__ = (UniqueConstraint("platform", "external_id", name="uq_bounties_platform_external"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    platform: Mapped[str] = mapped_column(String(50))  # algora, polar, manual
    external_id: Mapped[str] = mapped_column(String(255))

    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    repository_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True, index=True)
    repository_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Explicit references supplied by the platform, used to disambiguate matches
    vulnerability_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    finding_ref: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="USD")

    status: Mapped[str] = mapped_column(String(20), default=BountyStatus.OPEN.value, index=True)
    submission_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def state(self) -> BountyStatus:
        return BountyStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.state in BOUNTY_TERMINAL

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform,
            "external_id": self.external_id,
            "title": self.title,
            "repository_url": self.repository_url,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "submission_id": self.submission_id,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
