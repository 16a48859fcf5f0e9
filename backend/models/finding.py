"""
VulnWatch - Finding Model

A Finding is the (repository, commit, vulnerability) triple under evaluation,
moving through the lifecycle state machine defined here.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from sqlalchemy import String, Integer, Float, Boolean, DateTime, Text, JSON, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from backend.db.database import Base
import uuid


class FindingStatus(str, Enum):
    DETECTED = "DETECTED"
    VERIFIED = "VERIFIED"
    FIX_GENERATED = "FIX_GENERATED"
    FIX_CONFIRMED = "FIX_CONFIRMED"
    HUMAN_REVIEW = "HUMAN_REVIEW"
    CONFIRMED = "CONFIRMED"
    PR_CREATED = "PR_CREATED"
    PR_MERGED = "PR_MERGED"
    REJECTED = "REJECTED"


TERMINAL_STATUSES: FrozenSet[FindingStatus] = frozenset({FindingStatus.PR_MERGED, FindingStatus.REJECTED})

TRANSITIONS: Dict[FindingStatus, FrozenSet[FindingStatus]] = {
    FindingStatus.DETECTED: frozenset({FindingStatus.VERIFIED, FindingStatus.REJECTED}),
    FindingStatus.VERIFIED: frozenset({FindingStatus.FIX_GENERATED, FindingStatus.REJECTED}),
    FindingStatus.FIX_GENERATED: frozenset({
        FindingStatus.FIX_GENERATED, FindingStatus.FIX_CONFIRMED, FindingStatus.REJECTED,
    }),
    FindingStatus.FIX_CONFIRMED: frozenset({
        FindingStatus.HUMAN_REVIEW, FindingStatus.CONFIRMED, FindingStatus.REJECTED,
    }),
    FindingStatus.HUMAN_REVIEW: frozenset({FindingStatus.CONFIRMED, FindingStatus.REJECTED}),
    FindingStatus.CONFIRMED: frozenset({FindingStatus.PR_CREATED}),
    FindingStatus.PR_CREATED: frozenset({FindingStatus.PR_MERGED}),
    FindingStatus.PR_MERGED: frozenset(),
    FindingStatus.REJECTED: frozenset(),
}

# Topological position, used for "already past this stage" checks
STAGE_ORDER: Dict[FindingStatus, int] = {
    FindingStatus.DETECTED: 0,
    FindingStatus.VERIFIED: 1,
    FindingStatus.FIX_GENERATED: 2,
    FindingStatus.FIX_CONFIRMED: 3,
    FindingStatus.HUMAN_REVIEW: 4,
    FindingStatus.CONFIRMED: 5,
    FindingStatus.PR_CREATED: 6,
    FindingStatus.PR_MERGED: 7,
    FindingStatus.REJECTED: 8,
}


def can_transition(current: FindingStatus, target: FindingStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


_TERMINAL_SQL = "status NOT IN ('PR_MERGED', 'REJECTED')"


class Finding(Base):
    """Lifecycle record for one (repository, commit, vulnerability) triple"""
    __tablename__ = "findings"
    __table_args__ = (
        Index(
            "uq_findings_active_triple",
            "repository_id", "commit_sha", "vulnerability_id",
            unique=True,
            sqlite_where=text(_TERMINAL_SQL),
            postgresql_where=text(_TERMINAL_SQL),
        ),
        Index("ix_findings_triple", "repository_id", "commit_sha", "vulnerability_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    repository_id: Mapped[str] = mapped_column(String(36), ForeignKey("repositories.id"))
    commit_sha: Mapped[str] = mapped_column(String(64))
    vulnerability_id: Mapped[str] = mapped_column(String(64), index=True)  # catalog id, e.g. CVE-2024-0001

    status: Mapped[str] = mapped_column(String(30), default=FindingStatus.DETECTED.value, index=True)

    # Confidence scores in [0, 1], unset until the stage has run
    presence_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fix_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    requires_human_review: Mapped[bool] = mapped_column(Boolean, default=False)

    # Commit context
    commit_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    commit_diff: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    affected_files: Mapped[List] = mapped_column(JSON, default=list)
    evidence: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Candidate fix
    patch_diff: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    patch_files: Mapped[Optional[Dict]] = mapped_column(JSON, nullable=True)  # path -> patched content
    fix_attempts: Mapped[int] = mapped_column(Integer, default=0)

    verification_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submission_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    repository: Mapped["Repository"] = relationship("Repository", lazy="joined")

    @property
    def state(self) -> FindingStatus:
        return FindingStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATUSES

    @property
    def has_patch(self) -> bool:
        return self.patch_files is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "repository_id": self.repository_id,
            "repository_url": self.repository.url if self.repository else None,
            "commit_sha": self.commit_sha,
            "vulnerability_id": self.vulnerability_id,
            "status": self.status,
            "presence_confidence": self.presence_confidence,
            "fix_confidence": self.fix_confidence,
            "requires_human_review": self.requires_human_review,
            "affected_files": self.affected_files or [],
            "fix_attempts": self.fix_attempts,
            "submission_id": self.submission_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class FindingTransition(Base):
    """Append-only audit row for a finding status change"""
    __tablename__ = "finding_transitions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    finding_id: Mapped[str] = mapped_column(String(36), ForeignKey("findings.id"), index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30))
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "finding_id": self.finding_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
