"""
VulnWatch - Finding Schemas
"""
from datetime import datetime
from typing import List, Literal, Optional

from backend.models import Finding, FindingTransition, Submission
from backend.schemas.base import CamelModel


class FindingResponse(CamelModel):
    """Finding as exposed to the dashboard"""
    id: str
    repository_url: Optional[str] = None
    commit_id: str
    cve_id: str
    status: str
    presence_confidence: Optional[float] = None
    fix_confidence: Optional[float] = None
    requires_human_review: bool = False
    affected_files: List[str] = []
    fix_attempts: int = 0
    evidence: Optional[str] = None
    patch_diff: Optional[str] = None
    review_notes: Optional[str] = None
    pull_request_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_finding(cls, finding: Finding, submission: Optional[Submission] = None) -> "FindingResponse":
        return cls(
            id=finding.id,
            repository_url=finding.repository.url if finding.repository else None,
            commit_id=finding.commit_sha,
            cve_id=finding.vulnerability_id,
            status=finding.status,
            presence_confidence=finding.presence_confidence,
            fix_confidence=finding.fix_confidence,
            requires_human_review=bool(finding.requires_human_review),
            affected_files=finding.affected_files or [],
            fix_attempts=finding.fix_attempts or 0,
            evidence=finding.evidence,
            patch_diff=finding.patch_diff,
            review_notes=finding.review_notes,
            pull_request_id=submission.host_ref if submission else None,
            created_at=finding.created_at,
            updated_at=finding.updated_at,
        )


class FindingTransitionResponse(CamelModel):
    id: str
    from_status: Optional[str] = None
    to_status: str
    reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_transition(cls, transition: FindingTransition) -> "FindingTransitionResponse":
        return cls.model_validate(transition)


class ReviewDecision(CamelModel):
    """Explicit reviewer command for a HUMAN_REVIEW finding"""
    decision: Literal["approve", "reject"]
    notes: Optional[str] = None
