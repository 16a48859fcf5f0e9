"""
VulnWatch - Submission Schemas
"""
from datetime import datetime
from typing import List, Optional

from backend.models import Submission
from backend.schemas.base import CamelModel


class SubmissionResponse(CamelModel):
    """Remediation PR with the confidences of its finding"""
    id: str
    finding_id: str
    repository_url: Optional[str] = None
    commit_id: Optional[str] = None
    cve_id: Optional[str] = None
    status: str
    pull_request_id: str
    pull_request_url: Optional[str] = None
    branch: Optional[str] = None
    presence_confidence: Optional[float] = None
    fix_confidence: Optional[float] = None
    requires_human_review: bool = False
    affected_files: List[str] = []
    bounty_match: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_submission(cls, submission: Submission) -> "SubmissionResponse":
        finding = submission.finding
        return cls(
            id=submission.id,
            finding_id=submission.finding_id,
            repository_url=finding.repository.url if finding and finding.repository else None,
            commit_id=finding.commit_sha if finding else None,
            cve_id=finding.vulnerability_id if finding else None,
            status=submission.status,
            pull_request_id=submission.host_ref,
            pull_request_url=submission.url,
            branch=submission.branch,
            presence_confidence=finding.presence_confidence if finding else None,
            fix_confidence=finding.fix_confidence if finding else None,
            requires_human_review=bool(finding.requires_human_review) if finding else False,
            affected_files=(finding.affected_files or []) if finding else [],
            bounty_match=submission.bounty_match,
            created_at=submission.created_at,
            completed_at=submission.completed_at,
        )


class AmbiguousMatchResponse(CamelModel):
    """Submission held until a bounty is linked by hand"""
    submission_id: str
    finding_id: str
    candidate_ids: List[str] = []
