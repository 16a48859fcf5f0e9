from backend.models.repository import Repository
from backend.models.vulnerability_record import VulnerabilityRecord
from backend.models.finding import Finding, FindingStatus, FindingTransition
from backend.models.submission import Submission
from backend.models.bounty import Bounty, BountyStatus
from backend.models.processed_commit import ProcessedCommit

__all__ = [
    "Repository",
    "VulnerabilityRecord",
    "Finding",
    "FindingStatus",
    "FindingTransition",
    "Submission",
    "Bounty",
    "BountyStatus",
    "ProcessedCommit",
]
