from backend.schemas.base import CamelModel
from backend.schemas.repository import RepositoryCreate, RepositoryResponse
from backend.schemas.finding import FindingResponse, FindingTransitionResponse, ReviewDecision
from backend.schemas.submission import AmbiguousMatchResponse, SubmissionResponse
from backend.schemas.bounty import BountyCreate, BountyLink, BountyResponse, PayoutEvent
from backend.schemas.vulnerability import VulnerabilityResponse
from backend.schemas.statistics import StatisticsResponse

__all__ = [
    "CamelModel",
    "RepositoryCreate",
    "RepositoryResponse",
    "FindingResponse",
    "FindingTransitionResponse",
    "ReviewDecision",
    "AmbiguousMatchResponse",
    "SubmissionResponse",
    "BountyCreate",
    "BountyLink",
    "BountyResponse",
    "PayoutEvent",
    "VulnerabilityResponse",
    "StatisticsResponse",
]
