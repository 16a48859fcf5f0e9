from backend.core.hosts.github_client import (
    ChangedFile,
    CommitDetail,
    CommitSummary,
    GitHubClient,
    PullRequestRef,
    PullRequestState,
    RepositoryHost,
    RepositoryInfo,
)
from backend.core.hosts.webhook_signature import verify_signature, compute_signature

__all__ = [
    "ChangedFile",
    "CommitDetail",
    "CommitSummary",
    "GitHubClient",
    "PullRequestRef",
    "PullRequestState",
    "RepositoryHost",
    "RepositoryInfo",
    "verify_signature",
    "compute_signature",
]
