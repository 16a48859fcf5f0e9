"""Error taxonomy shared by the gateway, the lifecycle pipeline and the API.

Only ValidationError and unresolved MatchAmbiguous are meant to reach a
human; everything else is retried, deferred or absorbed internally.
"""

from typing import List, Optional


class VulnWatchError(Exception):
    """Base class for all classified errors."""


class TransientExternal(VulnWatchError):
    """Retryable failure of an external dependency."""

    def __init__(self, service_key: str, message: str = ""):
        self.service_key = service_key
        super().__init__(message or f"{service_key}: transient failure")


class RateLimited(TransientExternal):
    """Local token bucket empty, or upstream answered 429."""

    def __init__(self, service_key: str, retry_after: float = 1.0, message: str = ""):
        self.retry_after = retry_after
        super().__init__(service_key, message or f"{service_key}: rate limited, retry in {retry_after:.1f}s")


class Timeout(TransientExternal):
    """Per-call deadline exceeded."""


class UpstreamError(TransientExternal):
    """The dependency answered with a failure (5xx, connection error, bad payload)."""

    def __init__(self, service_key: str, message: str = "", status: Optional[int] = None):
        self.status = status
        super().__init__(service_key, message or f"{service_key}: upstream error (status={status})")


class ServiceUnavailable(VulnWatchError):
    """Circuit breaker is open: the call was not attempted."""

    def __init__(self, service_key: str, retry_after: float = 0.0):
        self.service_key = service_key
        self.retry_after = retry_after
        super().__init__(f"{service_key}: circuit open, retry in {retry_after:.1f}s")


class ValidationError(VulnWatchError):
    """Malformed input, rejected immediately and surfaced to the caller."""


class ConflictError(VulnWatchError):
    """Duplicate registration or duplicate finding."""

    def __init__(self, message: str, existing_id: Optional[str] = None):
        self.existing_id = existing_id
        super().__init__(message)


class AnalysisFailure(VulnWatchError):
    """An analysis stage could not produce a result; the finding stays put."""


class MatchAmbiguous(VulnWatchError):
    """Several open bounties could match a merged submission."""

    def __init__(self, submission_id: str, candidate_ids: List[str]):
        self.submission_id = submission_id
        self.candidate_ids = candidate_ids
        super().__init__(
            f"Submission {submission_id} matches {len(candidate_ids)} bounties: {', '.join(candidate_ids)}"
        )


class InvalidTransition(VulnWatchError):
    """A status change that is not an edge of the state machine."""

    def __init__(self, entity: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"{entity}: illegal transition {current} -> {target}")


class NotFoundError(VulnWatchError):
    """Referenced entity does not exist."""
