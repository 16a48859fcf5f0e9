"""Analysis stage interfaces.

Presence detection and fix generation/verification are pluggable. The
lifecycle engine only sees these protocols and the result dataclasses;
implementations decide how (static rules, an inference backend, ...).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from backend.core.catalog import CatalogEntry


@dataclass
class CommitContext:
    """Everything a stage may look at for one finding."""
    owner: str
    name: str
    language: Optional[str]
    commit_sha: str
    message: str = ""
    diff: str = ""
    changed_files: list[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class DetectionResult:
    confidence: float
    affected_files: list[str] = field(default_factory=list)
    evidence: str = ""


@dataclass
class Patch:
    """Candidate fix. An empty patch is a valid, low-confidence candidate."""
    files: dict[str, str] = field(default_factory=dict)  # path -> patched content
    diff: str = ""
    summary: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.files


@dataclass
class VerificationResult:
    confidence: float
    notes: str = ""


def clamp_confidence(value) -> float:
    """Coerce a model- or rule-produced score into [0, 1]."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(0.0, min(1.0, score))


@runtime_checkable
class PresenceDetector(Protocol):
    async def detect(self, commit: CommitContext, vulnerability: CatalogEntry) -> DetectionResult:
        """Score how likely the vulnerability is present at this commit.

        Raises AnalysisFailure when no result can be produced.
        """
        ...


@runtime_checkable
class FixGenerator(Protocol):
    async def generate_fix(
        self, commit: CommitContext, vulnerability: CatalogEntry, affected_files: list[str]
    ) -> Patch:
        ...


@runtime_checkable
class FixVerifier(Protocol):
    async def verify_fix(
        self, commit: CommitContext, vulnerability: CatalogEntry, patch: Patch
    ) -> VerificationResult:
        ...
