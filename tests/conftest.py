"""
VulnWatch - Shared Test Fixtures

In-memory database, a fast resilience gateway, and fake doubles for the
repository host, the analysis stages and the bounty platforms, so the
pipeline can be exercised end to end without network access.
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure the project root is on sys.path so `backend.*` imports resolve
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from backend.core.analysis import DetectionResult, Patch, VerificationResult
from backend.core.bugbounty import BountyListing, PayoutStatus, PlatformRegistry
from backend.core.catalog import CatalogEntry, VulnerabilityCatalog
from backend.core.errors import UpstreamError
from backend.core.hosts import (
    ChangedFile,
    CommitDetail,
    CommitSummary,
    PullRequestRef,
    PullRequestState,
    RepositoryInfo,
)
from backend.core.locks import KeyedLockTable
from backend.core.resilience import DependencyPolicy, ResilienceGateway
from backend.db.database import Base


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_maker():
    """Fresh in-memory SQLite database per test."""
    import backend.models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield maker
    await engine.dispose()


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

FAST_POLICY = DependencyPolicy(
    rate_per_second=1000.0,
    burst=1000,
    call_timeout=5.0,
    failure_threshold=5,
    failure_rate=0.5,
    window_size=20,
    min_calls=10,
    cooldown_seconds=30.0,
)


@pytest.fixture
def gateway():
    """Gateway with generous quotas and no real sleeping between retries."""
    return ResilienceGateway(default_policy=FAST_POLICY, max_retries=2, sleep=AsyncMock())


@pytest.fixture
def locks():
    return KeyedLockTable()


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

CRITICAL_ENTRY = CatalogEntry(
    catalog_id="CVE-2024-0001",
    severity="critical",
    ecosystems=frozenset({"Python"}),
    score=9.8,
    published_at=datetime(2024, 1, 10),
    summary="Unsafe deserialization in widget loader",
    vulnerable_pattern=r"\bpickle\.loads\(",
    fixed_pattern="json.loads(",
)


@pytest.fixture
def catalog():
    catalog = VulnerabilityCatalog()
    catalog.swap([CRITICAL_ENTRY])
    return catalog


# ---------------------------------------------------------------------------
# Repository host double
# ---------------------------------------------------------------------------

class FakeHost:
    """In-memory RepositoryHost. Commits are stored newest first per repository."""

    def __init__(self):
        self.repos: Dict[tuple, RepositoryInfo] = {}
        self.commits: Dict[tuple, List[CommitDetail]] = {}
        self.files: Dict[tuple, str] = {}
        self.pulls: Dict[str, PullRequestState] = {}
        self.opened: List[dict] = []
        self.fail_open = 0
        self.list_calls = 0
        self.per_page = 30

    def add_commit(
        self,
        owner: str,
        name: str,
        sha: str,
        committed_at: datetime,
        patches: Optional[Dict[str, str]] = None,
        message: str = "",
    ) -> CommitDetail:
        detail = CommitDetail(
            sha=sha,
            committed_at=committed_at,
            message=message or f"commit {sha}",
            files=[ChangedFile(path=p, patch=patch) for p, patch in (patches or {}).items()],
        )
        history = self.commits.setdefault((owner, name), [])
        history.append(detail)
        history.sort(key=lambda c: c.committed_at, reverse=True)
        return detail

    async def get_repository(self, owner, name):
        return self.repos.get((owner, name), RepositoryInfo(default_branch="main", language="Python"))

    async def list_commits(self, owner, name, branch, since=None, page=1):
        self.list_calls += 1
        history = [c for c in self.commits.get((owner, name), []) if since is None or c.committed_at >= since]
        start = (page - 1) * self.per_page
        return [
            CommitSummary(sha=c.sha, committed_at=c.committed_at, message=c.message)
            for c in history[start:start + self.per_page]
        ]

    async def get_commit(self, owner, name, sha):
        for commit in self.commits.get((owner, name), []):
            if commit.sha == sha:
                return commit
        raise UpstreamError("host", f"commit {sha} not found", status=404)

    async def get_file(self, owner, name, path, ref):
        return self.files.get((owner, name, path, ref))

    async def open_pull_request(self, owner, name, base, branch, title, body, files):
        if self.fail_open:
            self.fail_open -= 1
            raise UpstreamError("host", "502 from host", status=502)
        for opened in self.opened:
            if opened["branch"] == branch:
                number = opened["number"]
                return PullRequestRef(number=number, url=f"https://github.com/{owner}/{name}/pull/{number}", branch=branch)
        number = str(len(self.pulls) + 1)
        self.pulls[number] = PullRequestState(number=number, state="open")
        self.opened.append({
            "owner": owner, "name": name, "base": base, "branch": branch,
            "title": title, "body": body, "files": files, "number": number,
        })
        return PullRequestRef(number=number, url=f"https://github.com/{owner}/{name}/pull/{number}", branch=branch)

    async def get_pull_request(self, owner, name, number):
        return self.pulls[number]

    def merge(self, number: str, when: Optional[datetime] = None):
        self.pulls[number] = PullRequestState(number=number, state="closed", merged=True, merged_at=when or datetime.utcnow())


@pytest.fixture
def host():
    return FakeHost()


# ---------------------------------------------------------------------------
# Analysis double
# ---------------------------------------------------------------------------

class FakeAnalyzer:
    """PresenceDetector / FixGenerator / FixVerifier with scripted confidences.

    `fix` may be a list: one value is consumed per verification.
    """

    def __init__(self, presence: float = 0.92, fix=0.85, empty_patch: bool = False):
        self.presence = presence
        self.fix = fix
        self.empty_patch = empty_patch
        self.calls = {"detect": 0, "generate": 0, "verify": 0}

    async def detect(self, commit, vulnerability):
        self.calls["detect"] += 1
        return DetectionResult(
            confidence=self.presence,
            affected_files=list(commit.changed_files) or ["app.py"],
            evidence=f"{vulnerability.catalog_id} pattern added",
        )

    async def generate_fix(self, commit, vulnerability, affected_files):
        self.calls["generate"] += 1
        if self.empty_patch:
            return Patch(summary="nothing to change")
        return Patch(
            files={path: "import json\ndata = json.loads(raw)\n" for path in affected_files},
            diff="--- a/app.py\n+++ b/app.py\n-data = pickle.loads(raw)\n+data = json.loads(raw)\n",
            summary="replace pickle",
        )

    async def verify_fix(self, commit, vulnerability, patch):
        self.calls["verify"] += 1
        value = self.fix.pop(0) if isinstance(self.fix, list) else self.fix
        return VerificationResult(confidence=value, notes="scripted")


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


# ---------------------------------------------------------------------------
# Bounty platform double
# ---------------------------------------------------------------------------

class FakePlatform:
    def __init__(self, platform_name: str = "algora", listings: Optional[List[BountyListing]] = None):
        self.platform_name = platform_name
        self.listings = listings or []
        self.payouts: Dict[str, PayoutStatus] = {}
        self.closed = False

    @property
    def enabled(self) -> bool:
        return True

    async def fetch_bounties(self):
        return list(self.listings)

    async def get_payout_status(self, external_id):
        return self.payouts.get(external_id, PayoutStatus(external_id=external_id, state="pending"))

    async def close(self):
        self.closed = True


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def platforms(platform):
    registry = PlatformRegistry()
    registry.register(platform.platform_name, platform)
    return registry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

WIDGET_URL = "https://github.com/acme/widget"

VULNERABLE_PATCH = "@@ -1,2 +1,3 @@\n import pickle\n+data = pickle.loads(raw)\n"


def minutes_ago(n: int) -> datetime:
    return datetime.utcnow().replace(microsecond=0) - timedelta(minutes=n)
