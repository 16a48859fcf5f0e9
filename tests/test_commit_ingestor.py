"""
Tests for the Commit Ingestor.

Covers:
  - First ingestion takes only the branch head as the baseline
  - New commits are handed off oldest first, then the checkpoint advances
  - The checkpoint never moves backwards, even under concurrent runs
  - Push deliveries and polling never process a commit twice
  - Deregistered repositories and host outages leave state untouched
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from conftest import VULNERABLE_PATCH, WIDGET_URL, minutes_ago
from backend.core.errors import UpstreamError
from backend.core.hosts import CommitSummary
from backend.models import Finding, Repository
from backend.services.commit_ingestor import CommitIngestor
from backend.services.correlator import VulnerabilityCorrelator
from backend.services.repository_registry import RepositoryRegistry


@pytest.fixture
async def repository(session_maker):
    return await RepositoryRegistry(session_maker).register(WIDGET_URL, language="Python", default_branch="main")


@pytest.fixture
def correlator(session_maker, catalog):
    correlator = VulnerabilityCorrelator(session_maker, catalog)
    correlator.correlate = AsyncMock(wraps=correlator.correlate)
    return correlator


@pytest.fixture
def ingestor(session_maker, gateway, host, correlator, locks):
    return CommitIngestor(session_maker, gateway, host, correlator, locks=locks)


async def load(session_maker, repository_id) -> Repository:
    async with session_maker() as session:
        return await session.get(Repository, repository_id)


def handed_shas(correlator):
    return [c.args[1].sha for c in correlator.correlate.await_args_list]


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class TestPolling:
    @pytest.mark.asyncio
    async def test_first_run_takes_head_as_baseline(self, session_maker, host, ingestor, correlator, repository):
        host.add_commit("acme", "widget", "c1", minutes_ago(30))
        host.add_commit("acme", "widget", "c2", minutes_ago(20))
        host.add_commit("acme", "widget", "c3", minutes_ago(10))

        assert await ingestor.ingest_repository(repository.id) == 1
        assert handed_shas(correlator) == ["c3"]
        assert (await load(session_maker, repository.id)).checkpoint_sha == "c3"

    @pytest.mark.asyncio
    async def test_new_commits_handed_off_oldest_first(self, session_maker, host, ingestor, correlator, repository):
        host.add_commit("acme", "widget", "c1", minutes_ago(30))
        await ingestor.ingest_repository(repository.id)

        newest = minutes_ago(10)
        host.add_commit("acme", "widget", "c3", newest)
        host.add_commit("acme", "widget", "c2", minutes_ago(20))
        assert await ingestor.ingest_repository(repository.id) == 2
        assert handed_shas(correlator) == ["c1", "c2", "c3"]

        stored = await load(session_maker, repository.id)
        assert stored.checkpoint_sha == "c3"
        assert stored.checkpoint_at == newest

    @pytest.mark.asyncio
    async def test_nothing_new_is_a_noop(self, host, ingestor, correlator, repository):
        host.add_commit("acme", "widget", "c1", minutes_ago(30))
        await ingestor.ingest_repository(repository.id)
        assert await ingestor.ingest_repository(repository.id) == 0
        assert handed_shas(correlator) == ["c1"]

    @pytest.mark.asyncio
    async def test_vulnerable_commit_opens_finding(self, session_maker, host, ingestor, repository):
        host.add_commit("acme", "widget", "c1", minutes_ago(30), patches={"app.py": VULNERABLE_PATCH})
        await ingestor.ingest_repository(repository.id)

        async with session_maker() as session:
            findings = (await session.execute(select(Finding))).scalars().all()
        assert [(f.commit_sha, f.vulnerability_id) for f in findings] == [("c1", "CVE-2024-0001")]
        assert findings[0].affected_files == ["app.py"]


# ---------------------------------------------------------------------------
# Checkpoint monotonicity
# ---------------------------------------------------------------------------

class TestCheckpoint:
    @pytest.mark.asyncio
    async def test_never_moves_backwards(self, session_maker, ingestor, repository):
        assert await ingestor.advance_checkpoint(repository.id, "new", minutes_ago(5))
        assert not await ingestor.advance_checkpoint(repository.id, "old", minutes_ago(50))
        assert (await load(session_maker, repository.id)).checkpoint_sha == "new"

    @pytest.mark.asyncio
    async def test_concurrent_advances_keep_newest(self, session_maker, ingestor, repository):
        stamps = [minutes_ago(n) for n in (40, 5, 25, 10)]
        await asyncio.gather(*(
            ingestor.advance_checkpoint(repository.id, f"s{i}", at) for i, at in enumerate(stamps)
        ))
        stored = await load(session_maker, repository.id)
        assert stored.checkpoint_at == stamps[1]
        assert stored.checkpoint_sha == "s1"

    @pytest.mark.asyncio
    async def test_concurrent_runs_process_each_commit_once(self, session_maker, host, ingestor, correlator, repository):
        host.add_commit("acme", "widget", "c1", minutes_ago(30))
        await ingestor.ingest_repository(repository.id)
        for n, sha in ((20, "c2"), (15, "c3"), (10, "c4")):
            host.add_commit("acme", "widget", sha, minutes_ago(n))

        counts = await asyncio.gather(*(ingestor.ingest_repository(repository.id) for _ in range(3)))
        assert sum(counts) == 3
        assert handed_shas(correlator) == ["c1", "c2", "c3", "c4"]
        assert (await load(session_maker, repository.id)).checkpoint_sha == "c4"


# ---------------------------------------------------------------------------
# Push deliveries
# ---------------------------------------------------------------------------

class TestPush:
    @pytest.mark.asyncio
    async def test_push_then_poll_does_not_reprocess(self, session_maker, host, ingestor, correlator, repository):
        host.add_commit("acme", "widget", "c1", minutes_ago(30))
        await ingestor.ingest_repository(repository.id)
        c2 = host.add_commit("acme", "widget", "c2", minutes_ago(10))

        pushed = [CommitSummary(sha=c2.sha, committed_at=c2.committed_at)]
        await ingestor.handle_push(WIDGET_URL, pushed)
        await ingestor.handle_push(WIDGET_URL, pushed)
        await ingestor.ingest_repository(repository.id)

        assert handed_shas(correlator) == ["c1", "c2"]
        assert (await load(session_maker, repository.id)).checkpoint_sha == "c2"

    @pytest.mark.asyncio
    async def test_push_for_unwatched_repository_is_ignored(self, ingestor, correlator):
        summary = CommitSummary(sha="x", committed_at=minutes_ago(1))
        assert await ingestor.handle_push("https://github.com/acme/unknown", [summary]) == 0
        correlator.correlate.assert_not_awaited()


# ---------------------------------------------------------------------------
# Deregistration and outages
# ---------------------------------------------------------------------------

class TestInterruptions:
    @pytest.mark.asyncio
    async def test_deregistered_repository_is_skipped(self, session_maker, host, ingestor, correlator, repository):
        host.add_commit("acme", "widget", "c1", minutes_ago(30))
        await RepositoryRegistry(session_maker).deregister(WIDGET_URL)

        assert await ingestor.ingest_all() == {}
        assert await ingestor.ingest_repository(repository.id) == 0
        correlator.correlate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_host_outage_defers_without_moving_checkpoint(self, session_maker, host, ingestor, repository):
        host.add_commit("acme", "widget", "c1", minutes_ago(30))
        await ingestor.ingest_repository(repository.id)
        host.add_commit("acme", "widget", "c2", minutes_ago(10))
        host.list_commits = AsyncMock(side_effect=UpstreamError("host", "unavailable", status=503))

        assert await ingestor.ingest_all() == {repository.id: 0}
        assert (await load(session_maker, repository.id)).checkpoint_sha == "c1"

    @pytest.mark.asyncio
    async def test_processed_commits_recorded_once(self, session_maker, host, ingestor, repository):
        from backend.models import ProcessedCommit

        host.add_commit("acme", "widget", "c1", minutes_ago(30))
        await ingestor.ingest_repository(repository.id)
        await ingestor.handle_push(WIDGET_URL, [CommitSummary(sha="c1", committed_at=minutes_ago(30))])

        async with session_maker() as session:
            count = await session.scalar(select(func.count()).select_from(ProcessedCommit))
        assert count == 1
