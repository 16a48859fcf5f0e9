"""
Tests for the read-only statistics aggregator.
"""

import sys
from datetime import datetime
from pathlib import Path

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from conftest import WIDGET_URL
from backend.models import Bounty, Finding, FindingStatus, ProcessedCommit
from backend.services.repository_registry import RepositoryRegistry
from backend.services.statistics import StatisticsAggregator

NOW = datetime(2026, 3, 15, 9, 30)


@pytest.fixture
def stats(session_maker, catalog, gateway):
    return StatisticsAggregator(session_maker, catalog, gateway, clock=lambda: NOW)


class TestSummary:
    @pytest.mark.asyncio
    async def test_empty_install(self, session_maker, catalog):
        summary = await StatisticsAggregator(session_maker, catalog).summary()
        assert summary == {
            "repos_watched": 0,
            "cves_tracked": 1,
            "commits_processed_today": 0,
            "findings_by_status": {},
            "bounties_by_status": {},
            "dependencies": {},
        }

    @pytest.mark.asyncio
    async def test_counts(self, session_maker, stats):
        registry = RepositoryRegistry(session_maker)
        widget = await registry.register(WIDGET_URL, language="Python", default_branch="main")
        await registry.register("https://github.com/acme/gadget", language="Go", default_branch="main")
        await registry.deregister("https://github.com/acme/gadget")

        async with session_maker() as session:
            session.add_all([
                ProcessedCommit(repository_id=widget.id, commit_sha="a", processed_at=datetime(2026, 3, 14, 23, 59)),
                ProcessedCommit(repository_id=widget.id, commit_sha="b", processed_at=datetime(2026, 3, 15, 0, 0)),
                ProcessedCommit(repository_id=widget.id, commit_sha="c", processed_at=datetime(2026, 3, 15, 9, 0)),
                Finding(repository_id=widget.id, commit_sha="b", vulnerability_id="CVE-2024-0001",
                        status=FindingStatus.REJECTED.value),
                Finding(repository_id=widget.id, commit_sha="c", vulnerability_id="CVE-2024-0001",
                        status=FindingStatus.DETECTED.value),
                Bounty(platform="algora", external_id="1", repository_url=WIDGET_URL, amount=100.0),
            ])
            await session.commit()

        summary = await stats.summary()
        assert summary["repos_watched"] == 1
        assert summary["commits_processed_today"] == 2
        assert summary["findings_by_status"] == {"REJECTED": 1, "DETECTED": 1}
        assert summary["bounties_by_status"] == {"OPEN": 1}

    @pytest.mark.asyncio
    async def test_dependency_health_included(self, stats, gateway):
        async def ping():
            return "pong"

        await gateway.invoke("host", ping)
        host = (await stats.summary())["dependencies"]["host"]
        assert host["state"] == "closed"
        assert host["calls"] == 1
        assert host["failures"] == 0
