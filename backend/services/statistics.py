"""
VulnWatch - Statistics Aggregator

Read-only counters for the dashboard. Never mutates state.
"""
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.core.catalog import VulnerabilityCatalog
from backend.core.resilience import ResilienceGateway
from backend.core.timestamps import utc_midnight
from backend.models import Bounty, Finding, ProcessedCommit, Repository


class StatisticsAggregator:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        catalog: VulnerabilityCatalog,
        gateway: Optional[ResilienceGateway] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_maker = session_maker
        self.catalog = catalog
        self.gateway = gateway
        self._clock = clock

    async def summary(self) -> Dict:
        """reposWatched, cvesTracked and commitsProcessedToday, plus status breakdowns."""
        since = utc_midnight(self._clock())
        async with self.session_maker() as session:
            repos_watched = (await session.execute(
                select(func.count()).select_from(Repository).where(Repository.active.is_(True))
            )).scalar() or 0

            commits_today = (await session.execute(
                select(func.count()).select_from(ProcessedCommit).where(ProcessedCommit.processed_at >= since)
            )).scalar() or 0

            findings_by_status = {
                status: count for status, count in (await session.execute(
                    select(Finding.status, func.count()).group_by(Finding.status)
                )).all()
            }
            bounties_by_status = {
                status: count for status, count in (await session.execute(
                    select(Bounty.status, func.count()).group_by(Bounty.status)
                )).all()
            }

        return {
            "repos_watched": repos_watched,
            "cves_tracked": len(self.catalog.snapshot),
            "commits_processed_today": commits_today,
            "findings_by_status": findings_by_status,
            "bounties_by_status": bounties_by_status,
            "dependencies": self.gateway.snapshot() if self.gateway else {},
        }
