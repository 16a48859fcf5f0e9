"""
VulnWatch - Pipeline

Builds the process-wide components from Settings and runs one full cycle:
ingest -> advance findings -> submit -> poll merges -> reconcile bounties.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.core.analysis import LLMAnalyzer, PatternRuleAnalyzer
from backend.core.bugbounty import PlatformRegistry, init_platforms
from backend.core.catalog import VulnerabilityCatalog
from backend.core.hosts import GitHubClient, RepositoryHost
from backend.core.llm.providers import build_provider
from backend.core.locks import KeyedLockTable
from backend.core.osint import NVDClient
from backend.core.resilience import HOST, ResilienceGateway, build_gateway
from backend.services.bounty_reconciler import BountyReconciler
from backend.services.catalog_sync import CatalogSync
from backend.services.commit_ingestor import CommitIngestor
from backend.services.correlator import VulnerabilityCorrelator
from backend.services.lifecycle_engine import FindingLifecycleEngine, LifecycleConfig
from backend.services.remediation_submitter import RemediationSubmitter
from backend.services.repository_registry import RepositoryRegistry
from backend.services.statistics import StatisticsAggregator

logger = logging.getLogger(__name__)


class Pipeline:
    """Container for every component, sharing one gateway, lock table and catalog."""

    def __init__(
        self,
        settings,
        session_maker: async_sessionmaker,
        host: Optional[RepositoryHost] = None,
        platforms: Optional[PlatformRegistry] = None,
        analyzer: Any = None,
        gateway: Optional[ResilienceGateway] = None,
    ):
        self.settings = settings
        self.session_maker = session_maker
        self.platforms = platforms or init_platforms(settings)
        self.gateway = gateway or build_gateway(settings, bounty_platforms=self.platforms.list_platforms())
        self.locks = KeyedLockTable()
        self.catalog = VulnerabilityCatalog()
        self.host = host or GitHubClient(settings.GITHUB_API_URL, settings.GITHUB_TOKEN, settings.COMMITS_PER_PAGE)
        self.analyzer = analyzer or self._build_analyzer()

        self.registry = RepositoryRegistry(session_maker, self.gateway, self.host)
        self.correlator = VulnerabilityCorrelator(session_maker, self.catalog)
        self.ingestor = CommitIngestor(
            session_maker, self.gateway, self.host, self.correlator,
            locks=self.locks,
            concurrency=settings.INGEST_CONCURRENCY,
            per_page=settings.COMMITS_PER_PAGE,
        )
        self.engine = FindingLifecycleEngine(
            session_maker, self.catalog,
            detector=self.analyzer, generator=self.analyzer, verifier=self.analyzer,
            config=LifecycleConfig.from_settings(settings),
            locks=self.locks,
        )
        self.reconciler = BountyReconciler(
            session_maker, self.gateway, self.platforms,
            min_amount=settings.MIN_BOUNTY_AMOUNT,
            max_amount=settings.MAX_BOUNTY_AMOUNT,
            supported_languages=settings.SUPPORTED_LANGUAGES,
            locks=self.locks,
        )
        self.submitter = RemediationSubmitter(
            session_maker, self.gateway, self.host, self.engine,
            branch_prefix=settings.PR_BRANCH_PREFIX,
            on_created=self._link_bounty,
            on_merged=self._claim_bounty,
        )
        self.statistics = StatisticsAggregator(session_maker, self.catalog, self.gateway)
        self.catalog_sync = CatalogSync(
            session_maker, self.catalog, self.gateway,
            nvd=NVDClient(api_key=settings.NVD_API_KEY),
        )

    def _build_analyzer(self):
        # Single attempt: analysis runs under the finding lock
        async def fetch_file(owner: str, name: str, path: str, ref: str) -> Optional[str]:
            return await self.gateway.invoke(HOST, lambda: self.host.get_file(owner, name, path, ref))

        if self.settings.ANALYSIS_BACKEND == "llm":
            logger.info(f"Analysis backend: {self.settings.DEFAULT_LLM_PROVIDER} ({self.settings.DEFAULT_LLM_MODEL})")
            return LLMAnalyzer(
                build_provider(self.settings), self.gateway, fetch_file,
                model=self.settings.DEFAULT_LLM_MODEL,
                max_tokens=self.settings.LLM_MAX_TOKENS,
            )
        logger.info("Analysis backend: pattern rules")
        return PatternRuleAnalyzer(fetch_file)

    # ------------------------------------------------------------------
    # Submitter -> reconciler hooks
    # ------------------------------------------------------------------

    async def _link_bounty(self, submission_id: str) -> None:
        try:
            await self.reconciler.link_submission(submission_id)
        except Exception as e:
            # retried by match_pending
            logger.warning(f"Bounty link for submission {submission_id} deferred: {e}")

    async def _claim_bounty(self, submission_id: str) -> None:
        try:
            await self.reconciler.on_submission_merged(submission_id)
        except Exception as e:
            logger.warning(f"Bounty claim for submission {submission_id} deferred: {e}")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def refresh_catalog(self, sync_nvd: bool = False) -> int:
        snapshot = await self.catalog_sync.refresh(
            seed_path=self.settings.CATALOG_SEED_PATH,
            nvd_days=self.settings.CATALOG_SYNC_DAYS if sync_nvd else None,
        )
        logger.info(f"Catalog snapshot holds {len(snapshot)} records")
        return len(snapshot)

    async def run_cycle(self) -> Dict[str, Any]:
        """One pass over every stage. Per-item failures are logged and left for the next cycle."""
        ingested = await self.ingestor.ingest_all()
        advanced = await self.engine.advance_pending()
        submitted = await self.submitter.submit_confirmed()
        merged = await self.submitter.poll_open()
        bounties = await self.reconciler.reconcile()
        summary = {
            "commits": sum(ingested.values()),
            "findings": advanced,
            "submitted": submitted,
            "status_updates": merged,
            "bounties": bounties,
        }
        logger.info(f"Pipeline cycle: {summary}")
        return summary

    async def close(self) -> None:
        close = getattr(self.host, "close", None)
        if close:
            await close()
        await self.platforms.close()
        await self.catalog_sync.nvd.close()
