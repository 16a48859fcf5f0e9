"""
VulnWatch - Commit Ingestor

Pulls commits newer than each repository's checkpoint through the gateway,
hands them to the correlator oldest first, and only then advances the
checkpoint. The advance is a conditional UPDATE, so concurrent or repeated
runs can never move a checkpoint backwards.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.core.errors import ServiceUnavailable, TransientExternal
from backend.core.hosts import CommitSummary, RepositoryHost
from backend.core.locks import KeyedLockTable
from backend.core.resilience import HOST, ResilienceGateway
from backend.models import ProcessedCommit, Repository
from backend.services.correlator import VulnerabilityCorrelator

logger = logging.getLogger(__name__)


class CommitIngestor:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        gateway: ResilienceGateway,
        host: RepositoryHost,
        correlator: VulnerabilityCorrelator,
        locks: Optional[KeyedLockTable] = None,
        concurrency: int = 4,
        per_page: int = 30,
        max_pages: int = 10,
    ):
        self.session_maker = session_maker
        self.gateway = gateway
        self.host = host
        self.correlator = correlator
        self.locks = locks or KeyedLockTable()
        self.concurrency = max(1, concurrency)
        self.per_page = per_page
        self.max_pages = max_pages

    # ------------------------------------------------------------------
    # Checkpoint
    # ------------------------------------------------------------------

    async def advance_checkpoint(self, repository_id: str, sha: str, committed_at: Optional[datetime]) -> bool:
        """Move the checkpoint forward to (sha, committed_at). Never moves it back."""
        condition = Repository.checkpoint_at.is_(None)
        if committed_at is not None:
            condition = or_(condition, Repository.checkpoint_at <= committed_at)
        async with self.session_maker() as session:
            result = await session.execute(
                update(Repository)
                .where(Repository.id == repository_id)
                .where(condition)
                .values(checkpoint_sha=sha, checkpoint_at=committed_at)
            )
            await session.commit()
        moved = result.rowcount > 0
        if moved:
            logger.debug(f"Checkpoint for {repository_id} -> {sha[:8]} ({committed_at})")
        return moved

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_all(self) -> Dict[str, int]:
        """Ingest every active repository, bounded concurrency. Returns commits handed off per repository."""
        async with self.session_maker() as session:
            result = await session.execute(select(Repository.id).where(Repository.active.is_(True)))
            repository_ids = list(result.scalars().all())

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(repository_id: str) -> int:
            async with semaphore:
                try:
                    return await self.ingest_repository(repository_id)
                except ServiceUnavailable as e:
                    logger.info(f"Ingestion of {repository_id} deferred: {e}")
                except TransientExternal as e:
                    logger.warning(f"Ingestion of {repository_id} failed, retry next cycle: {e}")
                return 0

        counts = await asyncio.gather(*(_one(rid) for rid in repository_ids))
        return dict(zip(repository_ids, counts))

    async def ingest_repository(self, repository_id: str) -> int:
        """Fetch and hand off new commits for one repository."""
        async with self.locks.hold(f"repo:{repository_id}"):
            repository = await self._load_active(repository_id)
            if repository is None:
                return 0

            pending = await self._new_commits(repository)
            if not pending:
                return 0
            return await self._handoff_all(repository, pending)

    async def handle_push(self, repository_url: str, commits: Iterable[CommitSummary]) -> int:
        """Push webhook entry point: same handoff path as polling."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Repository.id).where(Repository.url == repository_url, Repository.active.is_(True))
            )
            repository_id = result.scalar_one_or_none()
        if repository_id is None:
            logger.debug(f"Push for unwatched repository {repository_url} ignored")
            return 0

        async with self.locks.hold(f"repo:{repository_id}"):
            repository = await self._load_active(repository_id)
            if repository is None:
                return 0
            ordered = sorted(commits, key=lambda c: c.committed_at or datetime.min)
            return await self._handoff_all(repository, ordered)

    async def _load_active(self, repository_id: str) -> Optional[Repository]:
        async with self.session_maker() as session:
            repository = await session.get(Repository, repository_id)
        if repository is None or not repository.active:
            return None
        return repository

    async def _new_commits(self, repository: Repository) -> List[CommitSummary]:
        """Commits after the checkpoint, oldest first.

        Without a checkpoint only the branch head is taken as the baseline;
        history before registration is not scanned.
        """
        fresh: List[CommitSummary] = []
        for page in range(1, self.max_pages + 1):
            summaries = await self.gateway.call_with_retry(
                HOST,
                lambda p=page: self.host.list_commits(
                    repository.owner, repository.name, repository.default_branch,
                    since=repository.checkpoint_at, page=p,
                ),
            )
            reached_checkpoint = False
            for summary in summaries:
                if summary.sha == repository.checkpoint_sha:
                    reached_checkpoint = True
                    break
                if (
                    repository.checkpoint_at is not None
                    and summary.committed_at is not None
                    and summary.committed_at < repository.checkpoint_at
                ):
                    reached_checkpoint = True
                    break
                fresh.append(summary)
            if repository.checkpoint_sha is None:
                fresh = fresh[:1]
                break
            if reached_checkpoint or len(summaries) < self.per_page:
                break

        fresh.sort(key=lambda c: c.committed_at or datetime.min)
        return fresh

    async def _handoff_all(self, repository: Repository, commits: List[CommitSummary]) -> int:
        handed = 0
        for summary in commits:
            # Deregistration stops ingestion between commits
            if handed and await self._load_active(repository.id) is None:
                logger.info(f"{repository.url} deregistered mid-ingestion, stopping")
                break
            await self._handoff(repository, summary)
            await self.advance_checkpoint(repository.id, summary.sha, summary.committed_at)
            handed += 1
        if handed:
            logger.info(f"Ingested {handed} commit(s) from {repository.url}")
        return handed

    async def _handoff(self, repository: Repository, summary: CommitSummary) -> None:
        async with self.session_maker() as session:
            seen = await session.execute(
                select(ProcessedCommit.id).where(
                    ProcessedCommit.repository_id == repository.id,
                    ProcessedCommit.commit_sha == summary.sha,
                )
            )
            if seen.scalar_one_or_none():
                logger.debug(f"{repository.url}@{summary.sha[:8]} already processed")
                return

        detail = await self.gateway.call_with_retry(
            HOST, lambda: self.host.get_commit(repository.owner, repository.name, summary.sha)
        )
        if detail.committed_at is None:
            detail.committed_at = summary.committed_at
        await self.correlator.correlate(repository, detail)

        async with self.session_maker() as session:
            session.add(ProcessedCommit(
                repository_id=repository.id,
                commit_sha=summary.sha,
                committed_at=detail.committed_at,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
