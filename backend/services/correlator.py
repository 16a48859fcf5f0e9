"""
VulnWatch - Vulnerability Correlator

Shortlists catalog records whose ecosystem tags intersect the repository
language and opens a DETECTED finding per (repository, commit, record)
triple that is not represented yet.
"""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.core.catalog import CatalogEntry, VulnerabilityCatalog
from backend.core.errors import ConflictError
from backend.core.hosts import CommitDetail
from backend.models import Finding, FindingStatus, FindingTransition, Repository

logger = logging.getLogger(__name__)

MAX_STORED_DIFF = 200_000


class VulnerabilityCorrelator:
    def __init__(self, session_maker: async_sessionmaker, catalog: VulnerabilityCatalog):
        self.session_maker = session_maker
        self.catalog = catalog

    def shortlist(self, language: Optional[str]) -> List[CatalogEntry]:
        return self.catalog.snapshot.shortlist(language)

    async def correlate(self, repository: Repository, commit: CommitDetail) -> List[str]:
        """Create DETECTED findings for a commit. Returns the ids of new findings."""
        candidates = self.shortlist(repository.language)
        if not candidates:
            logger.debug(f"No catalog records for {repository.url} (language={repository.language})")
            return []

        created: List[str] = []
        for entry in candidates:
            try:
                finding_id = await self._open_finding(repository, commit, entry)
            except ConflictError as e:
                logger.debug(str(e))
                continue
            created.append(finding_id)

        if created:
            logger.info(f"{repository.url}@{commit.sha[:8]}: {len(created)} new finding(s)")
        return created

    async def _open_finding(self, repository: Repository, commit: CommitDetail, entry: CatalogEntry) -> str:
        async with self.session_maker() as session:
            # Commit content is immutable, so any earlier finding for the
            # triple (terminal included) already answers it.
            existing = await session.execute(
                select(Finding.id).where(
                    Finding.repository_id == repository.id,
                    Finding.commit_sha == commit.sha,
                    Finding.vulnerability_id == entry.catalog_id,
                ).limit(1)
            )
            existing_id = existing.scalar_one_or_none()
            if existing_id:
                raise ConflictError(
                    f"Finding exists for {repository.url}@{commit.sha[:8]}/{entry.catalog_id}",
                    existing_id=existing_id,
                )

            finding = Finding(
                repository_id=repository.id,
                commit_sha=commit.sha,
                vulnerability_id=entry.catalog_id,
                status=FindingStatus.DETECTED.value,
                commit_message=commit.message,
                commit_diff=commit.diff[:MAX_STORED_DIFF],
                affected_files=[f.path for f in commit.files],
            )
            session.add(finding)
            try:
                await session.flush()
                session.add(FindingTransition(
                    finding_id=finding.id,
                    from_status=None,
                    to_status=FindingStatus.DETECTED.value,
                    reason=f"Correlated with {entry.catalog_id} ({entry.severity})",
                ))
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(
                    f"Concurrent finding for {repository.url}@{commit.sha[:8]}/{entry.catalog_id}"
                ) from e
            return finding.id
