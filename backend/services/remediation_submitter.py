"""
VulnWatch - Remediation Submitter

Opens a pull request for each CONFIRMED finding and tracks it to merge.
Merge status arrives either by polling the host or by webhook; both are
turned into an ExternalStatusUpdate and handled by apply_status_update().

A patch holds whole files as of the analyzed commit, so a PR is only opened
while every patched file on the base branch still matches that commit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.core.catalog import VulnerabilityCatalog
from backend.core.errors import AnalysisFailure, ServiceUnavailable, TransientExternal
from backend.core.hosts import PullRequestRef, RepositoryHost
from backend.core.resilience import HOST, ResilienceGateway
from backend.models import Finding, FindingStatus, Repository, Submission
from backend.models.submission import SUBMISSION_CLOSED, SUBMISSION_MERGED, SUBMISSION_OPEN
from backend.services.lifecycle_engine import FindingLifecycleEngine

logger = logging.getLogger(__name__)

SubmissionCallback = Callable[[str], Awaitable[None]]


@dataclass
class ExternalStatusUpdate:
    """Pull request state reported by the host (poll or webhook)."""
    repository_url: str
    host_ref: str
    merged: bool = False
    closed: bool = False
    merged_at: Optional[datetime] = None
    source: str = "poll"


class RemediationSubmitter:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        gateway: ResilienceGateway,
        host: RepositoryHost,
        engine: FindingLifecycleEngine,
        catalog: Optional[VulnerabilityCatalog] = None,
        branch_prefix: str = "vulnwatch/fix",
        on_created: Optional[SubmissionCallback] = None,
        on_merged: Optional[SubmissionCallback] = None,
    ):
        self.session_maker = session_maker
        self.gateway = gateway
        self.host = host
        self.engine = engine
        self.catalog = catalog or engine.catalog
        self.branch_prefix = branch_prefix.rstrip("/")
        self.on_created = on_created
        self.on_merged = on_merged

    # ------------------------------------------------------------------
    # Change request content
    # ------------------------------------------------------------------

    def branch_name(self, finding: Finding) -> str:
        return f"{self.branch_prefix}/{finding.vulnerability_id.lower()}-{finding.id[:8]}"

    def build_title(self, finding: Finding) -> str:
        return f"Fix {finding.vulnerability_id} introduced in {finding.commit_sha[:7]}"

    def build_body(self, finding: Finding) -> str:
        entry = self.catalog.snapshot.get(finding.vulnerability_id)
        lines = [f"## {finding.vulnerability_id}"]
        if entry:
            score = f", CVSS {entry.score}" if entry.score is not None else ""
            lines.append(f"Severity: **{entry.severity}**{score}")
            if entry.summary:
                lines += ["", entry.summary]
        lines += [
            "",
            f"Introduced in commit `{finding.commit_sha}`.",
            "",
            "### Affected files",
        ]
        lines += [f"- `{path}`" for path in (finding.affected_files or [])]
        lines += [
            "",
            "### Confidence",
            f"- Presence: {finding.presence_confidence or 0:.2f}",
            f"- Fix: {finding.fix_confidence or 0:.2f}",
        ]
        if finding.requires_human_review:
            lines.append(f"- Reviewed by a maintainer{': ' + finding.review_notes if finding.review_notes else ''}")
        if finding.patch_diff:
            lines += ["", "### Patch", "```diff", finding.patch_diff[:20000], "```"]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def stale_paths(self, repository: Repository, finding: Finding) -> List[str]:
        """Patched paths whose base-branch content differs from the analyzed commit.

        Patches carry whole files generated at the commit; committing them on
        top of a base branch that has moved since would revert those changes.
        """
        stale = []
        for path in sorted(finding.patch_files or {}):
            at_commit = await self.gateway.call_with_retry(
                HOST, lambda p=path: self.host.get_file(repository.owner, repository.name, p, finding.commit_sha),
            )
            at_base = await self.gateway.call_with_retry(
                HOST, lambda p=path: self.host.get_file(repository.owner, repository.name, p, repository.default_branch),
            )
            if at_commit != at_base:
                stale.append(path)
        return stale

    async def submit(self, finding_id: str) -> Optional[Submission]:
        """Open the PR for a CONFIRMED finding and move it to PR_CREATED.

        Returns the existing submission when the finding was already submitted,
        None when the finding is not ready. Raises AnalysisFailure when a
        patched file changed on the base branch since the commit. Host failures
        propagate (retried next cycle). Either way the finding stays CONFIRMED.
        """
        async with self.engine.locks.hold(f"submit:{finding_id}"):
            finding = await self.engine.get(finding_id)
            if finding.state in (FindingStatus.PR_CREATED, FindingStatus.PR_MERGED):
                return await self.get_for_finding(finding_id)
            if finding.state != FindingStatus.CONFIRMED:
                logger.debug(f"Finding {finding_id} is {finding.status}, not submitting")
                return None

            async with self.session_maker() as session:
                repository = await session.get(Repository, finding.repository_id)

            stale = await self.stale_paths(repository, finding)
            if stale:
                raise AnalysisFailure(
                    f"{repository.default_branch} of {repository.url} changed {', '.join(stale)} "
                    f"since {finding.commit_sha[:8]}; not submitting finding {finding_id}"
                )

            branch = self.branch_name(finding)
            title = self.build_title(finding)
            body = self.build_body(finding)
            files = dict(finding.patch_files or {})

            # Retries happen here, outside the finding's transition lock
            pr: PullRequestRef = await self.gateway.call_with_retry(
                HOST,
                lambda: self.host.open_pull_request(
                    repository.owner, repository.name, repository.default_branch, branch, title, body, files,
                ),
            )

            async with self.engine.locks.hold(self.engine.lock_key(finding_id)):
                async with self.session_maker() as session:
                    fresh = await session.get(Finding, finding_id)
                    if fresh.state != FindingStatus.CONFIRMED:
                        return await self.get_for_finding(finding_id)
                    submission = Submission(
                        finding_id=finding_id,
                        host_ref=pr.number,
                        url=pr.url,
                        branch=pr.branch,
                        status=SUBMISSION_OPEN,
                    )
                    session.add(submission)
                    await session.flush()
                    self.engine.transition(
                        session, fresh, FindingStatus.PR_CREATED,
                        f"Opened PR #{pr.number}", submission_id=submission.id,
                    )
                    await session.commit()

        logger.info(f"Submitted finding {finding_id} as {repository.url} PR #{pr.number}")
        if self.on_created:
            await self.on_created(submission.id)
        return submission

    async def submit_confirmed(self, limit: int = 50) -> int:
        """Submit every CONFIRMED finding. Stops early while the host breaker is open."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Finding.id)
                .where(Finding.status == FindingStatus.CONFIRMED.value)
                .order_by(Finding.updated_at)
                .limit(limit)
            )
            finding_ids = list(result.scalars().all())

        submitted = 0
        for finding_id in finding_ids:
            try:
                if await self.submit(finding_id):
                    submitted += 1
            except ServiceUnavailable as e:
                logger.info(f"Submissions deferred: {e}")
                break
            except TransientExternal as e:
                logger.warning(f"Submission of {finding_id} failed, retry next cycle: {e}")
            except AnalysisFailure as e:
                logger.warning(f"Submission held: {e}")
        return submitted

    # ------------------------------------------------------------------
    # Merge tracking
    # ------------------------------------------------------------------

    async def apply_status_update(self, update: ExternalStatusUpdate) -> Optional[Submission]:
        """Record a PR state change. Terminal submissions are never modified."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Submission)
                .join(Finding, Finding.id == Submission.finding_id)
                .join(Repository, Repository.id == Finding.repository_id)
                .where(Repository.url == update.repository_url, Submission.host_ref == str(update.host_ref))
            )
            submission = result.unique().scalar_one_or_none()
        if submission is None:
            logger.debug(f"No submission for {update.repository_url} PR #{update.host_ref}")
            return None
        if submission.is_terminal or not (update.merged or update.closed):
            return submission

        finding_id = submission.finding_id
        async with self.engine.locks.hold(self.engine.lock_key(finding_id)):
            async with self.session_maker() as session:
                submission = await session.get(Submission, submission.id)
                if submission.is_terminal:
                    return submission
                finding = await session.get(Finding, finding_id)
                now = datetime.utcnow()
                if update.merged:
                    submission.status = SUBMISSION_MERGED
                    submission.completed_at = update.merged_at or now
                    if finding.state == FindingStatus.PR_CREATED:
                        self.engine.transition(
                            session, finding, FindingStatus.PR_MERGED,
                            f"PR #{submission.host_ref} merged ({update.source})",
                        )
                else:
                    submission.status = SUBMISSION_CLOSED
                    submission.completed_at = now
                    logger.warning(
                        f"PR #{submission.host_ref} for finding {finding_id} closed without merge; "
                        f"finding stays {finding.status}"
                    )
                await session.commit()

        if update.merged and self.on_merged:
            await self.on_merged(submission.id)
        return submission

    async def poll_open(self) -> int:
        """Poll the host for every open submission. Returns updates applied."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Submission.id, Submission.host_ref, Repository.url, Repository.owner, Repository.name)
                .join(Finding, Finding.id == Submission.finding_id)
                .join(Repository, Repository.id == Finding.repository_id)
                .where(Submission.status == SUBMISSION_OPEN)
            )
            rows = result.all()

        applied = 0
        for submission_id, host_ref, url, owner, name in rows:
            try:
                state = await self.gateway.invoke(
                    HOST, lambda o=owner, n=name, r=host_ref: self.host.get_pull_request(o, n, r)
                )
            except ServiceUnavailable as e:
                logger.info(f"Merge polling deferred: {e}")
                break
            except TransientExternal as e:
                logger.warning(f"Polling PR #{host_ref} of {url} failed: {e}")
                continue
            if state.merged or state.state == "closed":
                await self.apply_status_update(ExternalStatusUpdate(
                    repository_url=url,
                    host_ref=host_ref,
                    merged=state.merged,
                    closed=state.state == "closed",
                    merged_at=state.merged_at,
                    source="poll",
                ))
                applied += 1
        return applied

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_for_finding(self, finding_id: str) -> Optional[Submission]:
        async with self.session_maker() as session:
            result = await session.execute(select(Submission).where(Submission.finding_id == finding_id))
            return result.unique().scalar_one_or_none()

    async def history(self) -> List[Submission]:
        async with self.session_maker() as session:
            result = await session.execute(select(Submission).order_by(Submission.created_at.desc()))
            return list(result.unique().scalars().all())
