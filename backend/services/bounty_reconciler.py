"""
VulnWatch - Bounty Reconciler

Bounty state machine:

    OPEN -> IN_PROGRESS (submission linked) -> CLAIMED (submission merged)
         -> COMPLETED (payout confirmed)
    IN_PROGRESS / CLAIMED -> FAILED   (platform rejection)
    OPEN / IN_PROGRESS    -> EXPIRED  (deadline passed)

A submission is matched to a bounty by repository and, where the platform
supplies one, an explicit finding or vulnerability reference. When several
bounties remain possible the match is not guessed: MatchAmbiguous is raised
and the submission is held until someone links it by hand.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.bugbounty import BountyListing, PayoutStatus, PlatformRegistry
from backend.core.catalog import normalize_language
from backend.core.errors import (
    InvalidTransition,
    MatchAmbiguous,
    NotFoundError,
    ServiceUnavailable,
    TransientExternal,
    ValidationError,
)
from backend.core.locks import KeyedLockTable
from backend.core.resilience import ResilienceGateway, bounty_key
from backend.models import Bounty, BountyStatus, Finding, Repository, Submission
from backend.models.bounty import BOUNTY_TRANSITIONS
from backend.models.submission import SUBMISSION_CLOSED, SUBMISSION_MERGED
from backend.services.repository_registry import canonical_url

logger = logging.getLogger(__name__)

MATCH_LINKED = "linked"
MATCH_NONE = "none"
MATCH_AMBIGUOUS = "ambiguous"


class BountyReconciler:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        gateway: ResilienceGateway,
        registry: PlatformRegistry,
        min_amount: float = 50.0,
        max_amount: Optional[float] = None,
        supported_languages: Optional[Iterable[str]] = None,
        locks: Optional[KeyedLockTable] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_maker = session_maker
        self.gateway = gateway
        self.registry = registry
        self.min_amount = min_amount
        self.max_amount = max_amount
        # Empty means every language is accepted
        self.supported_languages: Set[str] = {
            (normalize_language(lang) or lang).lower() for lang in (supported_languages or ()) if lang
        }
        self.locks = locks or KeyedLockTable()
        self._clock = clock

    @staticmethod
    def match_key(repository_id: str) -> str:
        return f"bounty-match:{repository_id}"

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, bounty: Bounty, target: BountyStatus, reason: str = "") -> None:
        current = bounty.state
        if target not in BOUNTY_TRANSITIONS[current]:
            raise InvalidTransition(f"bounty {bounty.id}", current.value, target.value)
        now = self._clock()
        bounty.status = target.value
        if target == BountyStatus.IN_PROGRESS:
            bounty.started_at = now
        elif target == BountyStatus.CLAIMED:
            bounty.claimed_at = now
        elif target in (BountyStatus.COMPLETED, BountyStatus.FAILED, BountyStatus.EXPIRED):
            bounty.completed_at = now
            if target != BountyStatus.COMPLETED:
                bounty.failure_reason = reason or target.value.lower()
        logger.info(f"Bounty {bounty.platform}/{bounty.external_id} {current.value} -> {target.value} {reason}".rstrip())

    # ------------------------------------------------------------------
    # Feed ingestion
    # ------------------------------------------------------------------

    def language_supported(self, language: Optional[str]) -> bool:
        """Unknown languages pass; known ones must be in the supported set."""
        if not self.supported_languages or not language:
            return True
        return (normalize_language(language) or language).lower() in self.supported_languages

    async def add_listing(self, listing: BountyListing, triage: bool = True) -> Optional[Bounty]:
        """Store a listing unless it is a duplicate or below the minimum amount.

        With triage on (platform feeds), listings above max_amount or for a
        registered repository whose language is not supported are skipped too.
        """
        label = f"{listing.platform}/{listing.external_id}"
        if not listing.meets_minimum(self.min_amount):
            logger.debug(f"Bounty {label} below minimum, skipped")
            return None
        if triage and self.max_amount is not None and listing.amount > self.max_amount:
            logger.debug(f"Bounty {label} amount {listing.amount} exceeds maximum {self.max_amount}, skipped")
            return None

        repo_url = canonical_url(listing.repository_url) or listing.repository_url
        async with self.session_maker() as session:
            existing = await session.execute(
                select(Bounty).where(Bounty.platform == listing.platform, Bounty.external_id == listing.external_id)
            )
            if existing.scalar_one_or_none() is not None:
                return None

            row = (await session.execute(
                select(Repository.id, Repository.language).where(Repository.url == repo_url)
            )).one_or_none()
            repository_id, language = row if row is not None else (None, None)
            if triage and not self.language_supported(language):
                logger.info(f"Bounty {label} skipped: language {language!r} not supported")
                return None

            bounty = Bounty(
                platform=listing.platform,
                external_id=listing.external_id,
                title=listing.title,
                description=listing.description,
                repository_url=repo_url,
                repository_id=repository_id,
                vulnerability_ref=listing.vulnerability_ref.upper() if listing.vulnerability_ref else None,
                finding_ref=listing.finding_ref,
                amount=listing.amount,
                currency=listing.currency or "USD",
                deadline=listing.deadline,
                status=BountyStatus.OPEN.value,
            )
            session.add(bounty)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
        logger.info(f"New bounty {bounty.platform}/{bounty.external_id} {bounty.amount} {bounty.currency} for {repo_url}")
        return bounty

    async def sync_platforms(self) -> int:
        """Fetch open bounties from every enabled platform. Returns new bounties stored."""
        stored = 0
        for name, platform in self.registry.get_enabled().items():
            try:
                listings = await self.gateway.call_with_retry(bounty_key(name), platform.fetch_bounties)
            except ServiceUnavailable as e:
                logger.info(f"{name} sync deferred: {e}")
                continue
            except TransientExternal as e:
                logger.warning(f"{name} sync failed: {e}")
                continue
            for listing in listings:
                if await self.add_listing(listing):
                    stored += 1
        return stored

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    @staticmethod
    async def _candidates(
        session: AsyncSession, finding: Finding, repository: Repository, statuses: Sequence[BountyStatus]
    ) -> List[Bounty]:
        result = await session.execute(
            select(Bounty).where(
                Bounty.status.in_([s.value for s in statuses]),
                or_(Bounty.repository_id == repository.id, Bounty.repository_url == repository.url),
            ).order_by(Bounty.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    def _choose(submission_id: str, finding: Finding, candidates: List[Bounty]) -> Optional[Bounty]:
        """Pick the bounty for a finding, or raise MatchAmbiguous."""
        by_finding = [b for b in candidates if b.finding_ref == finding.id]
        if len(by_finding) == 1:
            return by_finding[0]
        if len(by_finding) > 1:
            raise MatchAmbiguous(submission_id, [b.id for b in by_finding])

        by_vuln = [b for b in candidates if b.vulnerability_ref and b.vulnerability_ref == finding.vulnerability_id]
        if len(by_vuln) == 1:
            return by_vuln[0]
        if len(by_vuln) > 1:
            raise MatchAmbiguous(submission_id, [b.id for b in by_vuln])

        # Bounties naming another finding or vulnerability are not candidates
        unreferenced = [b for b in candidates if not b.finding_ref and not b.vulnerability_ref]
        if len(unreferenced) == 1:
            return unreferenced[0]
        if len(unreferenced) > 1:
            raise MatchAmbiguous(submission_id, [b.id for b in unreferenced])
        return None

    async def _load_submission(self, session: AsyncSession, submission_id: str):
        submission = await session.get(Submission, submission_id)
        if submission is None:
            raise NotFoundError(f"Submission {submission_id} not found")
        finding = await session.get(Finding, submission.finding_id)
        repository = await session.get(Repository, finding.repository_id)
        return submission, finding, repository

    async def link_submission(self, submission_id: str) -> Optional[Bounty]:
        """Link a submission to its bounty (OPEN -> IN_PROGRESS) and, if already merged, claim it.

        Raises MatchAmbiguous after recording the candidates on the submission.
        Choosing and attaching run under the repository's match lock so two
        submissions never claim the same OPEN bounty.
        """
        async with self.session_maker() as session:
            _, finding, _ = await self._load_submission(session, submission_id)
            repository_id = finding.repository_id
        async with self.locks.hold(self.match_key(repository_id)):
            return await self._link(submission_id)

    async def _link(self, submission_id: str) -> Optional[Bounty]:
        async with self.session_maker() as session:
            submission, finding, repository = await self._load_submission(session, submission_id)

            linked = (await session.execute(
                select(Bounty).where(Bounty.submission_id == submission_id)
            )).scalar_one_or_none()
            if linked is not None:
                return linked
            if submission.status == SUBMISSION_CLOSED:
                return None

            candidates = await self._candidates(session, finding, repository, (BountyStatus.OPEN,))
            try:
                bounty = self._choose(submission_id, finding, candidates)
            except MatchAmbiguous as e:
                submission.bounty_match = MATCH_AMBIGUOUS
                submission.bounty_candidates = e.candidate_ids
                await session.commit()
                logger.warning(f"Ambiguous bounty match held for manual link: {e}")
                raise

            if bounty is None:
                submission.bounty_match = MATCH_NONE
                await session.commit()
                return None

            self._attach(bounty, submission)
            await session.commit()
            return bounty

    def _attach(self, bounty: Bounty, submission: Submission) -> None:
        bounty.submission_id = submission.id
        submission.bounty_match = MATCH_LINKED
        submission.bounty_candidates = None
        self._transition(bounty, BountyStatus.IN_PROGRESS, f"linked to submission {submission.id}")
        if submission.status == SUBMISSION_MERGED:
            self._transition(bounty, BountyStatus.CLAIMED, f"PR #{submission.host_ref} merged")

    async def on_submission_merged(self, submission_id: str) -> Optional[Bounty]:
        """IN_PROGRESS -> CLAIMED for the submission's bounty, linking it first if needed."""
        async with self.session_maker() as session:
            linked = (await session.execute(
                select(Bounty).where(Bounty.submission_id == submission_id)
            )).scalar_one_or_none()
            if linked is not None:
                if linked.state == BountyStatus.IN_PROGRESS:
                    submission = await session.get(Submission, submission_id)
                    self._transition(linked, BountyStatus.CLAIMED, f"PR #{submission.host_ref} merged")
                    await session.commit()
                return linked
        return await self.link_submission(submission_id)

    async def link_manually(self, bounty_id: str, submission_id: str) -> Bounty:
        """Resolve a held match by naming the bounty explicitly."""
        async with self.session_maker() as session:
            _, finding, _ = await self._load_submission(session, submission_id)
            repository_id = finding.repository_id
        async with self.locks.hold(self.match_key(repository_id)):
            return await self._link_manually(bounty_id, submission_id)

    async def _link_manually(self, bounty_id: str, submission_id: str) -> Bounty:
        async with self.session_maker() as session:
            submission, finding, repository = await self._load_submission(session, submission_id)
            bounty = await session.get(Bounty, bounty_id)
            if bounty is None:
                raise NotFoundError(f"Bounty {bounty_id} not found")
            if bounty.submission_id == submission_id:
                return bounty
            if bounty.state != BountyStatus.OPEN:
                raise ValidationError(f"Bounty {bounty_id} is {bounty.status}, only OPEN bounties can be linked")
            already = (await session.execute(
                select(Bounty.id).where(Bounty.submission_id == submission_id)
            )).scalar_one_or_none()
            if already:
                raise ValidationError(f"Submission {submission_id} is already linked to bounty {already}")
            if submission.status == SUBMISSION_CLOSED:
                raise ValidationError(f"Submission {submission_id} was closed without merge")
            bounty.finding_ref = finding.id
            if bounty.repository_id is None:
                bounty.repository_id = repository.id
            self._attach(bounty, submission)
            await session.commit()
            return bounty

    async def match_pending(self) -> int:
        """Retry matching for open/merged submissions not linked yet (new bounties may have arrived)."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Submission.id).where(
                    Submission.status != SUBMISSION_CLOSED,
                    or_(Submission.bounty_match.is_(None), Submission.bounty_match == MATCH_NONE),
                )
            )
            submission_ids = list(result.scalars().all())

        linked = 0
        for submission_id in submission_ids:
            try:
                if await self.link_submission(submission_id):
                    linked += 1
            except MatchAmbiguous:
                continue
        return linked

    async def ambiguous(self) -> List[Dict]:
        """Submissions held for manual bounty linking."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Submission).where(Submission.bounty_match == MATCH_AMBIGUOUS)
            )
            return [
                {"submission_id": s.id, "finding_id": s.finding_id, "candidate_ids": s.bounty_candidates or []}
                for s in result.unique().scalars().all()
            ]

    # ------------------------------------------------------------------
    # Payout and expiry
    # ------------------------------------------------------------------

    async def apply_payout(self, platform: str, status: PayoutStatus) -> Optional[Bounty]:
        """CLAIMED -> COMPLETED on payout, IN_PROGRESS/CLAIMED -> FAILED on rejection."""
        async with self.session_maker() as session:
            bounty = (await session.execute(
                select(Bounty).where(Bounty.platform == platform, Bounty.external_id == status.external_id)
            )).scalar_one_or_none()
            if bounty is None or bounty.is_terminal:
                return bounty
            if status.is_paid and bounty.state == BountyStatus.CLAIMED:
                self._transition(bounty, BountyStatus.COMPLETED, "payout confirmed")
            elif status.is_rejected and bounty.state in (BountyStatus.IN_PROGRESS, BountyStatus.CLAIMED):
                self._transition(bounty, BountyStatus.FAILED, status.reason or "rejected by platform")
            else:
                return bounty
            await session.commit()
            return bounty

    async def check_payouts(self) -> int:
        """Poll payout status for linked bounties. Returns bounties that changed state."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Bounty.platform, Bounty.external_id, Bounty.status).where(
                    Bounty.status.in_([BountyStatus.IN_PROGRESS.value, BountyStatus.CLAIMED.value])
                )
            )
            rows = result.all()

        changed = 0
        for platform_name, external_id, status in rows:
            platform = self.registry.get(platform_name)
            if platform is None or not platform.enabled:
                continue
            try:
                payout = await self.gateway.invoke(
                    bounty_key(platform_name), lambda p=platform, x=external_id: p.get_payout_status(x)
                )
            except ServiceUnavailable as e:
                logger.info(f"Payout check on {platform_name} deferred: {e}")
                continue
            except TransientExternal as e:
                logger.warning(f"Payout check for {platform_name}/{external_id} failed: {e}")
                continue
            before = status
            bounty = await self.apply_payout(platform_name, payout)
            if bounty is not None and bounty.status != before:
                changed += 1
        return changed

    async def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """OPEN / IN_PROGRESS bounties whose deadline has passed become EXPIRED."""
        now = now or self._clock()
        async with self.session_maker() as session:
            result = await session.execute(
                select(Bounty).where(
                    Bounty.status.in_([BountyStatus.OPEN.value, BountyStatus.IN_PROGRESS.value]),
                    Bounty.deadline.is_not(None),
                    Bounty.deadline < now,
                )
            )
            overdue = list(result.scalars().all())
            for bounty in overdue:
                self._transition(bounty, BountyStatus.EXPIRED, f"deadline {bounty.deadline.isoformat()} passed")
            await session.commit()
        return len(overdue)

    async def reconcile(self) -> Dict[str, int]:
        return {
            "synced": await self.sync_platforms(),
            "linked": await self.match_pending(),
            "paid": await self.check_payouts(),
            "expired": await self.expire_overdue(),
        }
