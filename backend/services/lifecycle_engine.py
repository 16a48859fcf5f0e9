"""
VulnWatch - Finding Lifecycle Engine

Advances findings through the state machine one transition at a time:

    DETECTED -> VERIFIED -> FIX_GENERATED -> FIX_CONFIRMED
        -> (HUMAN_REVIEW) -> CONFIRMED -> PR_CREATED -> PR_MERGED
    any pre-submission stage -> REJECTED

Each transition runs under the finding's advisory lock. The analysis call
is made outside any database transaction; the resulting status change and
its audit row are then committed together or not at all. Failures
(AnalysisFailure, TransientExternal, ServiceUnavailable) leave the finding
exactly where it was.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.analysis import (
    CommitContext,
    FixGenerator,
    FixVerifier,
    Patch,
    PresenceDetector,
)
from backend.core.catalog import CatalogEntry, VulnerabilityCatalog
from backend.core.errors import (
    AnalysisFailure,
    InvalidTransition,
    NotFoundError,
    ServiceUnavailable,
    TransientExternal,
    ValidationError,
)
from backend.core.locks import KeyedLockTable
from backend.models import Finding, FindingStatus, FindingTransition, Repository
from backend.models.finding import STAGE_ORDER, TERMINAL_STATUSES, can_transition

logger = logging.getLogger(__name__)

# States the engine moves on its own; the rest wait for a reviewer,
# the submitter or an external status update.
AUTOMATIC_STATES = (
    FindingStatus.DETECTED,
    FindingStatus.VERIFIED,
    FindingStatus.FIX_GENERATED,
    FindingStatus.FIX_CONFIRMED,
)


@dataclass
class LifecycleConfig:
    min_presence_confidence: float = 0.5
    min_fix_confidence: float = 0.3
    auto_approve_fix_confidence: float = 0.8
    max_fix_attempts: int = 3

    @classmethod
    def from_settings(cls, settings) -> "LifecycleConfig":
        return cls(
            min_presence_confidence=settings.MIN_PRESENCE_CONFIDENCE,
            min_fix_confidence=settings.MIN_FIX_CONFIDENCE,
            auto_approve_fix_confidence=settings.AUTO_APPROVE_FIX_CONFIDENCE,
            max_fix_attempts=settings.MAX_FIX_ATTEMPTS,
        )


@dataclass
class StageOutcome:
    target: FindingStatus
    reason: str
    updates: Dict[str, Any] = field(default_factory=dict)


class FindingLifecycleEngine:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        catalog: VulnerabilityCatalog,
        detector: PresenceDetector,
        generator: FixGenerator,
        verifier: FixVerifier,
        config: Optional[LifecycleConfig] = None,
        locks: Optional[KeyedLockTable] = None,
        concurrency: int = 4,
    ):
        self.session_maker = session_maker
        self.catalog = catalog
        self.detector = detector
        self.generator = generator
        self.verifier = verifier
        self.config = config or LifecycleConfig()
        self.locks = locks or KeyedLockTable()
        self.concurrency = max(1, concurrency)

    @staticmethod
    def lock_key(finding_id: str) -> str:
        return f"finding:{finding_id}"

    # ------------------------------------------------------------------
    # Transition primitive
    # ------------------------------------------------------------------

    def transition(
        self,
        session: AsyncSession,
        finding: Finding,
        target: FindingStatus,
        reason: str,
        **updates: Any,
    ) -> FindingTransition:
        """Apply a status change and its audit row to the session (caller commits)."""
        current = finding.state
        if not can_transition(current, target):
            raise InvalidTransition(f"finding {finding.id}", current.value, target.value)
        for name, value in updates.items():
            setattr(finding, name, value)
        finding.status = target.value
        finding.updated_at = datetime.utcnow()
        audit = FindingTransition(
            finding_id=finding.id,
            from_status=current.value,
            to_status=target.value,
            reason=reason,
        )
        session.add(audit)
        logger.info(f"Finding {finding.id} [{finding.vulnerability_id}] {current.value} -> {target.value}: {reason}")
        return audit

    async def get(self, finding_id: str) -> Finding:
        async with self.session_maker() as session:
            finding = await session.get(Finding, finding_id)
        if finding is None:
            raise NotFoundError(f"Finding {finding_id} not found")
        return finding

    # ------------------------------------------------------------------
    # Automatic stages
    # ------------------------------------------------------------------

    async def advance(self, finding_id: str) -> FindingStatus:
        """Run one stage for the finding. Returns its status afterwards.

        Findings waiting on a reviewer, the submitter or the host are
        returned unchanged.
        """
        async with self.locks.hold(self.lock_key(finding_id)):
            finding = await self.get(finding_id)
            state = finding.state
            if state not in AUTOMATIC_STATES:
                return state

            entry = self.catalog.snapshot.get(finding.vulnerability_id)
            if entry is None:
                raise AnalysisFailure(f"{finding.vulnerability_id} is not in the current catalog snapshot")

            outcome = await self._run_stage(finding, entry)

            async with self.session_maker() as session:
                fresh = await session.get(Finding, finding_id)
                if fresh is None or fresh.state != state:
                    # Moved by a path that bypasses the lock (should not happen); keep what is stored
                    logger.warning(f"Finding {finding_id} changed underneath stage {state.value}, outcome dropped")
                    return fresh.state if fresh else state
                self.transition(session, fresh, outcome.target, outcome.reason, **outcome.updates)
                await session.commit()
            return outcome.target

    async def _run_stage(self, finding: Finding, entry: CatalogEntry) -> StageOutcome:
        state = finding.state
        if state == FindingStatus.FIX_CONFIRMED:
            return self._gate(finding)

        context = await self._context(finding)
        if state == FindingStatus.DETECTED:
            return await self._detect(finding, entry, context)
        if state == FindingStatus.VERIFIED:
            return await self._generate(finding, entry, context, FindingStatus.FIX_GENERATED, "Fix generated")
        if finding.patch_files is None:
            return await self._generate(finding, entry, context, FindingStatus.FIX_GENERATED, "Fix regenerated")
        return await self._verify(finding, entry, context)

    async def _context(self, finding: Finding) -> CommitContext:
        async with self.session_maker() as session:
            repository = await session.get(Repository, finding.repository_id)
        return CommitContext(
            owner=repository.owner,
            name=repository.name,
            language=repository.language,
            commit_sha=finding.commit_sha,
            message=finding.commit_message or "",
            diff=finding.commit_diff or "",
            changed_files=list(finding.affected_files or []),
        )

    async def _detect(self, finding: Finding, entry: CatalogEntry, context: CommitContext) -> StageOutcome:
        result = await self.detector.detect(context, entry)
        updates = {
            "presence_confidence": result.confidence,
            "evidence": result.evidence,
            "affected_files": result.affected_files or list(finding.affected_files or []),
        }
        if result.confidence < self.config.min_presence_confidence:
            return StageOutcome(
                FindingStatus.REJECTED,
                f"Presence confidence {result.confidence:.2f} below {self.config.min_presence_confidence:.2f}",
                updates,
            )
        return StageOutcome(FindingStatus.VERIFIED, f"Presence confidence {result.confidence:.2f}", updates)

    async def _generate(
        self, finding: Finding, entry: CatalogEntry, context: CommitContext, target: FindingStatus, reason: str
    ) -> StageOutcome:
        patch = await self.generator.generate_fix(context, entry, list(finding.affected_files or []))
        return StageOutcome(
            target,
            f"{reason} ({len(patch.files)} file(s))",
            {"patch_files": dict(patch.files), "patch_diff": patch.diff},
        )

    async def _verify(self, finding: Finding, entry: CatalogEntry, context: CommitContext) -> StageOutcome:
        patch = Patch(files=dict(finding.patch_files or {}), diff=finding.patch_diff or "")
        result = await self.verifier.verify_fix(context, entry, patch)
        updates: Dict[str, Any] = {"fix_confidence": result.confidence, "verification_notes": result.notes}
        if result.confidence > self.config.min_fix_confidence:
            return StageOutcome(FindingStatus.FIX_CONFIRMED, f"Fix confidence {result.confidence:.2f}", updates)

        attempts = (finding.fix_attempts or 0) + 1
        updates["fix_attempts"] = attempts
        if attempts >= self.config.max_fix_attempts:
            return StageOutcome(
                FindingStatus.REJECTED,
                f"Fix confidence {result.confidence:.2f} after {attempts} attempt(s)",
                updates,
            )
        updates["patch_files"] = None
        updates["patch_diff"] = None
        return StageOutcome(
            FindingStatus.FIX_GENERATED,
            f"Fix confidence {result.confidence:.2f} too low, regenerating (attempt {attempts})",
            updates,
        )

    def _gate(self, finding: Finding) -> StageOutcome:
        confidence = finding.fix_confidence or 0.0
        if confidence >= self.config.auto_approve_fix_confidence:
            return StageOutcome(
                FindingStatus.CONFIRMED,
                f"Auto-approved at fix confidence {confidence:.2f}",
                {"requires_human_review": False},
            )
        return StageOutcome(
            FindingStatus.HUMAN_REVIEW,
            f"Fix confidence {confidence:.2f} below auto-approve {self.config.auto_approve_fix_confidence:.2f}",
            {"requires_human_review": True},
        )

    async def run(self, finding_id: str) -> FindingStatus:
        """Advance until the finding rests in a waiting or terminal state (bounded number of steps)."""
        max_steps = len(AUTOMATIC_STATES) + 2 * self.config.max_fix_attempts + 1
        state = (await self.get(finding_id)).state
        for _ in range(max_steps):
            if state not in AUTOMATIC_STATES:
                break
            state = await self.advance(finding_id)
        return state

    async def advance_pending(self, limit: int = 100) -> Dict[str, int]:
        """Advance every finding in an automatic state. Per-finding errors are logged, not raised."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Finding.id)
                .where(Finding.status.in_([s.value for s in AUTOMATIC_STATES]))
                .order_by(Finding.created_at)
                .limit(limit)
            )
            finding_ids = list(result.scalars().all())

        semaphore = asyncio.Semaphore(self.concurrency)
        tally: Dict[str, int] = {}

        async def _one(finding_id: str):
            async with semaphore:
                try:
                    state = await self.run(finding_id)
                except ServiceUnavailable as e:
                    logger.info(f"Finding {finding_id} deferred: {e}")
                    return
                except TransientExternal as e:
                    logger.warning(f"Finding {finding_id} held after transient failure: {e}")
                    return
                except AnalysisFailure as e:
                    logger.warning(f"Finding {finding_id} held: {e}")
                    return
                tally[state.value] = tally.get(state.value, 0) + 1

        await asyncio.gather(*(_one(fid) for fid in finding_ids))
        return tally

    # ------------------------------------------------------------------
    # Reviewer command
    # ------------------------------------------------------------------

    async def review(self, finding_id: str, decision: str, notes: Optional[str] = None) -> FindingStatus:
        """Apply a reviewer decision ('approve' or 'reject') to a HUMAN_REVIEW finding.

        Re-delivery after the decision was applied is a no-op.
        """
        decision = (decision or "").lower()
        if decision not in ("approve", "reject"):
            raise ValidationError(f"Unknown review decision {decision!r}")

        async with self.locks.hold(self.lock_key(finding_id)):
            async with self.session_maker() as session:
                finding = await session.get(Finding, finding_id)
                if finding is None:
                    raise NotFoundError(f"Finding {finding_id} not found")
                state = finding.state
                if state != FindingStatus.HUMAN_REVIEW:
                    if STAGE_ORDER[state] > STAGE_ORDER[FindingStatus.HUMAN_REVIEW] or state in TERMINAL_STATUSES:
                        return state
                    raise InvalidTransition(f"finding {finding_id}", state.value, "review")

                target = FindingStatus.CONFIRMED if decision == "approve" else FindingStatus.REJECTED
                reason = f"Reviewer {decision}d" + (f": {notes}" if notes else "")
                self.transition(session, finding, target, reason, review_notes=notes)
                await session.commit()
                return target

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def history(self, finding_id: str) -> List[FindingTransition]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(FindingTransition)
                .where(FindingTransition.finding_id == finding_id)
                .order_by(FindingTransition.created_at, FindingTransition.id)
            )
            return list(result.scalars().all())
