"""
VulnWatch - Bug Finding API Endpoints
"""
from typing import Dict, List, Sequence
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.dependencies import get_pipeline
from backend.core.errors import NotFoundError
from backend.db.database import get_db
from backend.models import Finding, FindingStatus, Submission
from backend.schemas.finding import FindingResponse, FindingTransitionResponse, ReviewDecision
from backend.services.pipeline import Pipeline

router = APIRouter()


async def _with_submissions(db: AsyncSession, findings: Sequence[Finding]) -> List[FindingResponse]:
    ids = [f.id for f in findings]
    submissions: Dict[str, Submission] = {}
    if ids:
        result = await db.execute(select(Submission).where(Submission.finding_id.in_(ids)))
        submissions = {s.finding_id: s for s in result.unique().scalars().all()}
    return [FindingResponse.from_finding(f, submissions.get(f.id)) for f in findings]


@router.get("/needs-review", response_model=List[FindingResponse])
async def needs_review(db: AsyncSession = Depends(get_db)):
    """Findings waiting for a reviewer decision"""
    result = await db.execute(
        select(Finding)
        .where(Finding.status == FindingStatus.HUMAN_REVIEW.value)
        .order_by(Finding.updated_at)
    )
    return await _with_submissions(db, result.unique().scalars().all())


@router.get("/low-confidence-fix", response_model=List[FindingResponse])
async def low_confidence_fix(db: AsyncSession = Depends(get_db), pipeline: Pipeline = Depends(get_pipeline)):
    """Non-rejected findings whose fix confidence is below the auto-approve threshold"""
    result = await db.execute(
        select(Finding)
        .where(
            Finding.fix_confidence.is_not(None),
            Finding.fix_confidence < pipeline.engine.config.auto_approve_fix_confidence,
            Finding.status != FindingStatus.REJECTED.value,
        )
        .order_by(Finding.fix_confidence)
    )
    return await _with_submissions(db, result.unique().scalars().all())


@router.get("/{finding_id}", response_model=FindingResponse)
async def get_finding(finding_id: str, db: AsyncSession = Depends(get_db)):
    finding = await db.get(Finding, finding_id)
    if finding is None:
        raise NotFoundError(f"Finding {finding_id} not found")
    return (await _with_submissions(db, [finding]))[0]


@router.get("/{finding_id}/history", response_model=List[FindingTransitionResponse])
async def get_finding_history(finding_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Audit trail of status changes, oldest first"""
    await pipeline.engine.get(finding_id)
    transitions = await pipeline.engine.history(finding_id)
    return [FindingTransitionResponse.from_transition(t) for t in transitions]


@router.post("/{finding_id}/review", response_model=FindingResponse)
async def review_finding(
    finding_id: str,
    body: ReviewDecision,
    pipeline: Pipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
):
    """Approve or reject a finding held for human review"""
    await pipeline.engine.review(finding_id, body.decision, body.notes)
    finding = await pipeline.engine.get(finding_id)
    return (await _with_submissions(db, [finding]))[0]
