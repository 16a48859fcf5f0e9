"""
VulnWatch - Bounty API Endpoints
"""
import uuid
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.dependencies import get_pipeline
from backend.core.bugbounty import BountyListing
from backend.core.errors import ConflictError, ValidationError
from backend.db.database import get_db
from backend.models import Bounty, BountyStatus
from backend.schemas.bounty import BountyCreate, BountyLink, BountyResponse
from backend.schemas.submission import AmbiguousMatchResponse
from backend.services.pipeline import Pipeline

router = APIRouter()

MANUAL_PLATFORM = "manual"


@router.get("", response_model=List[BountyResponse])
async def list_bounties(status: Optional[BountyStatus] = Query(None), db: AsyncSession = Depends(get_db)):
    query = select(Bounty).order_by(Bounty.created_at.desc())
    if status:
        query = query.where(Bounty.status == status.value)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/claimed", response_model=List[BountyResponse])
async def claimed_bounties(db: AsyncSession = Depends(get_db)):
    """Bounties whose submission was merged (claimed or paid out)"""
    result = await db.execute(
        select(Bounty)
        .where(Bounty.status.in_([BountyStatus.CLAIMED.value, BountyStatus.COMPLETED.value]))
        .order_by(Bounty.claimed_at.desc())
    )
    return result.scalars().all()


@router.get("/ambiguous", response_model=List[AmbiguousMatchResponse])
async def ambiguous_matches(pipeline: Pipeline = Depends(get_pipeline)):
    """Submissions held until a bounty is linked by hand"""
    return [AmbiguousMatchResponse(**row) for row in await pipeline.reconciler.ambiguous()]


@router.post("", response_model=BountyResponse, status_code=201)
async def create_bounty(body: BountyCreate, pipeline: Pipeline = Depends(get_pipeline)):
    """Record a bounty offered outside the integrated platforms"""
    if body.amount < pipeline.reconciler.min_amount:
        raise ValidationError(f"Bounty amount {body.amount} is below the minimum {pipeline.reconciler.min_amount}")
    listing = BountyListing(
        platform=MANUAL_PLATFORM,
        external_id=body.external_id or str(uuid.uuid4()),
        repository_url=body.repository_url,
        amount=body.amount,
        currency=body.currency,
        title=body.title,
        description=body.description,
        deadline=body.deadline,
        vulnerability_ref=body.cve_id,
        finding_ref=body.finding_id,
    )
    bounty = await pipeline.reconciler.add_listing(listing, triage=False)
    if bounty is None:
        raise ConflictError(f"Bounty {listing.platform}/{listing.external_id} already exists")
    return bounty


@router.post("/{bounty_id}/link", response_model=BountyResponse)
async def link_bounty(bounty_id: str, body: BountyLink, pipeline: Pipeline = Depends(get_pipeline)):
    """Resolve an ambiguous match by linking a submission to this bounty"""
    return await pipeline.reconciler.link_manually(bounty_id, body.submission_id)
