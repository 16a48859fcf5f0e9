"""
VulnWatch - Vulnerability Catalog API Endpoints
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from backend.api.dependencies import get_pipeline
from backend.schemas.vulnerability import VulnerabilityResponse
from backend.services.pipeline import Pipeline

router = APIRouter()


@router.get("", response_model=List[VulnerabilityResponse])
async def list_cves(
    language: Optional[str] = Query(None, description="Restrict to one language"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Catalog records relevant to the watched languages, most severe and newest first"""
    snapshot = pipeline.catalog.snapshot
    if language:
        entries = snapshot.shortlist(language)
    else:
        entries = snapshot.relevant(await pipeline.registry.watched_languages())
    return [VulnerabilityResponse.from_entry(e) for e in entries]
