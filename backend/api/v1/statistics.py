"""
VulnWatch - Statistics API Endpoint
"""
from fastapi import APIRouter, Depends

from backend.api.dependencies import get_pipeline
from backend.schemas.statistics import StatisticsResponse
from backend.services.pipeline import Pipeline

router = APIRouter()


@router.get("", response_model=StatisticsResponse)
async def get_statistics(pipeline: Pipeline = Depends(get_pipeline)):
    return StatisticsResponse(**await pipeline.statistics.summary())
