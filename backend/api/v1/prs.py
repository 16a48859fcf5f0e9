"""
VulnWatch - Pull Request API Endpoints
"""
from typing import List
from fastapi import APIRouter, Depends

from backend.api.dependencies import get_pipeline
from backend.schemas.submission import SubmissionResponse
from backend.services.pipeline import Pipeline

router = APIRouter()


@router.get("/history", response_model=List[SubmissionResponse])
async def pr_history(pipeline: Pipeline = Depends(get_pipeline)):
    """Every remediation PR, newest first"""
    submissions = await pipeline.submitter.history()
    return [SubmissionResponse.from_submission(s) for s in submissions]
