"""
VulnWatch - Repository API Endpoints
"""
from typing import List
from fastapi import APIRouter, Depends, Query

from backend.api.dependencies import get_pipeline
from backend.schemas.repository import RepositoryCreate, RepositoryResponse
from backend.services.pipeline import Pipeline

router = APIRouter()


@router.get("", response_model=List[RepositoryResponse])
async def list_repositories(pipeline: Pipeline = Depends(get_pipeline)):
    """List watched repositories"""
    return await pipeline.registry.list(active_only=True)


@router.post("", response_model=RepositoryResponse, status_code=201)
async def register_repository(body: RepositoryCreate, pipeline: Pipeline = Depends(get_pipeline)):
    """Start watching a repository. 409 if it is already watched, 422 if the URL is malformed."""
    return await pipeline.registry.register(body.url, language=body.language, default_branch=body.default_branch)


@router.delete("", response_model=RepositoryResponse)
async def deregister_repository(url: str = Query(...), pipeline: Pipeline = Depends(get_pipeline)):
    """Stop watching a repository. Its findings are kept."""
    return await pipeline.registry.deregister(url)
