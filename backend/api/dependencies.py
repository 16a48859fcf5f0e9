"""
VulnWatch - API dependencies
"""
from fastapi import HTTPException, Request

from backend.services.pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    """Pipeline built in the application lifespan"""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline
