"""
VulnWatch - FastAPI Main Application
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import settings
from backend.core.errors import (
    ConflictError,
    InvalidTransition,
    MatchAmbiguous,
    NotFoundError,
    ServiceUnavailable,
    ValidationError,
)
from backend.db.database import async_session_maker, close_db, init_db
from backend.api.v1 import bounties, cves, findings, prs, repositories, statistics, webhooks
from backend.services.pipeline import Pipeline
from backend.services.scheduler import PipelineScheduler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    pipeline = Pipeline(settings, async_session_maker)
    app.state.pipeline = pipeline
    try:
        await pipeline.refresh_catalog()
    except Exception as e:
        logger.error(f"Catalog load failed, starting with an empty catalog: {e}")

    app.state.scheduler = None
    if settings.ENABLE_SCHEDULER:
        scheduler = PipelineScheduler(
            pipeline,
            interval_seconds=settings.PIPELINE_INTERVAL_SECONDS,
            catalog_interval_seconds=settings.CATALOG_SYNC_INTERVAL_SECONDS,
        )
        scheduler.start()
        app.state.scheduler = scheduler

    yield

    # Shutdown
    logger.info("Shutting down...")
    if app.state.scheduler:
        app.state.scheduler.shutdown()
    await pipeline.close()
    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Vulnerability finding lifecycle: detection, fix, remediation PR and bounty payout",
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error taxonomy -> HTTP
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "existingId": exc.existing_id})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(MatchAmbiguous)
async def match_ambiguous_handler(request: Request, exc: MatchAmbiguous):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "submissionId": exc.submission_id, "candidateIds": exc.candidate_ids},
    )


@app.exception_handler(ServiceUnavailable)
async def service_unavailable_handler(request: Request, exc: ServiceUnavailable):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc)},
        headers={"Retry-After": str(max(1, int(exc.retry_after or 1)))},
    )


# Include API routers
app.include_router(repositories.router, prefix="/api/repositories", tags=["Repositories"])
app.include_router(findings.router, prefix="/api/bug-findings", tags=["Findings"])
app.include_router(bounties.router, prefix="/api/bounties", tags=["Bounties"])
app.include_router(prs.router, prefix="/api/prs", tags=["Pull Requests"])
app.include_router(cves.router, prefix="/api/cves", tags=["Catalog"])
app.include_router(statistics.router, prefix="/api/statistics", tags=["Statistics"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])


@app.get("/api/health")
async def health_check(request: Request):
    """Health check endpoint with dependency breaker state"""
    pipeline = getattr(request.app.state, "pipeline", None)
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "analysis_backend": settings.ANALYSIS_BACKEND,
        "catalog_records": len(pipeline.catalog.snapshot) if pipeline else 0,
        "dependencies": {k: v["state"] for k, v in pipeline.gateway.snapshot().items()} if pipeline else {},
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "backend.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
