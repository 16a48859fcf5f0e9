"""
VulnWatch - Pipeline Scheduler

Interval jobs driving the pipeline with APScheduler. Each job runs one
stage; a job never overlaps with itself (max_instances=1).
"""
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backend.services.pipeline import Pipeline

logger = logging.getLogger(__name__)


class PipelineScheduler:
    """Registers the pipeline stages as recurring jobs."""

    def __init__(self, pipeline: Pipeline, interval_seconds: int = 300, catalog_interval_seconds: int = 86400):
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.catalog_interval_seconds = catalog_interval_seconds
        self.scheduler = AsyncIOScheduler()
        self.jobs_meta: Dict[str, Dict] = {}

        self.add_job("ingest", self.pipeline.ingestor.ingest_all, interval_seconds)
        self.add_job("advance_findings", self.pipeline.engine.advance_pending, interval_seconds)
        self.add_job("submit", self.pipeline.submitter.submit_confirmed, interval_seconds)
        self.add_job("poll_merges", self.pipeline.submitter.poll_open, interval_seconds)
        self.add_job("reconcile_bounties", self.pipeline.reconciler.reconcile, interval_seconds)
        self.add_job(
            "catalog_sync", lambda: self.pipeline.refresh_catalog(sync_nvd=True), catalog_interval_seconds,
        )

    def add_job(self, job_id: str, func: Callable[[], Awaitable], seconds: int) -> Dict:
        self.scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            args=[job_id, func],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            name=job_id,
        )
        meta = {
            "id": job_id,
            "schedule": f"every {seconds} seconds",
            "last_run": None,
            "run_count": 0,
            "last_error": None,
        }
        self.jobs_meta[job_id] = meta
        logger.info(f"Scheduled job '{job_id}' every {seconds}s")
        return meta

    async def _run(self, job_id: str, func: Callable[[], Awaitable]) -> None:
        meta = self.jobs_meta[job_id]
        meta["last_run"] = datetime.utcnow().isoformat()
        meta["run_count"] += 1
        try:
            result = await func()
            meta["last_error"] = None
            logger.debug(f"Job '{job_id}' finished: {result}")
        except Exception as e:
            meta["last_error"] = str(e)
            logger.error(f"Job '{job_id}' failed: {e}", exc_info=True)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"Pipeline scheduler started with {len(self.jobs_meta)} jobs")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Pipeline scheduler stopped")

    def list_jobs(self) -> List[Dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            meta = self.jobs_meta.get(job.id, {})
            jobs.append({
                **meta,
                "next_run": str(job.next_run_time) if getattr(job, "next_run_time", None) else None,
            })
        return jobs
