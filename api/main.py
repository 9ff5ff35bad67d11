"""
FastAPI Application — runs the pipeline and exposes its operational surface.

Provides:
- Health and statistics endpoints for monitoring
- Queue depth and dead-letter inspection
- Manual triggers for the planner, scanner and retention jobs

The pipeline itself (consumers + scheduled jobs) is started in the app
lifespan, so ``uvicorn api.main:app`` is the whole service.
"""
from __future__ import annotations

import structlog
from dataclasses import asdict
from datetime import datetime, timezone
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request

from api.pipeline import Pipeline
from config.logging_config import configure_logging
from config.settings import get_settings

logger = structlog.get_logger()


def create_app(pipeline: Pipeline = None, run_jobs: bool = True) -> FastAPI:
    """Build the app. Tests pass a pipeline wired with in-memory backends."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(debug=settings.debug)
        app.state.pipeline = pipeline or Pipeline(settings)
        await app.state.pipeline.start(run_jobs=run_jobs)
        logger.info("autopair_started", app=settings.app_name)
        yield
        await app.state.pipeline.stop()
        logger.info("autopair_stopped")

    app = FastAPI(
        title="AutoPair API",
        description="Scheduled pair-messaging pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH & STATISTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        pipeline: Pipeline = request.app.state.pipeline
        return {
            "status": "healthy" if pipeline.started else "starting",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "consumer_running": pipeline.consumer.running,
            "jobs": {name: {"runs": job.runs, "errors": job.errors, "skipped": job.skipped}
                     for name, job in pipeline.jobs.items()},
        }

    @app.get("/api/v1/stats")
    async def get_stats(request: Request):
        pipeline: Pipeline = request.app.state.pipeline
        stats = await pipeline.store.get_statistics()
        return {
            "schedule": stats.model_dump(),
            "consumer": pipeline.consumer.stats(),
            "online_users": await pipeline.gateway.online_count(),
        }

    @app.get("/api/v1/queue/stats")
    async def queue_stats(request: Request):
        pipeline: Pipeline = request.app.state.pipeline
        name = pipeline.consumer.queue_name
        try:
            return {
                "queue": name,
                "length": await pipeline.queue.queue_length(name),
                "dead_letters": await pipeline.queue.dead_letter_length(name),
                "backend": type(pipeline.queue).__name__,
            }
        except Exception as e:
            logger.error("queue_stats_failed", error=str(e))
            raise HTTPException(503, f"Queue unavailable: {e}")

    # ══════════════════════════════════════════════════════════
    #  MANUAL TRIGGERS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/jobs/plan")
    async def trigger_plan(request: Request):
        result = await request.app.state.pipeline.jobs["planner"].run_now()
        if not result.ok:
            raise HTTPException(500, f"Planner failed: {result.error}")
        return asdict(result)

    @app.post("/api/v1/jobs/scan")
    async def trigger_scan(request: Request):
        result = await request.app.state.pipeline.jobs["scanner"].run_now()
        return asdict(result)

    @app.post("/api/v1/jobs/retention")
    async def trigger_retention(request: Request):
        deleted = await request.app.state.pipeline.jobs["retention"].run_now()
        return {"deleted": deleted}

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
