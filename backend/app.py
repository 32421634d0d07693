"""
FastAPI application exposing the analysis queue over HTTP.

Endpoints:

    /health
        - GET: liveness plus queue counters

    /api/analysis
        - POST /jobs: submit an analysis job
        - GET /jobs/{id}: job status and per-type analyses
        - POST /jobs/{id}/cancel: cancel a queued job
        - GET /queue/stats: queue counters
        - GET /templates/performance: template performance report

Lifespan:
    Builds the pipeline runtime and the dispatcher named by QUEUE_BACKEND.
    With the local backend the worker threads run inside this process and are
    stopped on shutdown.

Configuration:
    APP_ENV_FILE may point at a .env file; otherwise the process environment
    (and ./.env if present) is used.

Run:
    uvicorn backend.app:app --port 8000
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from backend.routers.analysis import router as analysis_router
from survey_insights.clients import close_pg_pool
from survey_insights.job_queue import JobDispatcher
from survey_insights.logging_config import configure_logging
from survey_insights.runtime import PipelineRuntime, build_dispatcher, build_runtime
from survey_insights.settings import load_settings

logger = structlog.get_logger("app.api")


def create_app(
    runtime: Optional[PipelineRuntime] = None,
    dispatcher: Optional[JobDispatcher] = None,
) -> FastAPI:
    """
    Build the API. A prebuilt runtime/dispatcher skips environment wiring.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        rt = runtime
        if rt is None:
            settings = load_settings(os.getenv("APP_ENV_FILE"))
            configure_logging(os.getenv("LOG_LEVEL", "INFO"), json_logs=os.getenv("LOG_JSON") == "1")
            logger.info("api.startup", settings=settings.masked())
            rt = build_runtime(settings)
        disp = dispatcher or build_dispatcher(rt)
        app.state.runtime = rt
        app.state.dispatcher = disp
        disp.start()
        try:
            yield
        finally:
            disp.stop()
            rt.pipeline.close()
            if runtime is None:
                close_pg_pool()
            logger.info("api.shutdown")

    app = FastAPI(title="Survey Insights API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["Health"])
    def health(request: Request) -> Dict[str, Any]:
        return {"status": "ok", "queue": request.app.state.dispatcher.queue_stats()}

    app.include_router(analysis_router)
    return app


app = create_app()
