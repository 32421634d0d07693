"""
Analysis job endpoints.

    POST /api/analysis/jobs                 submit a job (202)
    GET  /api/analysis/jobs/{job_id}        status, progress, per-type analyses
    POST /api/analysis/jobs/{job_id}/cancel cancel a queued job
    GET  /api/analysis/queue/stats          waiting/active/completed/failed/delayed/cancelled
    GET  /api/analysis/templates/performance template performance report
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field

from survey_insights.error_handling import ServiceError, handle_service_error
from survey_insights.job_queue import JobDispatcher, build_job
from survey_insights.prompts import TemplateRegistry

logger = structlog.get_logger("app.api.analysis")

router = APIRouter(prefix="/api/analysis", tags=["Analysis"])


# =============================================================================
# Dependencies
# =============================================================================

def get_dispatcher(request: Request) -> JobDispatcher:
    return request.app.state.dispatcher


def get_registry(request: Request) -> TemplateRegistry:
    return request.app.state.runtime.registry


# =============================================================================
# Models
# =============================================================================

class AnalysisOptionsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_cluster_size: int = Field(3, ge=1, le=1000)
    min_theme_frequency: int = Field(2, ge=1, le=1000)
    include_sentiment: bool = True
    anonymization_level: Literal["partial", "full"] = "full"
    custom_prompt: Optional[str] = Field(None, max_length=20000)
    language: Literal["en", "pl"] = "en"
    topic: Optional[str] = Field(None, max_length=500)
    questionnaire_type: Optional[str] = Field(None, max_length=100)
    custom_variables: Dict[str, Any] = Field(default_factory=dict)


class AnalysisJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    questionnaire_id: str = Field(..., min_length=1, max_length=128)
    analysis_types: List[str] = Field(..., description="thematic, clustering, contradictions, insights, recommendations")
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    options: Optional[AnalysisOptionsIn] = None
    triggered_by: Optional[str] = Field(None, max_length=200)


# =============================================================================
# Routes
# =============================================================================

@router.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
def submit_job(
    payload: AnalysisJobRequest,
    dispatcher: JobDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    try:
        job = build_job(
            payload.questionnaire_id,
            payload.analysis_types,
            priority=payload.priority,
            options=payload.options.model_dump() if payload.options else None,
            triggered_by=payload.triggered_by,
        )
        job_id = dispatcher.submit(job)
    except ServiceError as exc:
        raise handle_service_error(exc, "job submission")
    logger.info("api.analysis.submitted", job_id=job_id, questionnaire_id=payload.questionnaire_id)
    return {"job_id": job_id, "status": "queued"}


@router.get("/jobs/{job_id}")
def job_status(job_id: str, dispatcher: JobDispatcher = Depends(get_dispatcher)) -> Dict[str, Any]:
    try:
        return dispatcher.get_status(job_id)
    except ServiceError as exc:
        raise handle_service_error(exc, "job status")


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, dispatcher: JobDispatcher = Depends(get_dispatcher)) -> Dict[str, Any]:
    try:
        cancelled = dispatcher.cancel(job_id)
    except ServiceError as exc:
        raise handle_service_error(exc, "job cancellation")
    return {"job_id": job_id, "cancelled": cancelled}


@router.get("/queue/stats")
def queue_stats(dispatcher: JobDispatcher = Depends(get_dispatcher)) -> Dict[str, int]:
    try:
        return dispatcher.queue_stats()
    except ServiceError as exc:
        raise handle_service_error(exc, "queue stats")


@router.get("/templates/performance")
def template_performance(registry: TemplateRegistry = Depends(get_registry)) -> Dict[str, Any]:
    return registry.performance_report()
