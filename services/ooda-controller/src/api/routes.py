"""
ChronoHeal - OODA Controller API Routes
=======================================

FastAPI router exposing the detection scheduler, on-demand runs, evidence
ingestion, and the knowledge base.

Components live on ``app.state`` (wired in ``main.lifespan``); the routes
hold no logic of their own. Scheduler misuse and busy subjects surface as
400 and 409 through the exception handlers in ``main``.
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Query, Request

from shared.schemas.incidents import IncidentRun, ObservationUnit
from shared.schemas.patterns import (
    LearnedPattern,
    LearnedPatternDraft,
    PatternQueryResult,
    PatternStats,
)
from shared.utils.logging import get_logger

from src.api.schemas import (
    DetectionActionResponse,
    EvidenceIngestRequest,
    EvidenceResponse,
    PatternBatchRequest,
    PatternDeactivateRequest,
    PatternMatchRequest,
    RunSummary,
    SubjectResponse,
)
from src.core.detection_service import DetectionService, DetectionStatus
from src.core.evidence_buffer import EvidenceBufferRegistry
from src.core.incident_sink import InMemoryIncidentSink
from src.core.knowledge_base import KnowledgeBase

logger = get_logger(__name__)

router = APIRouter(tags=["ooda-controller"])


def get_detection(request: Request) -> DetectionService:
    return request.app.state.detection


def get_buffers(request: Request) -> EvidenceBufferRegistry:
    return request.app.state.buffers


def get_knowledge_base(request: Request) -> KnowledgeBase:
    return request.app.state.knowledge_base


def get_history(request: Request) -> InMemoryIncidentSink:
    return request.app.state.history


def _summarize(run: IncidentRun) -> RunSummary:
    return RunSummary(
        run_id=run.run_id,
        subject=run.subject,
        phase=run.phase,
        result=run.result,
        failure_reason=run.failure.reason if run.failure else None,
        started_at=run.started_at,
        completed_at=run.completed_at,
        duration_seconds=run.duration_seconds,
        selected_actions=[a.action_type.value for a in run.selected_actions],
    )


# =============================================================================
# DETECTION ENDPOINTS
# =============================================================================

@router.get("/detection/status", response_model=DetectionStatus)
async def detection_status(request: Request):
    return get_detection(request).get_status()


@router.post("/detection/start", response_model=DetectionActionResponse)
async def start_detection(request: Request):
    """Start the periodic scheduler. 400 if already running."""
    detection = get_detection(request)
    detection.start()
    return DetectionActionResponse(running=True, message="Detection started")


@router.post("/detection/stop", response_model=DetectionActionResponse)
async def stop_detection(request: Request):
    """Stop the scheduler; in-flight runs finish. 400 if not running."""
    detection = get_detection(request)
    detection.stop()
    return DetectionActionResponse(running=False, message="Detection stopped")


@router.post("/detection/restart", response_model=DetectionActionResponse)
async def restart_detection(request: Request):
    detection = get_detection(request)
    detection.restart()
    return DetectionActionResponse(running=True, message="Detection restarted")


# =============================================================================
# SUBJECT ENDPOINTS
# =============================================================================

@router.put("/subjects/{subject}", response_model=SubjectResponse)
async def watch_subject(subject: str, request: Request):
    added = get_detection(request).watch(subject)
    return SubjectResponse(
        subject=subject,
        watched=True,
        message="Subject added" if added else "Subject already watched"
    )


@router.delete("/subjects/{subject}", response_model=SubjectResponse)
async def unwatch_subject(subject: str, request: Request):
    """Stop monitoring a subject and clear its evidence."""
    was_watched = get_detection(request).unwatch(subject)
    return SubjectResponse(
        subject=subject,
        watched=False,
        message="Subject removed" if was_watched else "Subject was not watched; evidence cleared"
    )


@router.post("/subjects/{subject}/run", response_model=IncidentRun)
async def run_subject(subject: str, request: Request):
    """
    Run the OODA loop for a subject now and return the finished run.

    409 if the subject already has a run in flight.
    """
    return await get_detection(request).run_now(subject)


@router.post("/subjects/{subject}/evidence", response_model=ObservationUnit, status_code=201)
async def ingest_evidence(subject: str, body: EvidenceIngestRequest, request: Request):
    fields = {"subject": subject, "kind": body.kind, "payload": body.payload}
    if body.captured_at is not None:
        fields["captured_at"] = body.captured_at

    unit = ObservationUnit(**fields)
    get_buffers(request).push(subject, unit)

    logger.debug(
        f"Evidence received for {subject}",
        extra={"kind": unit.kind.value, "unit_id": unit.unit_id}
    )
    return unit


@router.get("/subjects/{subject}/evidence", response_model=EvidenceResponse)
async def get_evidence(
    subject: str,
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1, description="Most recent N units")
):
    buffers = get_buffers(request)
    units = buffers.recent(subject, limit) if limit else buffers.get_all(subject)
    return EvidenceResponse(
        subject=subject,
        size=buffers.size(subject),
        capacity=buffers.capacity,
        units=units
    )


# =============================================================================
# RUN HISTORY
# =============================================================================

@router.get("/runs", response_model=list[RunSummary])
async def list_runs(
    request: Request,
    subject: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=500)
):
    runs = get_history(request).get_history(subject=subject, limit=limit)
    return [_summarize(r) for r in runs]


@router.get("/runs/{run_id}", response_model=IncidentRun)
async def get_run(run_id: str, request: Request):
    for run in get_history(request).get_history(limit=10_000):
        if run.run_id == run_id:
            return run
    raise HTTPException(status_code=404, detail=f"Run {run_id} not found")


# =============================================================================
# KNOWLEDGE BASE ENDPOINTS
# =============================================================================

@router.post("/patterns", response_model=LearnedPattern, status_code=201)
async def store_pattern(draft: LearnedPatternDraft, request: Request):
    return await get_knowledge_base(request).store_pattern(draft)


@router.post("/patterns/batch", response_model=list[LearnedPattern])
async def store_patterns(body: PatternBatchRequest, request: Request):
    """Store extracted patterns, skipping near-duplicates."""
    return await get_knowledge_base(request).store_patterns_from_extraction(body.patterns)


@router.post("/patterns/match", response_model=PatternQueryResult)
async def match_patterns(body: PatternMatchRequest, request: Request):
    return await get_knowledge_base(request).find_matching_patterns(
        body.input,
        min_score=body.min_score,
        max_results=body.max_results,
        types=body.types
    )


@router.get("/patterns/stats", response_model=PatternStats)
async def pattern_stats(request: Request):
    return await get_knowledge_base(request).get_stats()


@router.get("/patterns/{pattern_id}", response_model=LearnedPattern)
async def get_pattern(pattern_id: str, request: Request):
    pattern = await get_knowledge_base(request).get_pattern(pattern_id)
    if not pattern:
        raise HTTPException(status_code=404, detail=f"Pattern {pattern_id} not found")
    return pattern


@router.post("/patterns/{pattern_id}/deactivate", response_model=LearnedPattern)
async def deactivate_pattern(pattern_id: str, body: PatternDeactivateRequest, request: Request):
    pattern = await get_knowledge_base(request).deactivate_pattern(pattern_id, body.reason)
    if not pattern:
        raise HTTPException(status_code=404, detail=f"Pattern {pattern_id} not found")
    return pattern
