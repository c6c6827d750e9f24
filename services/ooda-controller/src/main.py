"""
ChronoHeal - OODA Controller Main Application
=============================================

FastAPI application for autonomous incident response.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.utils.logging import setup_logging, get_logger, set_correlation_id

from src.config import ExecutorMode, Settings, SinkMode, get_settings
from src.api.routes import router as api_router
from src.core.action_executor import ActionExecutor, HttpActionExecutor, SimulatedActionExecutor
from src.core.action_selector import ModeApprovalPolicy
from src.core.detection_service import DetectionService
from src.core.errors import RunInProgressError, SchedulerStateError
from src.core.evidence_buffer import EvidenceBufferRegistry
from src.core.incident_sink import CompositeIncidentSink, HttpIncidentSink, IncidentSink, InMemoryIncidentSink
from src.core.knowledge_base import KnowledgeBase
from src.core.notifications import EventBus
from src.core.ooda_controller import OODAController
from src.core.pattern_store import InMemoryPatternStore, PatternStore
from src.core.reasoning_client import HttpReasoningBackend, ReasoningBackend


settings = get_settings()

setup_logging(
    service_name=settings.service_name,
    log_level=settings.log_level,
    json_output=settings.log_json
)

logger = get_logger(__name__)


def build_components(
    app: FastAPI,
    settings: Settings,
    reasoning: Optional[ReasoningBackend] = None,
    executor: Optional[ActionExecutor] = None,
    store: Optional[PatternStore] = None
) -> DetectionService:
    """Wire the controller graph onto ``app.state``. Collaborators can be injected."""
    event_bus = EventBus()
    buffers = EvidenceBufferRegistry(settings.evidence_buffer_capacity)

    knowledge_base = KnowledgeBase(
        store or InMemoryPatternStore(),
        event_bus,
        high_confidence_threshold=settings.high_confidence_threshold,
        default_min_score=settings.pattern_min_score,
        default_max_results=settings.pattern_max_results,
    )

    if reasoning is None:
        reasoning = HttpReasoningBackend(settings.reasoning_backend_url, settings.reasoning_timeout_seconds)

    if executor is None:
        if settings.executor_mode == ExecutorMode.SIMULATED:
            executor = SimulatedActionExecutor()
        else:
            executor = HttpActionExecutor(settings.action_executor_url, settings.executor_timeout_seconds)

    history = InMemoryIncidentSink()
    sinks: list[IncidentSink] = [history]
    if settings.sink_mode == SinkMode.HTTP:
        sinks.append(HttpIncidentSink(settings.incident_store_url))

    controller = OODAController(
        buffers,
        knowledge_base,
        reasoning,
        executor,
        CompositeIncidentSink(sinks),
        approval=ModeApprovalPolicy(settings.healing_mode),
        event_bus=event_bus,
        settings=settings,
    )
    detection = DetectionService(controller, buffers, settings)

    app.state.event_bus = event_bus
    app.state.buffers = buffers
    app.state.knowledge_base = knowledge_base
    app.state.controller = controller
    app.state.history = history
    app.state.detection = detection

    return detection


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager."""
    logger.info(
        f"Starting {settings.service_name} v{settings.service_version}",
        extra={
            "version": settings.service_version,
            "healing_mode": settings.healing_mode.value
        }
    )

    detection = build_components(app, settings)

    if settings.detection_autostart:
        detection.start()
    else:
        logger.info("Detection autostart is disabled")

    yield

    logger.info("Shutting down OODA controller...")

    detection = app.state.detection
    if detection.is_running():
        detection.stop()
    await detection.wait_idle(timeout=settings.reasoning_timeout_seconds)

    controller = app.state.controller
    await controller.reasoning.close()
    await controller.executor.close()
    await controller.sink.close()


app = FastAPI(
    title="ChronoHeal - OODA Controller",
    description="Autonomous incident response with an OODA control loop",
    version=settings.service_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID")
    if not correlation_id:
        correlation_id = str(uuid.uuid4())

    set_correlation_id(correlation_id)
    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id

    return response


@app.exception_handler(SchedulerStateError)
async def scheduler_state_handler(request: Request, exc: SchedulerStateError):
    return JSONResponse(
        status_code=400,
        content={"error": "scheduler_state", "message": str(exc)}
    )


@app.exception_handler(RunInProgressError)
async def run_in_progress_handler(request: Request, exc: RunInProgressError):
    return JSONResponse(
        status_code=409,
        content={"error": "run_in_progress", "message": str(exc), "subject": exc.subject}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_server_error", "message": str(exc) if settings.debug else "An error occurred"}
    )


@app.get("/health", tags=["health"])
async def health_check():
    return {
        "status": "healthy",
        "service": settings.service_name,
        "version": settings.service_version
    }


@app.get("/ready", tags=["health"])
async def readiness_check(request: Request):
    detection = request.app.state.detection
    return {
        "status": "ready",
        "service": settings.service_name,
        "mode": settings.healing_mode.value,
        "detection_running": detection.is_running(),
        "runs_in_progress": len(detection.in_progress())
    }


app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("src.main:app", host=settings.host, port=settings.port, reload=settings.debug)
