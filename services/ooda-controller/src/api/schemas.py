"""
ChronoHeal - OODA Controller API Schemas
========================================

Request and response models for the HTTP surface. Domain models
(IncidentRun, LearnedPattern, ...) are reused from ``shared.schemas``.
"""

from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field

from shared.constants import ObservationKind, PatternType
from shared.schemas.incidents import ObservationUnit, OODAPhase, RunResult
from shared.schemas.patterns import LearnedPatternDraft, PatternMatchInput


class DetectionActionResponse(BaseModel):
    """Result of start/stop/restart."""
    running: bool
    message: str


class EvidenceIngestRequest(BaseModel):
    """One observation unit pushed into a subject's buffer."""

    kind: ObservationKind = Field(..., description="frame, log, metric or event")
    payload: Any = Field(..., description="Text, or a JSON object")
    captured_at: Optional[datetime] = Field(
        default=None,
        description="Capture time; defaults to receipt time"
    )


class EvidenceResponse(BaseModel):
    subject: str
    size: int
    capacity: int
    units: list[ObservationUnit] = Field(default_factory=list)


class SubjectResponse(BaseModel):
    subject: str
    watched: bool
    message: str


class RunSummary(BaseModel):
    """Compact view of a finished run."""
    run_id: str
    subject: str
    phase: OODAPhase
    result: Optional[RunResult] = None
    failure_reason: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    selected_actions: list[str] = Field(default_factory=list)


class PatternMatchRequest(BaseModel):
    """Pattern query: the observed strings plus optional query options."""
    input: PatternMatchInput = Field(default_factory=PatternMatchInput)
    min_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_results: Optional[int] = Field(default=None, ge=1)
    types: Optional[list[PatternType]] = None


class PatternBatchRequest(BaseModel):
    patterns: list[LearnedPatternDraft] = Field(default_factory=list)


class PatternDeactivateRequest(BaseModel):
    reason: str = Field(default="deactivated via API")
