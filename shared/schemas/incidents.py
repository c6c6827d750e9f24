"""
ChronoHeal - Incident Schemas
=============================

Pydantic models for observations, hypotheses, actions, and IncidentRuns.

An IncidentRun is the record of one pass of the OODA loop for a subject.
It is created at loop start, mutated only by the controller that owns it,
and handed to the incident sink once it reaches DONE or FAILED.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator
import json
import uuid

from shared.constants import ActionType, ObservationKind, RiskLevel
from shared.utils.clock import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class OODAPhase(str, Enum):
    """Phases of an IncidentRun."""
    IDLE = "idle"
    OBSERVING = "observing"
    ORIENTING = "orienting"
    DECIDING = "deciding"
    ACTING = "acting"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({OODAPhase.DONE, OODAPhase.FAILED})


class FailureKind(str, Enum):
    """Why a run ended in FAILED."""
    COLLABORATOR_UNAVAILABLE = "collaborator_unavailable"
    COLLABORATOR_TIMEOUT = "collaborator_timeout"
    MALFORMED_RESPONSE = "malformed_response"
    NO_SAFE_ACTION = "no_safe_action"
    APPROVAL_DENIED = "approval_denied"
    DISPATCH_REJECTED = "dispatch_rejected"
    VERIFICATION_EXHAUSTED = "verification_exhausted"
    INTERNAL_ERROR = "internal_error"


class RunResult(str, Enum):
    """Terminal outcome of a run."""
    HEALTHY = "healthy"      # Nothing wrong on first observation
    RESOLVED = "resolved"    # Remediated and verified
    FAILED = "failed"


class EvidenceKind(str, Enum):
    OBSERVATION = "observation"
    ANOMALY = "anomaly"
    METRIC = "metric"
    PATTERN_MATCH = "pattern_match"
    VERIFICATION = "verification"


class HypothesisSource(str, Enum):
    REASONING = "reasoning"
    PATTERN = "pattern"


class ObservationUnit(BaseModel):
    """One timestamped evidence item. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    unit_id: str = Field(default_factory=_new_id)
    subject: str = Field(..., description="Monitored subject the unit belongs to")
    kind: ObservationKind
    payload: Any = Field(..., description="Raw payload: text, bytes, or a JSON object")
    captured_at: datetime = Field(default_factory=utcnow)

    def describe(self) -> str:
        """Text form used for matching and for the reasoning backend."""
        if isinstance(self.payload, str):
            return self.payload
        if isinstance(self.payload, (bytes, bytearray)):
            return f"<{self.kind.value} {len(self.payload)} bytes>"
        return json.dumps(self.payload, default=str, sort_keys=True)


class ActionDescriptor(BaseModel):
    """A remediation action proposed by a hypothesis."""

    action_id: str = Field(default_factory=_new_id)
    action_type: ActionType
    target: str = Field(default="", description="Deployment or resource identifier")
    parameters: dict[str, Any] = Field(default_factory=dict)
    risk_level: Optional[RiskLevel] = None
    reasoning: str = ""
    requested_type: Optional[str] = Field(
        default=None,
        description="Original type string when it was not a known action type"
    )

    @model_validator(mode="before")
    @classmethod
    def _unknown_types_are_manual(cls, data: Any) -> Any:
        # Unrecognized types become MANUAL so they are never auto-dispatched
        if not isinstance(data, dict) or "action_type" not in data:
            return data
        raw = data["action_type"]
        if isinstance(raw, ActionType):
            return data
        try:
            return {**data, "action_type": ActionType(str(raw).lower())}
        except ValueError:
            return {
                **data,
                "action_type": ActionType.MANUAL,
                "requested_type": data.get("requested_type") or str(raw),
            }


class Hypothesis(BaseModel):
    """A candidate root cause with proposed actions."""

    hypothesis_id: str = Field(default_factory=_new_id)
    description: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    supporting_evidence: list[str] = Field(default_factory=list)
    contradicting_evidence: list[str] = Field(default_factory=list)
    proposed_actions: list[ActionDescriptor] = Field(default_factory=list)
    testing_steps: list[str] = Field(default_factory=list)
    source: HypothesisSource = HypothesisSource.REASONING
    source_pattern_id: Optional[str] = None
    actionable: bool = True
    generation_order: int = 0


class EvidenceRecord(BaseModel):
    """One piece of evidence accumulated during a run."""

    evidence_id: str = Field(default_factory=_new_id)
    kind: EvidenceKind
    content: str
    phase: OODAPhase
    source: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class PhaseTransition(BaseModel):
    from_phase: OODAPhase
    to_phase: OODAPhase
    reason: str = ""
    at: datetime = Field(default_factory=utcnow)


class RunFailure(BaseModel):
    kind: FailureKind
    reason: str
    phase: OODAPhase
    collaborator: Optional[str] = None


class DispatchResult(BaseModel):
    action_id: str
    action_type: ActionType
    accepted: bool
    detail: str = ""


class IncidentRun(BaseModel):
    """One execution of the control loop for a subject."""

    run_id: str = Field(default_factory=_new_id)
    subject: str
    phase: OODAPhase = OODAPhase.IDLE
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    evidence: list[EvidenceRecord] = Field(default_factory=list)
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    selected_hypothesis_id: Optional[str] = None
    selected_actions: list[ActionDescriptor] = Field(default_factory=list)
    dispatch_results: list[DispatchResult] = Field(default_factory=list)

    verification_attempts: int = 0
    verify_retries: int = 0
    last_verification_healthy: Optional[bool] = None

    matched_pattern_ids: list[str] = Field(default_factory=list)
    applied_pattern_ids: list[str] = Field(default_factory=list)
    contradicted_pattern_ids: list[str] = Field(default_factory=list)

    transitions: list[PhaseTransition] = Field(default_factory=list)
    result: Optional[RunResult] = None
    failure: Optional[RunFailure] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def add_evidence(
        self,
        kind: EvidenceKind,
        content: str,
        source: str = "",
        data: Optional[dict[str, Any]] = None
    ) -> EvidenceRecord:
        record = EvidenceRecord(
            kind=kind,
            content=content,
            phase=self.phase,
            source=source,
            data=data or {},
        )
        self.evidence.append(record)
        return record

    def evidence_text(self) -> list[str]:
        return [e.content for e in self.evidence]
