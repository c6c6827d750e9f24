"""
ChronoHeal - Pattern Schemas
============================

Pydantic models for learned incident patterns and pattern matching.
These are the contract between the knowledge base and the pattern store.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
import uuid

from shared.constants import PatternType
from shared.utils.clock import utcnow


class LearnedPatternDraft(BaseModel):
    """A pattern produced by extraction, before the store assigns identity."""

    type: PatternType = Field(
        default=PatternType.DIAGNOSTIC,
        description="What the pattern helps with"
    )
    name: str = Field(..., description="Short pattern name")
    description: str = Field(default="", description="What the pattern captures")
    trigger_conditions: list[str] = Field(
        default_factory=list,
        description="Ordered symptom phrases that trigger the pattern"
    )
    recommended_actions: list[str] = Field(
        default_factory=list,
        description="Ordered remediation phrases, e.g. 'rollback to previous revision'"
    )
    confidence: float = Field(..., ge=0.0, le=1.0, description="Pattern confidence")
    applicability: list[str] = Field(
        default_factory=list,
        description="Tags describing where the pattern applies"
    )
    exceptions: list[str] = Field(
        default_factory=list,
        description="Tags describing where the pattern does not apply"
    )
    source_incident_ids: list[str] = Field(
        default_factory=list,
        description="Incidents the pattern was learned from"
    )


class LearnedPattern(LearnedPatternDraft):
    """A stored pattern with identity and usage statistics."""

    pattern_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Stable pattern identifier"
    )
    is_active: bool = Field(default=True)
    times_matched: int = Field(default=0, ge=0)
    times_applied: int = Field(default=0, ge=0)
    success_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    last_applied_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ClusterEvent(BaseModel):
    """A cluster event as seen by the matcher."""
    type: str
    reason: str
    message: str = ""


class MetricAnomaly(BaseModel):
    """A metric deviation as seen by the matcher."""
    metric: str
    deviation: str


class PatternMatchInput(BaseModel):
    """
    Loosely structured bag of observed strings.

    Every field is optional; an input with nothing set matches nothing.
    """

    symptoms: list[str] = Field(default_factory=list)
    error_messages: list[str] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)
    events: list[ClusterEvent] = Field(default_factory=list)
    metric_anomalies: list[MetricAnomaly] = Field(default_factory=list)
    affected_service: Optional[str] = None

    def search_strings(self) -> list[str]:
        """All input strings, lowercased, in field order."""
        parts: list[str] = []
        parts.extend(self.symptoms)
        parts.extend(self.error_messages)
        parts.extend(self.logs)
        parts.extend(f"{e.type} {e.reason} {e.message}" for e in self.events)
        parts.extend(f"{m.metric} {m.deviation}" for m in self.metric_anomalies)
        if self.affected_service:
            parts.append(self.affected_service)
        return [p.lower() for p in parts if p]

    def is_empty(self) -> bool:
        return not self.search_strings()


class MatchResult(BaseModel):
    """A pattern paired with its relevance to one input."""

    pattern: LearnedPattern
    score: float = Field(..., ge=0.0, le=1.0)
    matched_keywords: list[str] = Field(default_factory=list)
    matched_exceptions: list[str] = Field(default_factory=list)
    explanation: str = ""


class MatchMetadata(BaseModel):
    total_patterns_searched: int = 0
    matches_found: int = 0
    processing_time_ms: float = 0.0


class PatternQueryResult(BaseModel):
    """Matches sorted by relevance, plus query metadata."""
    matches: list[MatchResult] = Field(default_factory=list)
    metadata: MatchMetadata = Field(default_factory=MatchMetadata)


class AppliedPatternSummary(BaseModel):
    pattern_id: str
    name: str
    times_applied: int
    success_rate: Optional[float] = None


class PatternStats(BaseModel):
    """Knowledge base aggregates, as reported by the store."""
    total_patterns: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    high_confidence_count: int = 0
    high_confidence_threshold: float = 0.8
    most_applied: list[AppliedPatternSummary] = Field(default_factory=list)


class PatternRecommendations(BaseModel):
    """Deduplicated recommended actions drawn from the best matches."""
    recommendations: list[str] = Field(default_factory=list)
    source_pattern_ids: list[str] = Field(default_factory=list)
