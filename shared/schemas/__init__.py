"""
ChronoHeal - Shared Schemas
===========================

Pydantic models shared by the controller and its collaborators.
"""

from shared.schemas.incidents import (
    ActionDescriptor,
    EvidenceRecord,
    Hypothesis,
    IncidentRun,
    ObservationUnit,
    OODAPhase,
)
from shared.schemas.patterns import (
    LearnedPattern,
    LearnedPatternDraft,
    MatchResult,
    PatternMatchInput,
    PatternQueryResult,
)
from shared.schemas.reasoning import AnalysisResult, HypothesisBatch
from shared.schemas.events import BaseEvent, PatternMatchedEvent

__all__ = [
    # Incidents
    "ActionDescriptor",
    "EvidenceRecord",
    "Hypothesis",
    "IncidentRun",
    "ObservationUnit",
    "OODAPhase",
    # Patterns
    "LearnedPattern",
    "LearnedPatternDraft",
    "MatchResult",
    "PatternMatchInput",
    "PatternQueryResult",
    # Reasoning
    "AnalysisResult",
    "HypothesisBatch",
    # Events
    "BaseEvent",
    "PatternMatchedEvent",
]
