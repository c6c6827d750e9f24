"""
ChronoHeal - Event Schemas
==========================

Notifications published on the controller's event bus. Listeners receive
these models; they are also the payloads forwarded to external consumers.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
import uuid

from shared.constants import EventTopic, ServiceName
from shared.schemas.incidents import OODAPhase, RunFailure, RunResult
from shared.schemas.patterns import LearnedPattern, MatchResult, PatternMatchInput
from shared.utils.clock import utcnow


class BaseEvent(BaseModel):
    """Base class for all bus events."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topic: EventTopic
    timestamp: datetime = Field(default_factory=utcnow)
    source_service: str = Field(default=ServiceName.OODA_CONTROLLER.value)


class PatternMatchedEvent(BaseEvent):
    """
    Published once per matching call that found at least one pattern.

    Carries the full match list. Calls with zero matches publish nothing,
    so listeners that reinforce learning only ever see successes.
    """
    topic: EventTopic = EventTopic.PATTERN_MATCHED
    matches: list[MatchResult]
    input: PatternMatchInput


class PatternStoredEvent(BaseEvent):
    topic: EventTopic = EventTopic.PATTERN_STORED
    pattern: LearnedPattern


class PatternAppliedEvent(BaseEvent):
    topic: EventTopic = EventTopic.PATTERN_APPLIED
    pattern_id: str
    success: bool


class PatternDeactivatedEvent(BaseEvent):
    topic: EventTopic = EventTopic.PATTERN_DEACTIVATED
    pattern_id: str
    reason: str


class RunPhaseChangedEvent(BaseEvent):
    topic: EventTopic = EventTopic.RUN_PHASE_CHANGED
    run_id: str
    subject: str
    from_phase: OODAPhase
    to_phase: OODAPhase
    reason: str = ""


class RunFinishedEvent(BaseEvent):
    topic: EventTopic = EventTopic.RUN_FINISHED
    run_id: str
    subject: str
    result: RunResult
    failure: Optional[RunFailure] = None
    duration_seconds: Optional[float] = None
