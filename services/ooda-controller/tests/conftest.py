"""
ChronoHeal - OODA Controller Test Fixtures
==========================================

Fakes for the external collaborators plus a fully wired controller.
"""

import asyncio
import os
import sys
from typing import Any, Optional

import pytest

# Service dir for ``src``, repo root for ``shared``
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', '..'))

from shared.constants import ActionType, ObservationKind, PatternType, RiskLevel
from shared.schemas.incidents import ActionDescriptor, Hypothesis, ObservationUnit
from shared.schemas.patterns import LearnedPatternDraft
from shared.schemas.reasoning import AnalysisResult, Anomaly, HypothesisBatch

from src.config import HealingMode, Settings
from src.core.action_executor import SimulatedActionExecutor
from src.core.evidence_buffer import EvidenceBufferRegistry
from src.core.incident_sink import InMemoryIncidentSink
from src.core.knowledge_base import KnowledgeBase
from src.core.notifications import EventBus
from src.core.ooda_controller import OODAController
from src.core.pattern_store import InMemoryPatternStore
from src.core.reasoning_client import ReasoningBackend


HEALTHY = AnalysisResult(healthy=True, summary="all good")
UNHEALTHY = AnalysisResult(
    healthy=False,
    anomalies=[Anomaly(type="memory", description="memory usage is very high")],
)


class FakeReasoningBackend(ReasoningBackend):
    """
    Scripted reasoning backend.

    ``analyses`` are returned in order; the last one repeats. ``error`` is
    raised from every call when set. ``delay`` makes every call sleep first.
    """

    def __init__(
        self,
        analyses: Optional[list[AnalysisResult]] = None,
        hypotheses: Optional[list[Hypothesis]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0
    ):
        self.analyses = list(analyses or [HEALTHY])
        self.hypotheses = list(hypotheses or [])
        self.error = error
        self.delay = delay
        self.analyze_calls = 0
        self.hypothesis_calls: list[dict[str, Any]] = []

    async def analyze(self, units, context=None) -> AnalysisResult:
        self.analyze_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if len(self.analyses) > 1:
            return self.analyses.pop(0)
        return self.analyses[0]

    async def generate_hypotheses(self, evidence, allowed_actions, context=None) -> HypothesisBatch:
        self.hypothesis_calls.append({"evidence": list(evidence), "allowed_actions": list(allowed_actions)})
        if self.error:
            raise self.error
        return HypothesisBatch(hypotheses=self.hypotheses)


def make_settings(**overrides) -> Settings:
    values = {
        "reasoning_timeout_seconds": 1.0,
        "pattern_store_timeout_seconds": 1.0,
        "executor_timeout_seconds": 1.0,
        "approval_timeout_seconds": 1.0,
        "sink_timeout_seconds": 1.0,
        "detection_interval_seconds": 0.05,
        "healing_mode": HealingMode.AUTO,
        "log_json": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_unit(subject: str = "checkout", payload: Any = "OOMKilled: container exceeded memory limit", **kwargs) -> ObservationUnit:
    return ObservationUnit(subject=subject, kind=kwargs.pop("kind", ObservationKind.LOG), payload=payload, **kwargs)


def make_hypothesis(
    description: str = "Bad deploy",
    confidence: float = 0.9,
    action_types: Optional[list[ActionType]] = None,
    **kwargs
) -> Hypothesis:
    actions = [
        ActionDescriptor(action_type=t, target="checkout", risk_level=RiskLevel.LOW)
        for t in (action_types if action_types is not None else [ActionType.RESTART])
    ]
    return Hypothesis(description=description, confidence=confidence, proposed_actions=actions, **kwargs)


def memory_pattern_draft(**overrides) -> LearnedPatternDraft:
    values = {
        "type": PatternType.RESOLUTION,
        "name": "Memory leak",
        "description": "Process memory grows until OOM",
        "trigger_conditions": ["memory usage high"],
        "recommended_actions": ["restart the deployment"],
        "confidence": 0.8,
    }
    values.update(overrides)
    return LearnedPatternDraft(**values)


class ControllerHarness:
    """A controller wired with in-memory collaborators."""

    def __init__(self, settings: Settings, reasoning: FakeReasoningBackend):
        self.settings = settings
        self.bus = EventBus()
        self.buffers = EvidenceBufferRegistry(settings.evidence_buffer_capacity)
        self.store = InMemoryPatternStore()
        self.knowledge_base = KnowledgeBase(self.store, self.bus, settings.high_confidence_threshold)
        self.reasoning = reasoning
        self.executor = SimulatedActionExecutor()
        self.sink = InMemoryIncidentSink()
        self.controller = OODAController(
            self.buffers,
            self.knowledge_base,
            self.reasoning,
            self.executor,
            self.sink,
            event_bus=self.bus,
            settings=settings,
        )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def reasoning() -> FakeReasoningBackend:
    return FakeReasoningBackend()


@pytest.fixture
def harness(settings, reasoning) -> ControllerHarness:
    return ControllerHarness(settings, reasoning)
