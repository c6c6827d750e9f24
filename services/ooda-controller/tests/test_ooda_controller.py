"""
ChronoHeal - OODA Controller Tests
==================================

End-to-end runs through the controller with in-memory collaborators.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from shared.constants import ActionType, Collaborator, EventTopic
from shared.schemas.incidents import FailureKind, IncidentRun, OODAPhase, RunResult
from shared.schemas.reasoning import AnalysisResult

from src.config import HealingMode
from src.core.action_executor import DispatchAck
from src.core.errors import CollaboratorError, InvalidTransitionError
from src.core.incident_sink import InMemoryIncidentSink
from src.core.transitions import TRANSITIONS, allowed_transitions, is_valid_transition, validate_transition

from conftest import (
    HEALTHY,
    UNHEALTHY,
    ControllerHarness,
    FakeReasoningBackend,
    make_hypothesis,
    make_settings,
    make_unit,
    memory_pattern_draft,
)


def phases(run: IncidentRun) -> list[OODAPhase]:
    return [OODAPhase.IDLE] + [t.to_phase for t in run.transitions]


class TestTransitions:

    def test_table_is_exhaustive(self):
        assert set(TRANSITIONS) == set(OODAPhase)

    def test_every_unlisted_transition_is_rejected(self):
        for from_phase in OODAPhase:
            for to_phase in OODAPhase:
                if to_phase in TRANSITIONS[from_phase]:
                    validate_transition(from_phase, to_phase)
                else:
                    with pytest.raises(InvalidTransitionError):
                        validate_transition(from_phase, to_phase)

    def test_terminal_phases_allow_nothing(self):
        assert allowed_transitions(OODAPhase.DONE) == []
        assert allowed_transitions(OODAPhase.FAILED) == []

    def test_verify_can_reorient(self):
        assert is_valid_transition(OODAPhase.VERIFYING, OODAPhase.ORIENTING)
        assert not is_valid_transition(OODAPhase.VERIFYING, OODAPhase.OBSERVING)


class TestOODAController:

    @pytest.mark.asyncio
    async def test_healthy_short_circuit(self, harness):
        harness.buffers.push("checkout", make_unit())

        run = await harness.controller.run("checkout")

        assert phases(run) == [OODAPhase.IDLE, OODAPhase.OBSERVING, OODAPhase.DONE]
        assert run.result == RunResult.HEALTHY
        assert harness.reasoning.hypothesis_calls == []
        assert harness.executor.dispatched == []
        assert harness.sink.count() == 1

    @pytest.mark.asyncio
    async def test_manual_only_fails_with_no_safe_action(self):
        reasoning = FakeReasoningBackend(
            analyses=[UNHEALTHY],
            hypotheses=[make_hypothesis(action_types=[ActionType.MANUAL])]
        )
        harness = ControllerHarness(make_settings(), reasoning)

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.FAILED
        assert run.failure.kind == FailureKind.NO_SAFE_ACTION
        assert run.failure.reason == "no safe action available"
        assert run.failure.phase == OODAPhase.DECIDING
        assert run.hypotheses[0].actionable is False
        assert harness.executor.dispatched == []

    @pytest.mark.asyncio
    async def test_resolved_run(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY, HEALTHY], hypotheses=[make_hypothesis()])
        harness = ControllerHarness(make_settings(), reasoning)

        run = await harness.controller.run("checkout")

        assert phases(run) == [
            OODAPhase.IDLE,
            OODAPhase.OBSERVING,
            OODAPhase.ORIENTING,
            OODAPhase.DECIDING,
            OODAPhase.ACTING,
            OODAPhase.VERIFYING,
            OODAPhase.DONE,
        ]
        assert run.result == RunResult.RESOLVED
        assert [a.action_type for a in harness.executor.dispatched] == [ActionType.RESTART]
        assert all(r.accepted for r in run.dispatch_results)
        assert run.verification_attempts == 1
        assert run.last_verification_healthy is True
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_verify_retry_then_exhausted(self):
        reasoning = FakeReasoningBackend(
            analyses=[UNHEALTHY],
            hypotheses=[
                make_hypothesis("restart fixes it", 0.9, action_types=[ActionType.RESTART]),
                make_hypothesis("scale fixes it", 0.5, action_types=[ActionType.SCALE]),
            ]
        )
        harness = ControllerHarness(make_settings(max_verify_retries=1), reasoning)

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.FAILED
        assert run.failure.kind == FailureKind.VERIFICATION_EXHAUSTED
        assert run.verify_retries == 1
        assert run.verification_attempts == 2
        assert phases(run).count(OODAPhase.ORIENTING) == 2
        assert [a.action_type for a in harness.executor.dispatched] == [ActionType.RESTART, ActionType.SCALE]

        # Evidence carries over into the second pass
        first, second = reasoning.hypothesis_calls
        assert len(second["evidence"]) > len(first["evidence"])
        contradicted = [h for h in run.hypotheses if h.contradicting_evidence]
        assert [h.description for h in contradicted] == ["restart fixes it", "scale fixes it"]

    @pytest.mark.asyncio
    async def test_no_retry_when_disabled(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY], hypotheses=[make_hypothesis()])
        harness = ControllerHarness(make_settings(max_verify_retries=0), reasoning)

        run = await harness.controller.run("checkout")

        assert run.failure.kind == FailureKind.VERIFICATION_EXHAUSTED
        assert run.verification_attempts == 1

    @pytest.mark.asyncio
    async def test_backend_unreachable_fails_naming_collaborator(self):
        reasoning = FakeReasoningBackend(error=CollaboratorError("reasoning_backend", "connection refused"))
        harness = ControllerHarness(make_settings(), reasoning)

        run = await harness.controller.run("checkout")

        assert phases(run) == [OODAPhase.IDLE, OODAPhase.OBSERVING, OODAPhase.FAILED]
        assert run.failure.kind == FailureKind.COLLABORATOR_UNAVAILABLE
        assert run.failure.collaborator == Collaborator.REASONING_BACKEND.value
        assert reasoning.analyze_calls == 1

    @pytest.mark.asyncio
    async def test_backend_timeout_is_hard_failure(self):
        reasoning = FakeReasoningBackend(delay=0.5)
        harness = ControllerHarness(make_settings(reasoning_timeout_seconds=0.05), reasoning)

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.FAILED
        assert run.failure.kind == FailureKind.COLLABORATOR_TIMEOUT
        assert run.failure.collaborator == Collaborator.REASONING_BACKEND.value

    @pytest.mark.asyncio
    async def test_executor_timeout_is_hard_failure(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY], hypotheses=[make_hypothesis()])
        harness = ControllerHarness(make_settings(executor_timeout_seconds=0.05), reasoning)

        async def slow_dispatch(action):
            await asyncio.sleep(0.5)
            return DispatchAck(accepted=True)

        harness.executor.dispatch = slow_dispatch

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.FAILED
        assert run.failure.kind == FailureKind.COLLABORATOR_TIMEOUT
        assert run.failure.collaborator == Collaborator.ACTION_EXECUTOR.value
        assert run.failure.phase == OODAPhase.ACTING
        assert run.dispatch_results == []

    @pytest.mark.asyncio
    async def test_pattern_store_timeout_is_hard_failure(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY], hypotheses=[make_hypothesis()])
        harness = ControllerHarness(make_settings(pattern_store_timeout_seconds=0.05), reasoning)

        async def slow_list_patterns(**filters):
            await asyncio.sleep(0.5)
            return []

        harness.store.list_patterns = slow_list_patterns

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.FAILED
        assert run.failure.kind == FailureKind.COLLABORATOR_TIMEOUT
        assert run.failure.collaborator == Collaborator.PATTERN_STORE.value
        assert run.failure.phase == OODAPhase.ORIENTING
        assert harness.executor.dispatched == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_run(self):
        reasoning = FakeReasoningBackend(error=RuntimeError("boom"))
        harness = ControllerHarness(make_settings(), reasoning)

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.FAILED
        assert run.failure.kind == FailureKind.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_rejected_dispatch_fails(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY], hypotheses=[make_hypothesis()])
        harness = ControllerHarness(make_settings(), reasoning)
        harness.executor.dispatch = AsyncMock(return_value=DispatchAck(accepted=False, detail="forbidden"))

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.FAILED
        assert run.failure.kind == FailureKind.DISPATCH_REJECTED
        assert run.failure.phase == OODAPhase.ACTING
        assert run.dispatch_results[0].accepted is False

    @pytest.mark.asyncio
    async def test_approval_denied_in_manual_mode(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY], hypotheses=[make_hypothesis()])
        harness = ControllerHarness(make_settings(healing_mode=HealingMode.MANUAL), reasoning)

        run = await harness.controller.run("checkout")

        assert run.failure.kind == FailureKind.APPROVAL_DENIED
        assert harness.executor.dispatched == []

    @pytest.mark.asyncio
    async def test_pattern_hypothesis_resolves_and_records_success(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY, HEALTHY])
        harness = ControllerHarness(make_settings(), reasoning)
        pattern = await harness.knowledge_base.store_pattern(memory_pattern_draft())

        run = await harness.controller.run("checkout")

        assert run.result == RunResult.RESOLVED
        assert run.matched_pattern_ids == [pattern.pattern_id]
        assert run.applied_pattern_ids == [pattern.pattern_id]
        updated = await harness.knowledge_base.get_pattern(pattern.pattern_id)
        assert updated.times_applied == 1
        assert updated.success_rate == 1.0

    @pytest.mark.asyncio
    async def test_failed_run_records_pattern_failure(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY])
        harness = ControllerHarness(make_settings(max_verify_retries=0), reasoning)
        pattern = await harness.knowledge_base.store_pattern(memory_pattern_draft())

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.FAILED
        updated = await harness.knowledge_base.get_pattern(pattern.pattern_id)
        assert updated.times_applied == 1
        assert updated.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_contradicted_pattern_records_failure_when_retry_resolves(self):
        reasoning = FakeReasoningBackend(
            analyses=[UNHEALTHY, UNHEALTHY, HEALTHY],
            hypotheses=[make_hypothesis("scale fixes it", 0.5, action_types=[ActionType.SCALE])]
        )
        harness = ControllerHarness(make_settings(max_verify_retries=1), reasoning)
        pattern = await harness.knowledge_base.store_pattern(memory_pattern_draft())

        run = await harness.controller.run("checkout")

        assert run.result == RunResult.RESOLVED
        assert [a.action_type for a in harness.executor.dispatched] == [ActionType.RESTART, ActionType.SCALE]
        assert run.contradicted_pattern_ids == [pattern.pattern_id]
        updated = await harness.knowledge_base.get_pattern(pattern.pattern_id)
        assert updated.times_applied == 1
        assert updated.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_matched_but_not_dispatched_pattern_is_not_recorded(self):
        reasoning = FakeReasoningBackend(
            analyses=[UNHEALTHY, HEALTHY],
            hypotheses=[make_hypothesis(confidence=1.0)]
        )
        harness = ControllerHarness(make_settings(), reasoning)
        pattern = await harness.knowledge_base.store_pattern(memory_pattern_draft())

        run = await harness.controller.run("checkout")

        assert run.matched_pattern_ids == [pattern.pattern_id]
        assert run.applied_pattern_ids == []
        assert (await harness.knowledge_base.get_pattern(pattern.pattern_id)).times_applied == 0

    @pytest.mark.asyncio
    async def test_terminal_run_rejects_transitions(self, harness):
        run = await harness.controller.run("checkout")

        with pytest.raises(InvalidTransitionError):
            harness.controller._transition(run, OODAPhase.ORIENTING)
        assert run.phase == OODAPhase.DONE

    @pytest.mark.asyncio
    async def test_events_published(self):
        reasoning = FakeReasoningBackend(analyses=[UNHEALTHY, HEALTHY], hypotheses=[make_hypothesis()])
        harness = ControllerHarness(make_settings(), reasoning)
        changed, finished = [], []
        harness.bus.subscribe(EventTopic.RUN_PHASE_CHANGED, changed.append)
        harness.bus.subscribe(EventTopic.RUN_FINISHED, finished.append)

        run = await harness.controller.run("checkout")

        assert len(changed) == len(run.transitions)
        assert len(finished) == 1
        assert finished[0].result == RunResult.RESOLVED

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_change_outcome(self, harness):
        harness.controller.sink = AsyncMock()
        harness.controller.sink.record.side_effect = RuntimeError("store down")

        run = await harness.controller.run("checkout")

        assert run.phase == OODAPhase.DONE
        harness.controller.sink.record.assert_awaited_once_with(run)

    @pytest.mark.asyncio
    async def test_hanging_sink_does_not_hold_the_run(self, harness):
        class HangingSink(InMemoryIncidentSink):
            async def record(self, run):
                await asyncio.sleep(3600)

        harness.controller.sink = HangingSink()
        harness.controller.settings = make_settings(sink_timeout_seconds=0.05)

        run = await asyncio.wait_for(harness.controller.run("checkout"), timeout=2.0)

        assert run.phase == OODAPhase.DONE
        assert run.result == RunResult.HEALTHY

    @pytest.mark.asyncio
    async def test_observation_window_limits_units(self):
        reasoning = FakeReasoningBackend(analyses=[AnalysisResult(healthy=True)])
        harness = ControllerHarness(make_settings(observation_window=3), reasoning)
        for i in range(10):
            harness.buffers.push("checkout", make_unit(payload=f"line {i}"))

        run = await harness.controller.run("checkout")

        assert run.evidence_text() == ["line 7", "line 8", "line 9"]
