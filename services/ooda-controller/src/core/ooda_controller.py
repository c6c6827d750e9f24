"""
ChronoHeal - OODA Controller
============================

The core control loop for autonomous incident response.

Phases:
1. OBSERVE: Read recent evidence for the subject and ask the reasoning
   backend for anomalies and a health verdict. Healthy ends the run.

2. ORIENT: Correlate the accumulated evidence with learned patterns
   and merge the matches into the evidence set.

3. DECIDE: Rank backend and pattern-derived hypotheses, keep only
   allow-listed actions, and pass the approval gate.

4. ACT: Dispatch the selected actions to the executor. Every action
   must be acknowledged.

5. VERIFY: Re-observe. Healthy ends the run; otherwise the run goes back
   to ORIENT once per allowed retry, then fails.

Every collaborator call is bounded by a timeout and never retried inside a
run. Phase failures end the run in FAILED; ``run()`` itself does not raise.
"""

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

from shared.constants import Collaborator
from shared.schemas.events import RunFinishedEvent, RunPhaseChangedEvent
from shared.schemas.incidents import (
    ActionDescriptor,
    DispatchResult,
    EvidenceKind,
    FailureKind,
    Hypothesis,
    HypothesisSource,
    IncidentRun,
    OODAPhase,
    PhaseTransition,
    RunFailure,
    RunResult,
)
from shared.schemas.patterns import MatchResult, PatternMatchInput
from shared.schemas.reasoning import AnalysisResult
from shared.utils.clock import utcnow
from shared.utils.logging import get_logger, run_context

from src.config import Settings, get_settings
from src.core.action_executor import ActionExecutor
from src.core.action_selector import (
    ApprovalPolicy,
    ModeApprovalPolicy,
    filter_actions,
    hypotheses_from_matches,
    rank_hypotheses,
    select_actions,
)
from src.core.errors import CollaboratorError, CollaboratorTimeoutError
from src.core.evidence_buffer import EvidenceBufferRegistry
from src.core.incident_sink import IncidentSink
from src.core.knowledge_base import KnowledgeBase
from src.core.notifications import EventBus
from src.core.reasoning_client import ReasoningBackend
from src.core.transitions import validate_transition

logger = get_logger(__name__)

T = TypeVar("T")

NO_SAFE_ACTION_REASON = "no safe action available"


def _hypothesis_key(hypothesis: Hypothesis) -> str:
    return hypothesis.source_pattern_id or hypothesis.description.strip().lower()


class OODAController:
    """
    Runs the OODA loop for one subject at a time per call.

    The controller holds no per-run state: everything a run accumulates
    lives on its IncidentRun, so concurrent ``run()`` calls for different
    subjects are independent.
    """

    def __init__(
        self,
        buffers: EvidenceBufferRegistry,
        knowledge_base: KnowledgeBase,
        reasoning: ReasoningBackend,
        executor: ActionExecutor,
        sink: IncidentSink,
        approval: Optional[ApprovalPolicy] = None,
        event_bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.buffers = buffers
        self.knowledge_base = knowledge_base
        self.reasoning = reasoning
        self.executor = executor
        self.sink = sink
        self.approval = approval or ModeApprovalPolicy(self.settings.healing_mode)
        self.event_bus = event_bus or knowledge_base.event_bus

    async def run(self, subject: str) -> IncidentRun:
        """Execute one full run for ``subject`` and return the finished record."""
        run = IncidentRun(subject=subject)

        with run_context(subject, run.run_id):
            logger.info(f"Run started for {subject}")

            try:
                await self._execute(run)

            except CollaboratorError as e:
                logger.warning(
                    f"Run failed on {e.collaborator} during {run.phase.value}: {e.message}",
                    extra={"collaborator": e.collaborator, "failure_kind": e.kind.value}
                )
                self._fail(run, e.kind, e.message, collaborator=e.collaborator)

            except Exception as e:
                logger.error(f"Run failed unexpectedly: {e}", exc_info=True)
                if not run.is_terminal:
                    self._fail(run, FailureKind.INTERNAL_ERROR, str(e))

            await self._finalize(run)

        return run

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def _execute(self, run: IncidentRun) -> None:
        self._transition(run, OODAPhase.OBSERVING, "run started")
        analysis = await self._observe(run)

        if analysis.healthy:
            run.result = RunResult.HEALTHY
            self._transition(run, OODAPhase.DONE, "observation healthy")
            return

        self._transition(run, OODAPhase.ORIENTING, f"{len(analysis.anomalies)} anomalies observed")

        while True:
            matches = await self._orient(run)
            self._transition(run, OODAPhase.DECIDING, f"{len(matches)} patterns matched")

            hypothesis, actions = await self._decide(run, matches)
            if hypothesis is None:
                self._fail(run, FailureKind.NO_SAFE_ACTION, NO_SAFE_ACTION_REASON)
                return

            decision = await self._call(
                Collaborator.APPROVAL_POLICY,
                self.approval.review(run, hypothesis, actions),
                self.settings.approval_timeout_seconds,
            )
            if not decision.approved:
                self._fail(
                    run,
                    FailureKind.APPROVAL_DENIED,
                    f"approval denied: {decision.reason}",
                    collaborator=Collaborator.APPROVAL_POLICY.value
                )
                return

            self._transition(run, OODAPhase.ACTING, f"dispatching {len(actions)} actions")
            rejected = await self._act(run, hypothesis, actions)
            if rejected is not None:
                self._fail(
                    run,
                    FailureKind.DISPATCH_REJECTED,
                    f"{rejected.action_type.value} rejected: {rejected.detail}",
                    collaborator=Collaborator.ACTION_EXECUTOR.value
                )
                return

            self._transition(run, OODAPhase.VERIFYING, "all actions acknowledged")
            healthy, verification_id = await self._verify(run)

            if healthy:
                run.result = RunResult.RESOLVED
                self._transition(run, OODAPhase.DONE, "verification healthy")
                return

            self._contradict(run, hypothesis, verification_id)

            if run.verify_retries >= self.settings.max_verify_retries:
                self._fail(
                    run,
                    FailureKind.VERIFICATION_EXHAUSTED,
                    f"still unhealthy after {run.verification_attempts} verification attempts"
                )
                return

            run.verify_retries += 1
            self._transition(run, OODAPhase.ORIENTING, f"verification unhealthy, retry {run.verify_retries}")

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _observe(self, run: IncidentRun) -> AnalysisResult:
        units = self.buffers.recent(run.subject, self.settings.observation_window)

        for unit in units:
            run.add_evidence(
                EvidenceKind.OBSERVATION,
                unit.describe(),
                source=unit.kind.value,
                data={"unit_id": unit.unit_id, "captured_at": unit.captured_at.isoformat()}
            )

        analysis = await self._analyze(run, units)

        for anomaly in analysis.anomalies:
            run.add_evidence(
                EvidenceKind.ANOMALY,
                anomaly.description,
                source=Collaborator.REASONING_BACKEND.value,
                data={"type": anomaly.type, "severity": anomaly.severity.value, "confidence": anomaly.confidence}
            )

        for metric in analysis.metrics:
            run.add_evidence(
                EvidenceKind.METRIC,
                f"{metric.name} = {metric.value}{metric.unit or ''}",
                source=Collaborator.REASONING_BACKEND.value,
                data=metric.model_dump()
            )

        logger.info(
            f"OBSERVE: {len(units)} units, {len(analysis.anomalies)} anomalies, healthy={analysis.healthy}",
            extra={"units": len(units), "anomalies": len(analysis.anomalies)}
        )
        return analysis

    async def _orient(self, run: IncidentRun) -> list[MatchResult]:
        match_input = PatternMatchInput(
            symptoms=[
                e.content for e in run.evidence
                if e.kind in (EvidenceKind.ANOMALY, EvidenceKind.VERIFICATION)
            ],
            logs=[e.content for e in run.evidence if e.kind == EvidenceKind.OBSERVATION],
            affected_service=run.subject,
        )

        try:
            result = await asyncio.wait_for(
                self.knowledge_base.find_matching_patterns(
                    match_input,
                    min_score=self.settings.pattern_min_score,
                    max_results=self.settings.pattern_max_results,
                ),
                timeout=self.settings.pattern_store_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise CollaboratorTimeoutError(Collaborator.PATTERN_STORE.value, "pattern lookup timed out") from e
        except CollaboratorError:
            raise
        except Exception as e:
            raise CollaboratorError(Collaborator.PATTERN_STORE.value, str(e)) from e

        for match in result.matches:
            run.add_evidence(
                EvidenceKind.PATTERN_MATCH,
                f"Pattern '{match.pattern.name}' matched ({match.score:.2f}): {match.explanation}",
                source=Collaborator.PATTERN_STORE.value,
                data={"pattern_id": match.pattern.pattern_id, "score": match.score}
            )
            if match.pattern.pattern_id not in run.matched_pattern_ids:
                run.matched_pattern_ids.append(match.pattern.pattern_id)

        logger.info(f"ORIENT: {len(result.matches)} pattern matches")
        return result.matches

    async def _decide(
        self,
        run: IncidentRun,
        matches: list[MatchResult]
    ) -> tuple[Optional[Hypothesis], list[ActionDescriptor]]:
        batch = await self._call(
            Collaborator.REASONING_BACKEND,
            self.reasoning.generate_hypotheses(
                run.evidence_text(),
                list(self.settings.allowed_actions),
                self._context(run)
            ),
            self.settings.reasoning_timeout_seconds,
        )

        generated = [
            h.model_copy(update={"generation_order": i, "source": HypothesisSource.REASONING})
            for i, h in enumerate(batch.hypotheses)
        ]

        match_evidence = {
            e.data.get("pattern_id"): e.evidence_id
            for e in run.evidence if e.kind == EvidenceKind.PATTERN_MATCH
        }
        for hypothesis in hypotheses_from_matches(matches, target=run.subject, first_order=len(generated)):
            evidence_id = match_evidence.get(hypothesis.source_pattern_id)
            if evidence_id:
                hypothesis = hypothesis.model_copy(update={"supporting_evidence": [evidence_id]})
            generated.append(hypothesis)

        candidates = filter_actions(generated, self.settings.allowed_actions)

        # Hypotheses already disproved by verification stay visible but cannot be picked again
        contradicted = {
            _hypothesis_key(h): h.contradicting_evidence
            for h in run.hypotheses if h.contradicting_evidence
        }
        candidates = [
            h.model_copy(update={"contradicting_evidence": contradicted[_hypothesis_key(h)], "actionable": False})
            if _hypothesis_key(h) in contradicted else h
            for h in candidates
        ]

        ranked = rank_hypotheses(candidates)
        run.hypotheses = ranked

        hypothesis, actions = select_actions(
            ranked,
            self.settings.allowed_actions,
            self.settings.max_actions_per_run
        )

        if hypothesis is None:
            logger.warning(
                f"DECIDE: no actionable hypothesis among {len(ranked)}",
                extra={"hypotheses": len(ranked)}
            )
            return None, []

        run.selected_hypothesis_id = hypothesis.hypothesis_id
        run.selected_actions = actions

        logger.info(
            f"DECIDE: selected '{hypothesis.description}' with {len(actions)} actions",
            extra={
                "confidence": hypothesis.confidence,
                "source": hypothesis.source.value,
                "actions": [a.action_type.value for a in actions]
            }
        )
        return hypothesis, actions

    async def _act(
        self,
        run: IncidentRun,
        hypothesis: Hypothesis,
        actions: list[ActionDescriptor]
    ) -> Optional[DispatchResult]:
        """Dispatch in order; returns the first rejection, or None when all were accepted."""
        for action in actions:
            ack = await self._call(
                Collaborator.ACTION_EXECUTOR,
                self.executor.dispatch(action),
                self.settings.executor_timeout_seconds,
            )

            result = DispatchResult(
                action_id=action.action_id,
                action_type=action.action_type,
                accepted=ack.accepted,
                detail=ack.detail,
            )
            run.dispatch_results.append(result)

            logger.info(
                f"ACT: {action.action_type.value} {'accepted' if ack.accepted else 'rejected'}",
                extra={"action_id": action.action_id, "target": action.target}
            )

            if not ack.accepted:
                return result

            pattern_id = hypothesis.source_pattern_id
            if pattern_id and pattern_id not in run.applied_pattern_ids:
                run.applied_pattern_ids.append(pattern_id)

        return None

    async def _verify(self, run: IncidentRun) -> tuple[bool, str]:
        if self.settings.verification_delay_seconds > 0:
            await asyncio.sleep(self.settings.verification_delay_seconds)

        units = self.buffers.recent(run.subject, self.settings.observation_window)
        analysis = await self._analyze(run, units)

        run.verification_attempts += 1
        run.last_verification_healthy = analysis.healthy

        if analysis.healthy:
            content = "verification healthy"
        else:
            content = "; ".join(a.description for a in analysis.anomalies) or "verification unhealthy"

        record = run.add_evidence(
            EvidenceKind.VERIFICATION,
            content,
            source=Collaborator.REASONING_BACKEND.value,
            data={"healthy": analysis.healthy, "attempt": run.verification_attempts}
        )

        logger.info(
            f"VERIFY: attempt {run.verification_attempts} healthy={analysis.healthy}",
            extra={"attempt": run.verification_attempts}
        )
        return analysis.healthy, record.evidence_id

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _analyze(self, run: IncidentRun, units) -> AnalysisResult:
        return await self._call(
            Collaborator.REASONING_BACKEND,
            self.reasoning.analyze(units, self._context(run)),
            self.settings.reasoning_timeout_seconds,
        )

    async def _call(self, collaborator: Collaborator, call: Awaitable[T], timeout: float) -> T:
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CollaboratorTimeoutError(collaborator.value, f"no response within {timeout}s") from e

    def _context(self, run: IncidentRun) -> dict[str, Any]:
        return {
            "subject": run.subject,
            "run_id": run.run_id,
            "phase": run.phase.value,
            "verify_retries": run.verify_retries,
        }

    def _contradict(self, run: IncidentRun, hypothesis: Hypothesis, evidence_id: str) -> None:
        run.hypotheses = [
            h.model_copy(update={"contradicting_evidence": [*h.contradicting_evidence, evidence_id]})
            if h.hypothesis_id == hypothesis.hypothesis_id else h
            for h in run.hypotheses
        ]

        pattern_id = hypothesis.source_pattern_id
        if pattern_id and pattern_id not in run.contradicted_pattern_ids:
            run.contradicted_pattern_ids.append(pattern_id)

    def _transition(self, run: IncidentRun, to_phase: OODAPhase, reason: str = "") -> None:
        from_phase = run.phase
        validate_transition(from_phase, to_phase)

        run.transitions.append(PhaseTransition(from_phase=from_phase, to_phase=to_phase, reason=reason))
        run.phase = to_phase
        if run.is_terminal:
            run.completed_at = utcnow()

        logger.info(
            f"{from_phase.value.upper()} -> {to_phase.value.upper()}: {reason}",
            extra={"from_phase": from_phase.value, "to_phase": to_phase.value}
        )

        self.event_bus.publish(RunPhaseChangedEvent(
            run_id=run.run_id,
            subject=run.subject,
            from_phase=from_phase,
            to_phase=to_phase,
            reason=reason,
        ))

    def _fail(
        self,
        run: IncidentRun,
        kind: FailureKind,
        reason: str,
        collaborator: Optional[str] = None
    ) -> None:
        run.failure = RunFailure(kind=kind, reason=reason, phase=run.phase, collaborator=collaborator)
        run.result = RunResult.FAILED
        self._transition(run, OODAPhase.FAILED, reason)

    async def _finalize(self, run: IncidentRun) -> None:
        resolved = run.phase == OODAPhase.DONE

        # Patterns disproved by their own verification record a failure
        for pattern_id in run.applied_pattern_ids:
            success = resolved and pattern_id not in run.contradicted_pattern_ids
            try:
                await asyncio.wait_for(
                    self.knowledge_base.record_pattern_application(pattern_id, success),
                    timeout=self.settings.pattern_store_timeout_seconds
                )
            except Exception as e:
                logger.error(
                    f"Could not record application of pattern {pattern_id}: {e}",
                    extra={"pattern_id": pattern_id},
                    exc_info=True
                )

        self.event_bus.publish(RunFinishedEvent(
            run_id=run.run_id,
            subject=run.subject,
            result=run.result or RunResult.FAILED,
            failure=run.failure,
            duration_seconds=run.duration_seconds,
        ))

        try:
            await asyncio.wait_for(self.sink.record(run), timeout=self.settings.sink_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(
                f"Incident sink timed out for run {run.run_id} after {self.settings.sink_timeout_seconds}s",
                extra={"collaborator": Collaborator.INCIDENT_SINK.value}
            )
        except Exception as e:
            logger.error(f"Incident sink failed for run {run.run_id}: {e}", exc_info=True)

        logger.info(
            f"Run finished: {run.phase.value}",
            extra={
                "result": run.result.value if run.result else None,
                "duration_seconds": run.duration_seconds,
                "transitions": len(run.transitions)
            }
        )
