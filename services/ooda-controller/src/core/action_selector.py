"""
ChronoHeal - Hypothesis & Action Selector
=========================================

Turns reasoning-backend hypotheses and knowledge-base matches into one
ranked list, and picks the actions a run is allowed to dispatch.

Ranking:
    confidence desc, supporting evidence count desc, generation order asc.
    Backend hypotheses are generated first, then pattern-derived ones.

Safety:
    Actions are filtered against the allow-list. MANUAL is never
    dispatched, whatever the allow-list says. A hypothesis that loses all
    of its actions stays in the ranking with ``actionable=False``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from shared.constants import ActionType, DEFAULT_ACTION_RISK, DEFAULT_ALLOWED_ACTIONS, Defaults, RiskLevel
from shared.schemas.incidents import (
    ActionDescriptor,
    Hypothesis,
    HypothesisSource,
    IncidentRun,
)
from shared.schemas.patterns import MatchResult
from shared.utils.logging import get_logger

from src.config import HealingMode

logger = get_logger(__name__)


# Keyword -> action type, checked in order against a recommended-action phrase
PHRASE_ACTION_KEYWORDS: list[tuple[str, ActionType]] = [
    ("rollback", ActionType.ROLLBACK),
    ("roll back", ActionType.ROLLBACK),
    ("revert", ActionType.ROLLBACK),
    ("restart", ActionType.RESTART),
    ("scale", ActionType.SCALE),
]


def rank_hypotheses(hypotheses: Iterable[Hypothesis]) -> list[Hypothesis]:
    """Stable ordering; ties keep their generation order."""
    return sorted(
        hypotheses,
        key=lambda h: (-h.confidence, -len(h.supporting_evidence), h.generation_order)
    )


def action_type_from_phrase(phrase: str) -> ActionType:
    lowered = phrase.lower()
    for keyword, action_type in PHRASE_ACTION_KEYWORDS:
        if keyword in lowered:
            return action_type
    return ActionType.MANUAL


def default_parameters(action_type: ActionType, target: str) -> dict:
    """Default parameters for an action type."""
    params: dict = {"target": target}

    if action_type == ActionType.RESTART:
        params.update({
            "strategy": "rolling",
            "max_unavailable": 1
        })
    elif action_type == ActionType.SCALE:
        params.update({
            "increment": 1,
            "max_replicas": 10
        })
    elif action_type == ActionType.ROLLBACK:
        params.update({
            "revision": -1  # Previous revision
        })

    return params


def with_default_risk(action: ActionDescriptor) -> ActionDescriptor:
    if action.risk_level is not None:
        return action
    return action.model_copy(update={"risk_level": DEFAULT_ACTION_RISK[action.action_type]})


def hypotheses_from_matches(
    matches: Iterable[MatchResult],
    target: str,
    evidence_ids: Optional[list[str]] = None,
    first_order: int = 0
) -> list[Hypothesis]:
    """
    One hypothesis per knowledge-base match.

    Confidence is the match score weighted by the pattern's own confidence,
    halved when one of the pattern's exception tags was seen in the input.
    """
    hypotheses = []

    for offset, match in enumerate(matches):
        pattern = match.pattern

        confidence = match.score * pattern.confidence
        if match.matched_exceptions:
            confidence /= 2

        actions = []
        for phrase in pattern.recommended_actions:
            action_type = action_type_from_phrase(phrase)
            actions.append(with_default_risk(ActionDescriptor(
                action_type=action_type,
                target=target,
                parameters=default_parameters(action_type, target),
                reasoning=phrase,
            )))

        hypotheses.append(Hypothesis(
            description=f"{pattern.name}: {pattern.description}",
            confidence=max(0.0, min(1.0, confidence)),
            supporting_evidence=list(evidence_ids or []),
            proposed_actions=actions,
            testing_steps=[f"Re-check: {c}" for c in pattern.trigger_conditions],
            source=HypothesisSource.PATTERN,
            source_pattern_id=pattern.pattern_id,
            generation_order=first_order + offset,
        ))

    return hypotheses


def is_dispatchable(action: ActionDescriptor, allowed_actions: Iterable[ActionType]) -> bool:
    return action.action_type != ActionType.MANUAL and action.action_type in set(allowed_actions)


def filter_actions(
    hypotheses: Iterable[Hypothesis],
    allowed_actions: Iterable[ActionType] = DEFAULT_ALLOWED_ACTIONS
) -> list[Hypothesis]:
    """
    Mark each hypothesis actionable or not against the allow-list.

    Proposed actions are kept intact for visibility; only the flag changes.
    Missing risk levels are filled in from the per-type defaults.
    """
    allowed = set(allowed_actions)
    filtered = []

    for hypothesis in hypotheses:
        actions = [with_default_risk(a) for a in hypothesis.proposed_actions]
        actionable = any(is_dispatchable(a, allowed) for a in actions)
        filtered.append(hypothesis.model_copy(update={
            "proposed_actions": actions,
            "actionable": actionable,
        }))

    return filtered


def select_actions(
    ranked: Iterable[Hypothesis],
    allowed_actions: Iterable[ActionType] = DEFAULT_ALLOWED_ACTIONS,
    max_actions: int = Defaults.MAX_ACTIONS_PER_RUN
) -> tuple[Optional[Hypothesis], list[ActionDescriptor]]:
    """
    Pick the top actionable hypothesis and its dispatchable actions.

    Returns (None, []) when no hypothesis has a dispatchable action.
    """
    allowed = set(allowed_actions)

    for hypothesis in ranked:
        if not hypothesis.actionable:
            continue

        actions = [a for a in hypothesis.proposed_actions if is_dispatchable(a, allowed)]
        if actions:
            return hypothesis, actions[:max_actions]

    return None, []


# =============================================================================
# Approval
# =============================================================================

@dataclass
class ApprovalDecision:
    approved: bool
    reason: str


class ApprovalPolicy(ABC):
    """Risk gate consulted before any action is dispatched."""

    @abstractmethod
    async def review(
        self,
        run: IncidentRun,
        hypothesis: Hypothesis,
        actions: list[ActionDescriptor]
    ) -> ApprovalDecision:
        ...


class ModeApprovalPolicy(ApprovalPolicy):
    """
    Approval driven by the healing mode.

    - AUTO: everything that passed the allow-list
    - SEMI_AUTO: only when every action is low risk
    - MANUAL: nothing
    """

    def __init__(self, mode: HealingMode = HealingMode.AUTO):
        self.mode = mode

    async def review(
        self,
        run: IncidentRun,
        hypothesis: Hypothesis,
        actions: list[ActionDescriptor]
    ) -> ApprovalDecision:
        if self.mode == HealingMode.AUTO:
            return ApprovalDecision(True, "auto mode")

        if self.mode == HealingMode.MANUAL:
            return ApprovalDecision(False, "manual mode requires operator approval")

        risky = [
            a.action_type.value for a in actions
            if (a.risk_level or DEFAULT_ACTION_RISK[a.action_type]) != RiskLevel.LOW
        ]
        if risky:
            logger.info(
                f"Semi-auto approval withheld for {run.subject}",
                extra={"risky_actions": risky}
            )
            return ApprovalDecision(False, f"actions above low risk: {', '.join(risky)}")

        return ApprovalDecision(True, "all actions are low risk")
