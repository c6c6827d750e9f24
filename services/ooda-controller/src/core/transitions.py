"""
ChronoHeal - OODA Phase Transitions
===================================

The exhaustive transition table for IncidentRun phases. Anything not listed
here is rejected with InvalidTransitionError; DONE and FAILED accept nothing.
"""

from shared.schemas.incidents import OODAPhase, TERMINAL_PHASES

from src.core.errors import InvalidTransitionError

TRANSITIONS: dict[OODAPhase, frozenset[OODAPhase]] = {
    OODAPhase.IDLE: frozenset({OODAPhase.OBSERVING}),
    OODAPhase.OBSERVING: frozenset({OODAPhase.ORIENTING, OODAPhase.DONE, OODAPhase.FAILED}),
    OODAPhase.ORIENTING: frozenset({OODAPhase.DECIDING, OODAPhase.FAILED}),
    OODAPhase.DECIDING: frozenset({OODAPhase.ACTING, OODAPhase.FAILED}),
    OODAPhase.ACTING: frozenset({OODAPhase.VERIFYING, OODAPhase.FAILED}),
    OODAPhase.VERIFYING: frozenset({OODAPhase.DONE, OODAPhase.ORIENTING, OODAPhase.FAILED}),
    OODAPhase.DONE: frozenset(),
    OODAPhase.FAILED: frozenset(),
}


def allowed_transitions(from_phase: OODAPhase) -> list[OODAPhase]:
    # Listed in declaration order of OODAPhase for stable messages
    allowed = TRANSITIONS.get(from_phase, frozenset())
    return [p for p in OODAPhase if p in allowed]


def is_valid_transition(from_phase: OODAPhase, to_phase: OODAPhase) -> bool:
    return to_phase in TRANSITIONS.get(from_phase, frozenset())


def validate_transition(from_phase: OODAPhase, to_phase: OODAPhase) -> None:
    """Raise InvalidTransitionError unless ``from_phase -> to_phase`` is in the table."""
    if not is_valid_transition(from_phase, to_phase):
        raise InvalidTransitionError(from_phase, to_phase, allowed_transitions(from_phase))


def is_terminal(phase: OODAPhase) -> bool:
    return phase in TERMINAL_PHASES
