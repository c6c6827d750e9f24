"""
ChronoHeal - Controller Errors
==============================

Collaborator errors are raised by the clients and caught at the phase
boundary, where they turn the run FAILED. Scheduler errors are raised to
the caller and surfaced by the API as client errors.
"""

from typing import Optional

from shared.schemas.incidents import FailureKind, OODAPhase


class ChronoHealError(Exception):
    """Base class for controller errors."""


class CollaboratorError(ChronoHealError):
    """An external collaborator could not be reached or refused the call."""

    kind = FailureKind.COLLABORATOR_UNAVAILABLE

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
        self.message = message


class CollaboratorTimeoutError(CollaboratorError):
    """A collaborator call exceeded its time budget."""

    kind = FailureKind.COLLABORATOR_TIMEOUT


class MalformedResponseError(CollaboratorError):
    """A collaborator answered with a payload that does not parse."""

    kind = FailureKind.MALFORMED_RESPONSE


class InvalidTransitionError(ChronoHealError):
    """A phase change not present in the transition table."""

    def __init__(self, from_phase: OODAPhase, to_phase: OODAPhase, allowed: Optional[list[OODAPhase]] = None):
        allowed_text = ", ".join(p.value for p in allowed) if allowed else "none"
        super().__init__(
            f"Invalid transition {from_phase.value} -> {to_phase.value} (allowed: {allowed_text})"
        )
        self.from_phase = from_phase
        self.to_phase = to_phase
        self.allowed = allowed or []


class SchedulerStateError(ChronoHealError):
    """start() while running, or stop() while stopped."""


class RunInProgressError(ChronoHealError):
    """A run was requested for a subject that already has one in flight."""

    def __init__(self, subject: str):
        super().__init__(f"A run is already in progress for subject {subject}")
        self.subject = subject
