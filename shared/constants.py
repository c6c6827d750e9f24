"""
ChronoHeal - Shared Constants
=============================

Enumerations and default values used across the controller.
Numeric defaults can be overridden through service settings.
"""

from enum import Enum


class ServiceName(str, Enum):
    """Names of ChronoHeal services and the collaborators they talk to."""
    OODA_CONTROLLER = "ooda-controller"
    REASONING_BACKEND = "reasoning-backend"
    ACTION_EXECUTOR = "action-executor"
    INCIDENT_STORE = "incident-store"


class Collaborator(str, Enum):
    """External collaborators a run can fail on."""
    REASONING_BACKEND = "reasoning_backend"
    PATTERN_STORE = "pattern_store"
    ACTION_EXECUTOR = "action_executor"
    APPROVAL_POLICY = "approval_policy"
    INCIDENT_SINK = "incident_sink"


class Severity(str, Enum):
    """Anomaly severity levels."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ObservationKind(str, Enum):
    """Kinds of evidence units held by the evidence buffer."""
    FRAME = "frame"      # Rendered dashboard frame
    LOG = "log"          # Log excerpt
    METRIC = "metric"    # Metric sample
    EVENT = "event"      # Cluster or deployment event


class ActionType(str, Enum):
    """Remediation actions a hypothesis may propose."""
    ROLLBACK = "rollback"   # Roll back to the previous revision
    RESTART = "restart"     # Rolling restart of the deployment
    SCALE = "scale"         # Change replica count
    MANUAL = "manual"       # Needs a human, never auto-dispatched


class RiskLevel(str, Enum):
    """Advisory risk attached to an action."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PatternType(str, Enum):
    """Kinds of learned incident patterns."""
    DETECTION = "detection"
    DIAGNOSTIC = "diagnostic"
    RESOLUTION = "resolution"
    PREVENTION = "prevention"


class EventTopic(str, Enum):
    """Notification topics published on the event bus."""
    PATTERN_MATCHED = "pattern:matched"
    PATTERN_STORED = "pattern:stored"
    PATTERN_APPLIED = "pattern:applied"
    PATTERN_DEACTIVATED = "pattern:deactivated"
    RUN_PHASE_CHANGED = "run:phase_changed"
    RUN_FINISHED = "run:finished"


DEFAULT_ALLOWED_ACTIONS = (ActionType.ROLLBACK, ActionType.RESTART, ActionType.SCALE)

# Risk assumed when a proposed action carries none
DEFAULT_ACTION_RISK = {
    ActionType.ROLLBACK: RiskLevel.HIGH,
    ActionType.SCALE: RiskLevel.MEDIUM,
    ActionType.RESTART: RiskLevel.LOW,
    ActionType.MANUAL: RiskLevel.HIGH,
}


class Defaults:
    """Default values for controller behavior."""
    EVIDENCE_BUFFER_CAPACITY = 60       # 30 seconds of frames at 2 FPS
    OBSERVATION_WINDOW = 10             # Units handed to the reasoning backend
    MAX_VERIFY_RETRIES = 1              # VERIFY -> ORIENT re-entries per run
    HIGH_CONFIDENCE_THRESHOLD = 0.8
    MAX_ACTIONS_PER_RUN = 3
    KEYWORD_MIN_LENGTH = 4              # Keywords are tokens longer than 3 chars
    DUPLICATE_CONDITION_OVERLAP = 0.7


class Timing:
    """Timing constants in seconds."""
    DETECTION_INTERVAL_SECONDS = 15
    REASONING_TIMEOUT_SECONDS = 60
    PATTERN_STORE_TIMEOUT_SECONDS = 10
    EXECUTOR_TIMEOUT_SECONDS = 300
    APPROVAL_TIMEOUT_SECONDS = 10
    SINK_TIMEOUT_SECONDS = 15
    VERIFICATION_DELAY_SECONDS = 0
