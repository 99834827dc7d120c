"""models.py - Shared data model for the vision-guided action loop.

Everything that crosses a component boundary lives here: the model's decision
for one turn, the action it proposes, issues it reports, the per-session
bookkeeping state and the terminal session result.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ActionType(str, Enum):
    TAP = "tap"
    TYPE = "type"
    SCROLL = "scroll"
    SWIPE = "swipe"
    LONG_PRESS = "longPress"
    WAIT = "wait"
    BACK = "back"
    NONE = "none"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueType(str, Enum):
    VISUAL = "visual"
    FUNCTIONAL = "functional"
    ACCESSIBILITY = "accessibility"
    PERFORMANCE = "performance"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Mode(str, Enum):
    GOAL = "goal"
    EXPLORE = "explore"


class TerminationReason(str, Enum):
    GOAL_ACHIEVED = "goal-achieved"
    EXPLORATION_COMPLETE = "exploration-complete"
    MAX_SCREENS = "max-screens"
    NAVIGATION_LOOP = "navigation-loop"
    MAX_STEPS = "max-steps"
    PERCEPTION_FAILURE = "perception-failure"


UNKNOWN_STATE = "unknown"


# ---------------------------------------------------------------------------
# Model output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinates:
    x: int
    y: int


@dataclass
class ElementRef:
    """An element the model noticed on screen."""

    type: str
    identifier: str
    interactable: bool = True
    region: str = ""
    text: str = ""


@dataclass
class ActionSpec:
    """The next step proposed by the model."""

    type: ActionType
    target: str = ""
    value: str | None = None
    coordinates: Coordinates | None = None
    fallback_targets: list[str] = field(default_factory=list)

    @classmethod
    def noop(cls) -> "ActionSpec":
        return cls(type=ActionType.NONE, target="")


@dataclass
class Issue:
    screen: str
    type: IssueType
    severity: Severity
    description: str
    element: str | None = None


@dataclass
class ActionDecision:
    """One model turn, parsed."""

    observation: str
    state_label: str
    action: ActionSpec
    confidence: Confidence
    candidate_elements: list[ElementRef] = field(default_factory=list)
    reasoning: str | None = None
    concerns: str | None = None
    issues: list[Issue] = field(default_factory=list)
    is_fallback: bool = False


@dataclass(frozen=True)
class EncodedImage:
    """A screenshot ready to be sent to the reasoning model."""

    data: str
    media_type: str = "image/png"
    path: str | None = None


# ---------------------------------------------------------------------------
# Session bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class SessionState:
    """Running state for exactly one session. Never shared between sessions."""

    visited_labels: set[str] = field(default_factory=set)
    explored_targets: set[str] = field(default_factory=set)
    issues: list[Issue] = field(default_factory=list)
    consecutive_back_count: int = 0
    step_count: int = 0
    current_label: str = UNKNOWN_STATE
    navigation_map: dict[str, list[str]] = field(default_factory=dict)
    elements_seen: set[str] = field(default_factory=set)


@dataclass
class StepRecord:
    step: int
    state_label: str
    action_type: str
    target: str
    executed: bool
    success: bool
    error: str | None = None
    resolved_via: str | None = None
    duration_ms: int = 0


@dataclass
class SessionResult:
    """Terminal snapshot of a session, consumed by reporting."""

    session_id: str
    mode: Mode
    success: bool
    termination_reason: TerminationReason
    objective: str
    visited_labels: list[str]
    explored_targets: list[str]
    issues: list[Issue]
    step_count: int
    final_state: str
    steps: list[StepRecord] = field(default_factory=list)
    navigation_map: dict[str, list[str]] = field(default_factory=dict)
    elements_found: int = 0
    coverage_score: int | None = None
    duration_seconds: float = 0.0
    error: str | None = None

    def summary(self) -> dict:
        """Step statistics in the shape the reports expect."""
        executed = [s for s in self.steps if s.executed]
        durations = [s.duration_ms for s in self.steps]
        return {
            "total_steps": len(self.steps),
            "successful_steps": sum(1 for s in executed if s.success),
            "failed_steps": sum(1 for s in executed if not s.success),
            "avg_step_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
        }

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["mode"] = self.mode.value
        payload["termination_reason"] = self.termination_reason.value
        payload["issues"] = [issue_to_dict(i) for i in self.issues]
        payload["summary"] = self.summary()
        return payload


def issue_to_dict(issue: Issue) -> dict:
    row = {
        "screen": issue.screen,
        "type": issue.type.value,
        "severity": issue.severity.value,
        "description": issue.description,
    }
    if issue.element:
        row["element"] = issue.element
    return row


def decision_to_dict(decision: ActionDecision) -> dict:
    """Flatten a decision for telemetry events."""
    action = decision.action
    return {
        "observation": decision.observation,
        "state_label": decision.state_label,
        "action": {
            "type": action.type.value,
            "target": action.target,
            "value": action.value,
            "coordinates": asdict(action.coordinates) if action.coordinates else None,
            "fallback_targets": list(action.fallback_targets),
        },
        "confidence": decision.confidence.value,
        "reasoning": decision.reasoning,
        "concerns": decision.concerns,
        "issues": [issue_to_dict(i) for i in decision.issues],
        "is_fallback": decision.is_fallback,
    }
