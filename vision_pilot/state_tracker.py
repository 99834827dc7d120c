"""state_tracker.py - Pure bookkeeping over a SessionState. No I/O."""

from dataclasses import dataclass

from vision_pilot.models import (
    ActionDecision,
    ActionType,
    Confidence,
    Issue,
    Mode,
    SessionState,
    TerminationReason,
    UNKNOWN_STATE,
)

# Three back actions in a row without reaching a new screen means the session
# is retreating and cannot make forward progress.
NAVIGATION_LOOP_THRESHOLD = 3


@dataclass(frozen=True)
class Budgets:
    max_steps: int
    max_screens: int


class StateTracker:
    """Records what a session has seen and done, and answers "should we stop?"."""

    def __init__(self, state: SessionState | None = None):
        self.state = state if state is not None else SessionState()

    def record_visit(self, label: str) -> bool:
        """Add a screen label. Returns True when the label is new."""
        state = self.state
        if not label or label == UNKNOWN_STATE:
            return False

        previous = state.current_label
        state.current_label = label
        if label in state.visited_labels:
            return False

        state.visited_labels.add(label)
        # New screen means forward progress, so a run of backs is broken.
        state.consecutive_back_count = 0
        if previous != UNKNOWN_STATE and previous != label:
            reachable = state.navigation_map.setdefault(previous, [])
            if label not in reachable:
                reachable.append(label)
        return True

    def record_elements(self, identifiers: list[str]) -> None:
        for identifier in identifiers:
            if identifier:
                self.state.elements_seen.add(identifier)

    def record_exploration(self, target: str) -> None:
        if target:
            self.state.explored_targets.add(target)

    def append_issues(self, issues: list[Issue]) -> None:
        # Duplicates are kept on purpose: a recurring issue is a signal.
        self.state.issues.extend(issues)

    def record_action_proposal(self, action_type: ActionType) -> None:
        if action_type == ActionType.BACK:
            self.state.consecutive_back_count += 1
        else:
            self.state.consecutive_back_count = 0

    def should_terminate(
        self, mode: Mode, decision: ActionDecision, budgets: Budgets
    ) -> tuple[bool, TerminationReason | None]:
        """Mode-specific termination predicate. Step budget is not checked here."""
        state = self.state
        if mode == Mode.GOAL:
            if decision.action.type == ActionType.NONE and decision.confidence == Confidence.HIGH:
                return True, TerminationReason.GOAL_ACHIEVED
            return False, None

        if decision.action.type == ActionType.NONE and not decision.is_fallback:
            return True, TerminationReason.EXPLORATION_COMPLETE
        if len(state.visited_labels) >= budgets.max_screens:
            return True, TerminationReason.MAX_SCREENS
        if state.consecutive_back_count >= NAVIGATION_LOOP_THRESHOLD:
            return True, TerminationReason.NAVIGATION_LOOP
        return False, None
