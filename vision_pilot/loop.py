"""loop.py - The perceive -> decide -> act loop.

One LoopController.run() is one session: a fresh SessionState and a fresh
model conversation, driven through PERCEIVE -> DECIDE -> CHECK_TERMINATION ->
{DONE | ACT -> PERCEIVE} until a termination reason is reached. Goal and
exploration modes differ only in their prompt context and termination
predicate.

Usage:
    from vision_pilot.loop import run_goal, explore
    result = run_goal("Log in as demo@example.com", udid="...")
    result = explore(udid="...", focus="Settings screens")
"""

import sys
import time
from dataclasses import asdict
from enum import Enum

from vision_pilot import report, session_log
from vision_pilot.config import LoopConfig, ModelConfig
from vision_pilot.decision import DecisionParser
from vision_pilot.executor import ActionExecutor
from vision_pilot.models import (
    ActionDecision,
    ActionType,
    Confidence,
    IssueType,
    Mode,
    SessionResult,
    SessionState,
    StepRecord,
    TerminationReason,
    decision_to_dict,
)
from vision_pilot.perception import PerceptionAdapter, PerceptionError
from vision_pilot.policy import ActionPolicy
from vision_pilot.state_tracker import Budgets, StateTracker

HISTORY_WINDOW = 5

_EXPLORE_SUCCESS = (
    TerminationReason.EXPLORATION_COMPLETE,
    TerminationReason.MAX_SCREENS,
    TerminationReason.MAX_STEPS,
)


class SessionPhase(str, Enum):
    PERCEIVE = "perceive"
    DECIDE = "decide"
    CHECK_TERMINATION = "check_termination"
    ACT = "act"
    DONE = "done"


def _log(msg: str) -> None:
    print(f"[loop] {msg}", file=sys.stderr)


def _step_line(record: StepRecord) -> str:
    mark = "ok" if record.success else "failed"
    return f"Step {record.step}: {record.action_type} on \"{record.target}\" -> {mark}"


# ---------------------------------------------------------------------------
# Mode policies
# ---------------------------------------------------------------------------

class GoalPolicy:
    """Prompt context for goal-directed sessions."""

    mode = Mode.GOAL

    def __init__(self, goal_description: str):
        self.goal_description = goal_description

    def context_prompt(self, state: SessionState, steps: list[StepRecord]) -> str:
        recent = "\n".join(_step_line(s) for s in steps[-HISTORY_WINDOW:])
        return (
            f"GOAL: {self.goal_description}\n\n"
            f"PROGRESS SO FAR:\n{recent or 'Just started'}\n\n"
            f"CURRENT STEP: {state.step_count + 1}\n\n"
            "Looking at the current screenshot, determine:\n"
            '1. Have we achieved the goal? If yes, respond with action type "none" and high confidence\n'
            "2. If not, what's the next action to take?\n"
            "3. Are we stuck or going in circles? If so, suggest a recovery action\n\n"
            "Remember: Base your decision on what you ACTUALLY SEE in the screenshot."
        )


class ExplorationPolicy:
    """Prompt context for autonomous exploration."""

    mode = Mode.EXPLORE

    FOCUS_PROMPTS = {
        IssueType.VISUAL: "Focus on visual bugs: overlapping elements, cut-off text, wrong colors, misaligned items.",
        IssueType.ACCESSIBILITY: "Focus on accessibility: contrast issues, small touch targets, missing labels.",
        IssueType.FUNCTIONAL: "Focus on functional issues: broken buttons, non-working inputs, navigation problems.",
        IssueType.PERFORMANCE: "Focus on performance: loading delays, janky animations, unresponsive UI.",
    }

    def __init__(self, exploration_focus: str = "", avoid_patterns: tuple[str, ...] = ()):
        self.exploration_focus = exploration_focus
        self.avoid_patterns = avoid_patterns

    @classmethod
    def for_issue_type(cls, kind, avoid_patterns: tuple[str, ...] = ()) -> "ExplorationPolicy":
        return cls(cls.focus_for(kind), avoid_patterns)

    @classmethod
    def focus_for(cls, kind) -> str:
        return cls.FOCUS_PROMPTS[IssueType(kind)]

    def context_prompt(self, state: SessionState, steps: list[StepRecord]) -> str:
        visited = ", ".join(sorted(state.visited_labels)) or "none yet"
        explored = ", ".join(sorted(state.explored_targets)) or "none yet"
        avoid = ", ".join(self.avoid_patterns) or "nothing"
        lines = ["MODE: Autonomous exploration of the app under test."]
        if self.exploration_focus:
            lines.append(f"FOCUS: {self.exploration_focus}")
        lines += [
            "",
            f"ALREADY VISITED SCREENS: {visited}",
            f"ALREADY EXPLORED ELEMENTS: {explored}",
            f"NEVER INTERACT WITH: {avoid}",
            "",
            "Pick the next unexplored interactive element (tabs and buttons first).",
            "If this screen is fully explored, go back. Report any issues you see.",
            'When there is nothing left to explore, respond with action type "none".',
        ]
        return "\n".join(lines)


def policy_for(config: LoopConfig):
    if config.mode == Mode.GOAL:
        return GoalPolicy(config.goal_description)
    return ExplorationPolicy(config.exploration_focus, tuple(config.avoid_patterns))


# ---------------------------------------------------------------------------
# Result assembly
# ---------------------------------------------------------------------------

def coverage_score(state: SessionState) -> int:
    """0-100 exploration coverage: screens, elements, issue detection, depth."""
    score = min(len(state.visited_labels) / 10, 1) * 40
    score += min(len(state.elements_seen) / 50, 1) * 30
    score += 20 if state.issues else 10
    score += min(len(state.explored_targets) / 10, 1) * 10
    return round(score)


def is_success(mode: Mode, reason: TerminationReason) -> bool:
    if mode == Mode.GOAL:
        return reason == TerminationReason.GOAL_ACHIEVED
    return reason in _EXPLORE_SUCCESS


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class LoopController:
    """Runs exactly one session per run() call."""

    def __init__(
        self,
        perception: PerceptionAdapter,
        parser: DecisionParser,
        executor: ActionExecutor,
        config: LoopConfig,
        session_id: str | None = None,
        sleep=time.sleep,
    ):
        self.perception = perception
        self.parser = parser
        self.executor = executor
        self.config = config
        self.session_id = session_id
        self.policy = policy_for(config)
        self._sleep = sleep

    def run(self) -> SessionResult:
        config = self.config
        budgets = Budgets(max_steps=config.max_steps, max_screens=config.max_screens)
        tracker = StateTracker(SessionState())
        conversation = self.parser.new_conversation()
        steps: list[StepRecord] = []
        log_state = session_log.create_session(
            mode=config.mode.value,
            objective=config.objective,
            max_steps=config.max_steps,
            max_screens=config.max_screens,
            session_id=self.session_id,
        )
        session_id = log_state["session_id"]
        started = time.monotonic()

        _log(f"Session {session_id} ({config.mode.value}): {config.objective or 'no focus'}")
        _log(f"Budgets: {budgets.max_steps} steps, {budgets.max_screens} screens")

        phase = SessionPhase.PERCEIVE
        image = None
        decision: ActionDecision | None = None
        reason: TerminationReason | None = None
        step_started = started

        while phase != SessionPhase.DONE:
            if phase == SessionPhase.PERCEIVE:
                step_started = time.monotonic()
                label = f"{session_id}_step_{tracker.state.step_count + 1:02d}"
                try:
                    image = self.perception.capture(label)
                except PerceptionError as exc:
                    _log(f"Perception failed: {exc}")
                    exc.result = self._finish_with_error(
                        tracker.state, steps, log_state, started, str(exc)
                    )
                    raise
                phase = SessionPhase.DECIDE

            elif phase == SessionPhase.DECIDE:
                tracker.state.step_count += 1
                step = tracker.state.step_count
                _log(f"--- Step {step}/{budgets.max_steps} ---")
                prompt = self.policy.context_prompt(tracker.state, steps)
                decision = self.parser.decide(image, prompt, conversation)
                session_log.increment_metric(log_state, "model_calls")
                if decision.is_fallback:
                    session_log.increment_metric(log_state, "parse_fallbacks")
                _log(
                    f"State: {decision.state_label} | Action: {decision.action.type.value} "
                    f"-> '{decision.action.target}' | Confidence: {decision.confidence.value}"
                )
                if decision.concerns:
                    _log(f"Concerns: {decision.concerns}")
                session_log.append_event(
                    session_id,
                    {"type": "step_decided", "step": step, "decision": decision_to_dict(decision)},
                )
                phase = SessionPhase.CHECK_TERMINATION

            elif phase == SessionPhase.CHECK_TERMINATION:
                if tracker.record_visit(decision.state_label):
                    _log(f"New screen: {decision.state_label}")
                tracker.append_issues(decision.issues)
                for issue in decision.issues:
                    _log(f"Issue [{issue.severity.value}] {issue.description}")
                tracker.record_elements([e.identifier for e in decision.candidate_elements])
                tracker.record_action_proposal(decision.action.type)

                done, reason = tracker.should_terminate(config.mode, decision, budgets)
                if done:
                    steps.append(self._terminal_record(tracker.state, decision, step_started))
                elif tracker.state.step_count >= budgets.max_steps:
                    # Budget spent: act once more, then stop.
                    reason = TerminationReason.MAX_STEPS
                phase = SessionPhase.DONE if done else SessionPhase.ACT

            elif phase == SessionPhase.ACT:
                record = self._act(tracker, decision, log_state, step_started)
                steps.append(record)
                session_log.append_history(log_state, asdict(record))
                if reason == TerminationReason.MAX_STEPS:
                    _log("Max steps reached")
                    phase = SessionPhase.DONE
                else:
                    self._sleep(config.settle_seconds)
                    phase = SessionPhase.PERCEIVE

        return self._finish(tracker.state, steps, log_state, started, reason)

    # -- steps -------------------------------------------------------------

    def _act(self, tracker: StateTracker, decision: ActionDecision, log_state: dict, step_started: float) -> StepRecord:
        action = decision.action
        outcome = self.executor.execute(action)
        if outcome.blocked:
            session_log.increment_metric(log_state, "policy_blocks")
        elif not outcome.success:
            session_log.increment_metric(log_state, "action_failures")
        if outcome.success and action.type != ActionType.NONE:
            tracker.record_exploration(action.target)

        record = StepRecord(
            step=tracker.state.step_count,
            state_label=decision.state_label,
            action_type=action.type.value,
            target=action.target,
            executed=not outcome.blocked,
            success=outcome.success,
            error=outcome.error,
            resolved_via=outcome.resolved_via,
            duration_ms=int((time.monotonic() - step_started) * 1000),
        )
        session_log.append_event(log_state["session_id"], {"type": "action_executed", **asdict(record)})
        return record

    def _terminal_record(self, state: SessionState, decision: ActionDecision, step_started: float) -> StepRecord:
        return StepRecord(
            step=state.step_count,
            state_label=decision.state_label,
            action_type=decision.action.type.value,
            target=decision.action.target,
            executed=False,
            success=True,
            duration_ms=int((time.monotonic() - step_started) * 1000),
        )

    # -- results -----------------------------------------------------------

    def _result(
        self,
        state: SessionState,
        steps: list[StepRecord],
        session_id: str,
        started: float,
        reason: TerminationReason,
        error: str | None = None,
    ) -> SessionResult:
        mode = self.config.mode
        return SessionResult(
            session_id=session_id,
            mode=mode,
            success=error is None and is_success(mode, reason),
            termination_reason=reason,
            objective=self.config.objective,
            visited_labels=sorted(state.visited_labels),
            explored_targets=sorted(state.explored_targets),
            issues=list(state.issues),
            step_count=state.step_count,
            final_state=state.current_label,
            steps=list(steps),
            navigation_map={k: list(v) for k, v in state.navigation_map.items()},
            elements_found=len(state.elements_seen),
            coverage_score=coverage_score(state) if mode == Mode.EXPLORE else None,
            duration_seconds=round(time.monotonic() - started, 3),
            error=error,
        )

    def _finish(
        self,
        state: SessionState,
        steps: list[StepRecord],
        log_state: dict,
        started: float,
        reason: TerminationReason,
    ) -> SessionResult:
        result = self._result(state, steps, log_state["session_id"], started, reason)
        status = "completed" if result.success else "failed"
        session_log.finalize_session(log_state, status, reason.value, state.step_count)
        session_log.write_report(result.session_id, report.build_report(result))
        _log(
            f"Session finished: {reason.value} after {state.step_count} steps "
            f"({len(state.visited_labels)} screens, {len(state.issues)} issues)"
        )
        return result

    def _finish_with_error(
        self,
        state: SessionState,
        steps: list[StepRecord],
        log_state: dict,
        started: float,
        error: str,
    ) -> SessionResult:
        reason = TerminationReason.PERCEPTION_FAILURE
        result = self._result(state, steps, log_state["session_id"], started, reason, error=error)
        session_log.finalize_session(log_state, "error", reason.value, state.step_count)
        session_log.write_report(result.session_id, report.build_report(result))
        return result


# ---------------------------------------------------------------------------
# Convenience entry points
# ---------------------------------------------------------------------------

def model_locator(perception: PerceptionAdapter, parser: DecisionParser, driver):
    """Executor hook: capture the screen and ask the model where a described target is."""

    def locate(target: str):
        image = perception.capture("locate")
        found = parser.locate_element(image, target, screen_size=driver.screen_size())
        if found is None or found.confidence == Confidence.LOW:
            return None
        return found.coordinates

    return locate


def build_controller(
    config: LoopConfig,
    udid: str,
    bundle_id: str | None = None,
    model_config: ModelConfig | None = None,
    artifacts_dir: str = "_artifacts/",
    launch_wait_seconds: float = 3.0,
    session_id: str | None = None,
) -> LoopController:
    """Wire the real simulator, idb driver and Anthropic client into a controller."""
    from vision_pilot.idb_driver import IdbDriver
    from vision_pilot.model_client import AnthropicReasoningClient
    from vision_pilot.screenshot import SimulatorCamera

    model_config = model_config or ModelConfig.from_env()
    driver = IdbDriver(udid)
    driver.connect()
    if bundle_id:
        driver.launch_app(bundle_id)
        time.sleep(launch_wait_seconds)

    perception = PerceptionAdapter(
        SimulatorCamera(udid),
        save_dir=artifacts_dir if config.save_screenshots else None,
    )
    parser = DecisionParser(
        AnthropicReasoningClient(model_config),
        custom_system_prompt=model_config.custom_system_prompt,
    )
    policy = ActionPolicy(avoid_patterns=tuple(config.avoid_patterns), max_wait_ms=config.max_wait_ms)
    executor = ActionExecutor(driver, policy=policy, locate=model_locator(perception, parser, driver))
    return LoopController(perception, parser, executor, config, session_id=session_id)


def run_goal(
    goal: str,
    udid: str,
    bundle_id: str | None = None,
    max_steps: int = 20,
    **kwargs,
) -> SessionResult:
    """Drive the app until the model confirms the goal is visible, or budgets run out."""
    config = LoopConfig(mode=Mode.GOAL, goal_description=goal, max_steps=max_steps)
    return build_controller(config, udid, bundle_id, **kwargs).run()


def explore(
    udid: str,
    focus: str = "",
    issue_type: str | None = None,
    bundle_id: str | None = None,
    max_steps: int = 20,
    max_screens: int = 15,
    **kwargs,
) -> SessionResult:
    """Explore the app autonomously, optionally hunting one kind of issue."""
    if issue_type:
        focus = ExplorationPolicy.focus_for(issue_type)
    config = LoopConfig(
        mode=Mode.EXPLORE,
        exploration_focus=focus,
        max_steps=max_steps,
        max_screens=max_screens,
    )
    return build_controller(config, udid, bundle_id, **kwargs).run()
