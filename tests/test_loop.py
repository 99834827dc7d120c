import io
import json

import pytest
from PIL import Image

from vision_pilot import loop, session_log
from vision_pilot.config import LoopConfig
from vision_pilot.decision import ElementLocation
from vision_pilot.executor import ExecutionOutcome
from vision_pilot.loop import ExplorationPolicy, GoalPolicy, LoopController
from vision_pilot.model_client import Conversation
from vision_pilot.models import (
    ActionDecision,
    ActionSpec,
    ActionType,
    Confidence,
    Coordinates,
    ElementRef,
    EncodedImage,
    Issue,
    IssueType,
    Mode,
    SessionState,
    Severity,
    TerminationReason,
)
from vision_pilot.perception import PerceptionAdapter, PerceptionError


@pytest.fixture(autouse=True)
def _sessions_root(tmp_path, monkeypatch):
    monkeypatch.setattr(session_log, "_SESSIONS_ROOT", tmp_path / "sessions")


def _decision(action_type, target="", label="home", confidence=Confidence.MEDIUM, value=None, **kwargs):
    return ActionDecision(
        observation=f"{label} screen",
        state_label=label,
        action=ActionSpec(type=action_type, target=target, value=value),
        confidence=confidence,
        **kwargs,
    )


class _ScriptedParser:
    """Replays a fixed list of decisions; repeats the last one when exhausted."""

    def __init__(self, decisions):
        self.decisions = list(decisions)
        self.prompts = []
        self.conversations = []

    def new_conversation(self):
        conversation = Conversation()
        self.conversations.append(conversation)
        return conversation

    def decide(self, image, context_prompt, conversation):
        self.prompts.append(context_prompt)
        if len(self.decisions) > 1:
            return self.decisions.pop(0)
        return self.decisions[0]


class _FakePerception:
    def __init__(self, fail_on=None):
        self.captures = 0
        self.fail_on = fail_on

    def capture(self, label="frame"):
        self.captures += 1
        if self.fail_on is not None and self.captures >= self.fail_on:
            raise PerceptionError("simctl screenshot failed: device not booted")
        return EncodedImage(data="aW1n")


class _RecordingExecutor:
    def __init__(self, fail_targets=()):
        self.executed = []
        self.fail_targets = set(fail_targets)

    def execute(self, action):
        self.executed.append(action)
        if action.target in self.fail_targets:
            return ExecutionOutcome(success=False, error="not found")
        return ExecutionOutcome(success=True, resolved_via="identifier")


def _run(decisions, config, executor=None, perception=None):
    parser = _ScriptedParser(decisions)
    executor = executor or _RecordingExecutor()
    controller = LoopController(
        perception or _FakePerception(),
        parser,
        executor,
        config,
        session_id="session_test",
        sleep=lambda _: None,
    )
    return controller.run(), parser, executor


def test_goal_scenario_login_flow_succeeds_in_five_steps():
    decisions = [
        _decision(ActionType.TAP, "login", label="welcome"),
        _decision(ActionType.TYPE, "email", label="login", value="demo@example.com"),
        _decision(ActionType.TYPE, "password", label="login", value="hunter2"),
        _decision(ActionType.TAP, "submit", label="login"),
        _decision(ActionType.NONE, label="home", confidence=Confidence.HIGH),
    ]
    config = LoopConfig(mode=Mode.GOAL, goal_description="Log in", settle_seconds=0)

    result, _, executor = _run(decisions, config)

    assert result.success is True
    assert result.step_count == 5
    assert result.termination_reason == TerminationReason.GOAL_ACHIEVED
    assert result.final_state == "home"
    assert [a.target for a in executor.executed] == ["login", "email", "password", "submit"]
    assert result.explored_targets == ["email", "login", "password", "submit"]
    assert result.coverage_score is None


def test_goal_mode_medium_confidence_none_keeps_going_until_budget():
    config = LoopConfig(mode=Mode.GOAL, goal_description="Find the receipt", max_steps=4, settle_seconds=0)
    result, _, _ = _run([_decision(ActionType.NONE, confidence=Confidence.MEDIUM)], config)

    assert result.success is False
    assert result.step_count == 4
    assert result.termination_reason == TerminationReason.MAX_STEPS


def test_goal_confirmed_on_last_step_is_success():
    decisions = [
        _decision(ActionType.TAP, "next-button"),
        _decision(ActionType.NONE, confidence=Confidence.HIGH),
    ]
    config = LoopConfig(mode=Mode.GOAL, goal_description="Finish onboarding", max_steps=2, settle_seconds=0)
    result, _, _ = _run(decisions, config)
    assert result.termination_reason == TerminationReason.GOAL_ACHIEVED
    assert result.step_count == 2


def test_explore_without_completion_stops_at_max_steps():
    decisions = [_decision(ActionType.SCROLL, "feed", label="feed", value="down")]
    config = LoopConfig(mode=Mode.EXPLORE, max_steps=5, settle_seconds=0)

    result, _, executor = _run(decisions, config)

    assert result.step_count == 5
    assert result.termination_reason == TerminationReason.MAX_STEPS
    assert result.success is True
    assert len(executor.executed) == 5
    assert result.coverage_score is not None


def test_three_backs_without_new_screen_is_a_navigation_loop():
    decisions = [_decision(ActionType.BACK, label="details")]
    config = LoopConfig(mode=Mode.EXPLORE, max_steps=20, settle_seconds=0)

    result, _, executor = _run(decisions, config)

    assert result.termination_reason == TerminationReason.NAVIGATION_LOOP
    assert result.step_count == 3
    assert result.success is False
    assert len(executor.executed) == 2


def test_backs_reaching_new_screens_are_not_a_loop():
    decisions = [
        _decision(ActionType.BACK, label="a"),
        _decision(ActionType.BACK, label="b"),
        _decision(ActionType.BACK, label="c"),
        _decision(ActionType.BACK, label="d"),
        _decision(ActionType.NONE, label="d"),
    ]
    config = LoopConfig(mode=Mode.EXPLORE, max_steps=20, max_screens=10, settle_seconds=0)
    result, _, _ = _run(decisions, config)
    assert result.termination_reason == TerminationReason.EXPLORATION_COMPLETE
    assert result.step_count == 5


def test_screen_budget_is_never_exceeded():
    decisions = [_decision(ActionType.TAP, f"tab-{i}", label=f"screen_{i}") for i in range(10)]
    config = LoopConfig(mode=Mode.EXPLORE, max_steps=20, max_screens=3, settle_seconds=0)

    result, _, _ = _run(decisions, config)

    assert result.termination_reason == TerminationReason.MAX_SCREENS
    assert len(result.visited_labels) == 3
    assert result.step_count == 3


def test_step_budget_holds_for_every_budget():
    for max_steps in (1, 2, 7):
        config = LoopConfig(mode=Mode.EXPLORE, max_steps=max_steps, max_screens=50, settle_seconds=0)
        result, _, _ = _run([_decision(ActionType.WAIT, value="10")], config)
        assert result.step_count == max_steps


def test_fallback_decisions_do_not_end_exploration():
    fallback = _decision(ActionType.NONE, label="unknown", confidence=Confidence.LOW, is_fallback=True)
    config = LoopConfig(mode=Mode.EXPLORE, max_steps=3, settle_seconds=0)

    result, _, _ = _run([fallback], config)

    assert result.termination_reason == TerminationReason.MAX_STEPS
    assert result.visited_labels == []


def test_only_successful_actions_count_as_explored():
    decisions = [
        _decision(ActionType.TAP, "profile-tab", label="home"),
        _decision(ActionType.TAP, "missing-button", label="profile"),
        _decision(ActionType.NONE, label="profile"),
    ]
    config = LoopConfig(mode=Mode.EXPLORE, max_steps=10, settle_seconds=0)
    executor = _RecordingExecutor(fail_targets={"missing-button"})

    result, _, _ = _run(decisions, config, executor=executor)

    assert result.explored_targets == ["profile-tab"]
    assert result.summary()["failed_steps"] == 1


def test_bookkeeping_is_deterministic():
    def decisions():
        issue = Issue(screen="cart", type=IssueType.VISUAL, severity=Severity.MEDIUM, description="Price cut off")
        return [
            _decision(ActionType.TAP, "cart-tab", label="home",
                      candidate_elements=[ElementRef(type="tab", identifier="cart-tab")]),
            _decision(ActionType.TAP, "checkout", label="cart", issues=[issue]),
            _decision(ActionType.TAP, "checkout", label="cart", issues=[issue]),
            _decision(ActionType.NONE, label="checkout"),
        ]

    config = LoopConfig(mode=Mode.EXPLORE, max_steps=10, settle_seconds=0)
    first, _, _ = _run(decisions(), config)
    second, _, _ = _run(decisions(), config)

    for result in (first, second):
        assert result.visited_labels == ["cart", "checkout", "home"]
        assert result.explored_targets == ["cart-tab", "checkout"]
        assert len(result.issues) == 2
        assert result.navigation_map == {"home": ["cart"], "cart": ["checkout"]}
    assert first.coverage_score == second.coverage_score


def test_perception_failure_propagates_with_error_result():
    config = LoopConfig(mode=Mode.GOAL, goal_description="Open settings", settle_seconds=0)
    decisions = [_decision(ActionType.TAP, "settings-tab")]

    with pytest.raises(PerceptionError) as excinfo:
        _run(decisions, config, perception=_FakePerception(fail_on=3))

    result = excinfo.value.result
    assert result is not None
    assert result.termination_reason == TerminationReason.PERCEPTION_FAILURE
    assert result.success is False
    assert result.step_count == 2
    assert "device not booted" in result.error

    state = session_log.load_state("session_test")
    assert state["status"] == "error"
    assert state["termination_reason"] == "perception-failure"


def _png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 8)).save(buf, format="PNG")
    return buf.getvalue()


def test_unwritable_screenshot_dir_still_yields_one_result(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    perception = PerceptionAdapter(_png_bytes, save_dir=str(blocker / "shots"))
    config = LoopConfig(mode=Mode.GOAL, goal_description="Open settings", settle_seconds=0)
    decisions = [_decision(ActionType.NONE, label="settings", confidence=Confidence.HIGH)]

    result, _, _ = _run(decisions, config, perception=perception)

    assert result.termination_reason == TerminationReason.GOAL_ACHIEVED
    assert session_log.load_state("session_test")["status"] == "completed"


def test_each_run_gets_a_fresh_conversation_and_state():
    config = LoopConfig(mode=Mode.EXPLORE, max_steps=2, settle_seconds=0)
    parser = _ScriptedParser([_decision(ActionType.TAP, "a-button", label="a")])
    controller = LoopController(
        _FakePerception(), parser, _RecordingExecutor(), config, sleep=lambda _: None
    )

    first = controller.run()
    second = controller.run()

    assert len(parser.conversations) == 2
    assert parser.conversations[0] is not parser.conversations[1]
    assert first.step_count == second.step_count == 2
    assert first.session_id != second.session_id


def test_session_telemetry_and_report_written():
    decisions = [
        _decision(ActionType.TAP, "login", label="welcome"),
        _decision(ActionType.NONE, label="home", confidence=Confidence.HIGH),
    ]
    config = LoopConfig(mode=Mode.GOAL, goal_description="Log in", settle_seconds=0)
    _run(decisions, config)

    replay = session_log.replay_session("session_test")
    state = replay["state"]
    assert state["status"] == "completed"
    assert state["termination_reason"] == "goal-achieved"
    assert state["metrics"]["model_calls"] == 2
    assert len(state["history"]) == 1

    types = [event["type"] for event in replay["events"]]
    assert types.count("step_decided") == 2
    assert types.count("action_executed") == 1
    assert types[-1] == "session_finished"

    stored = session_log.load_report("session_test")
    assert stored["summary"]["success"] is True
    assert json.dumps(stored)


def test_settle_delay_after_each_action():
    sleeps = []
    config = LoopConfig(mode=Mode.EXPLORE, max_steps=3, settle_seconds=0.25)
    controller = LoopController(
        _FakePerception(),
        _ScriptedParser([_decision(ActionType.WAIT, value="1")]),
        _RecordingExecutor(),
        config,
        sleep=sleeps.append,
    )
    controller.run()
    # No settle after the final, budget-ending action.
    assert sleeps == [0.25, 0.25]


def test_goal_prompt_includes_recent_steps():
    decisions = [_decision(ActionType.TAP, f"item-{i}") for i in range(7)]
    config = LoopConfig(mode=Mode.GOAL, goal_description="Buy socks", max_steps=7, settle_seconds=0)
    _, parser, _ = _run(decisions, config)

    assert parser.prompts[0].startswith("GOAL: Buy socks")
    assert "Just started" in parser.prompts[0]
    last = parser.prompts[-1]
    assert "item-5" in last
    assert "item-0" not in last


def test_exploration_prompt_lists_visited_and_avoided():
    policy = ExplorationPolicy("Settings", ("logout",))
    state = SessionState(visited_labels={"home", "settings"}, explored_targets={"profile-tab"})
    prompt = policy.context_prompt(state, [])
    assert "FOCUS: Settings" in prompt
    assert "home, settings" in prompt
    assert "profile-tab" in prompt
    assert "logout" in prompt


def test_issue_focus_prompts():
    policy = ExplorationPolicy.for_issue_type("accessibility")
    assert policy.exploration_focus.startswith("Focus on accessibility")
    with pytest.raises(ValueError):
        ExplorationPolicy.for_issue_type("security")


def test_policy_for_mode():
    assert isinstance(loop.policy_for(LoopConfig(mode="goal", goal_description="x")), GoalPolicy)
    assert isinstance(loop.policy_for(LoopConfig(mode="explore")), ExplorationPolicy)


def test_coverage_score_formula():
    state = SessionState(
        visited_labels={f"s{i}" for i in range(5)},
        explored_targets={f"t{i}" for i in range(20)},
        elements_seen={f"e{i}" for i in range(25)},
    )
    # 20 (screens) + 15 (elements) + 10 (no issues) + 10 (depth)
    assert loop.coverage_score(state) == 55


def test_model_locator_uses_screen_points_and_skips_low_confidence():
    class _LocatingParser:
        def __init__(self, results):
            self.results = list(results)
            self.calls = []

        def locate_element(self, image, description, screen_size=None):
            self.calls.append((description, screen_size))
            return self.results.pop(0)

    class _Driver:
        def screen_size(self):
            return (402, 874)

    parser = _LocatingParser(
        [
            ElementLocation(Coordinates(200, 700), Confidence.MEDIUM),
            ElementLocation(Coordinates(10, 10), Confidence.LOW),
            None,
        ]
    )
    perception = _FakePerception()
    locate = loop.model_locator(perception, parser, _Driver())

    assert locate("the Pay button") == Coordinates(200, 700)
    assert locate("the faint link") is None
    assert locate("a missing thing") is None
    assert parser.calls[0] == ("the Pay button", (402, 874))
    assert perception.captures == 3
