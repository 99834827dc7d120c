import json

import pytest
from PIL import Image

import mcp_server
from vision_pilot import session_log
from vision_pilot.models import Mode, SessionResult, TerminationReason
from vision_pilot.perception import PerceptionError


def _result(**overrides) -> SessionResult:
    fields = dict(
        session_id="session_mcp",
        mode=Mode.GOAL,
        success=True,
        termination_reason=TerminationReason.GOAL_ACHIEVED,
        objective="Open settings",
        visited_labels=["home", "settings"],
        explored_targets=["settings-tab"],
        issues=[],
        step_count=2,
        final_state="settings",
    )
    fields.update(overrides)
    return SessionResult(**fields)


def test_pilot_run_goal_returns_session_result(monkeypatch):
    calls = {}

    def fake_run_goal(goal, udid, bundle_id=None, max_steps=20):
        calls.update(goal=goal, udid=udid, bundle_id=bundle_id, max_steps=max_steps)
        return _result()

    monkeypatch.setattr(mcp_server, "_ensure_simulator", lambda: "SIM-1")
    monkeypatch.setattr(mcp_server.loop, "run_goal", fake_run_goal)

    payload = json.loads(mcp_server.pilot_run_goal("Open settings", max_steps=7))

    assert calls == {"goal": "Open settings", "udid": "SIM-1", "bundle_id": "com.apple.mobilesafari", "max_steps": 7}
    assert payload["success"] is True
    assert payload["termination_reason"] == "goal-achieved"
    assert payload["summary"]["total_steps"] == 0


def test_pilot_explore_reports_perception_failure(monkeypatch):
    def failing_explore(**kwargs):
        assert kwargs["issue_type"] == "visual"
        raise PerceptionError(
            "screenshot capture failed",
            result=_result(
                mode=Mode.EXPLORE,
                success=False,
                termination_reason=TerminationReason.PERCEPTION_FAILURE,
                error="screenshot capture failed",
            ),
        )

    monkeypatch.setattr(mcp_server, "_ensure_simulator", lambda: "SIM-1")
    monkeypatch.setattr(mcp_server.loop, "explore", failing_explore)

    payload = json.loads(mcp_server.pilot_explore(issue_type="visual"))

    assert payload["error"] == "screenshot capture failed"
    assert payload["result"]["termination_reason"] == "perception-failure"


def test_pilot_sessions_and_reports(tmp_path, monkeypatch):
    monkeypatch.setattr(session_log, "_SESSIONS_ROOT", tmp_path)

    assert json.loads(mcp_server.pilot_session_report())["error"] == "no sessions recorded"

    state = session_log.create_session("goal", "Open settings", 5, 15, session_id="session_one")
    session_log.finalize_session(state, "completed", "goal-achieved", 2)

    listed = json.loads(mcp_server.pilot_list_sessions())
    assert listed[0]["session_id"] == "session_one"

    assert "no report" in json.loads(mcp_server.pilot_session_report("session_one"))["error"]
    session_log.write_report("session_one", {"session_id": "session_one", "summary": {"success": True}})
    assert json.loads(mcp_server.pilot_session_report())["summary"]["success"] is True

    replay = json.loads(mcp_server.pilot_replay_session("session_one"))
    assert replay["state"]["status"] == "completed"


def test_pilot_runtime_health(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    monkeypatch.setattr(mcp_server.idb_driver, "_find_idb", lambda: None)

    payload = json.loads(mcp_server.pilot_runtime_health())

    assert payload["anthropic_key_set"] is True
    assert payload["idb"] is None
    assert "model" in payload


def test_pilot_compare_screens_reads_both_files(tmp_path, monkeypatch):
    baseline = tmp_path / "baseline.png"
    current = tmp_path / "current.png"
    Image.new("RGB", (20, 40), color=(255, 255, 255)).save(baseline)
    Image.new("RGB", (20, 40), color=(0, 0, 0)).save(current)
    requests = []

    class _FakeClient:
        def __init__(self, config):
            pass

        def complete(self, system_prompt, history, image, user_text):
            requests.append((image, user_text))
            return json.dumps(
                {"identical": False, "differences": ["Background turned black"], "regressions": [], "improvements": []}
            )

    monkeypatch.setattr(mcp_server, "AnthropicReasoningClient", _FakeClient)
    monkeypatch.setattr(mcp_server, "_ensure_simulator", lambda: pytest.fail("simulator should not be needed"))

    payload = json.loads(mcp_server.pilot_compare_screens(str(baseline), str(current), context="dark mode"))

    assert payload == {
        "identical": False,
        "differences": ["Background turned black"],
        "regressions": [],
        "improvements": [],
    }
    images, prompt = requests[0]
    assert len(images) == 2
    assert "Context: dark mode" in prompt


def test_pilot_compare_screens_missing_baseline(tmp_path):
    payload = json.loads(mcp_server.pilot_compare_screens(str(tmp_path / "missing.png"), str(tmp_path / "x.png")))
    assert "screenshot capture failed" in payload["error"]
