#!/usr/bin/env python3
"""MCP server wrapper for vision-pilot.

Exposes goal runs, exploration and one-shot visual checks as tools callable
over the Model Context Protocol (stdio transport).

Sample MCP client config:

    {
      "mcpServers": {
        "vision-pilot": {
          "command": "/path/to/vision-pilot/.venv/bin/python",
          "args": ["/path/to/vision-pilot/mcp_server.py"],
          "cwd": "/path/to/vision-pilot"
        }
      }
    }

Run standalone:  python mcp_server.py
"""

import json
import os
import shutil
import sys
import time

# Ensure project root is on sys.path so vision_pilot imports work
_PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

load_dotenv(os.path.join(_PROJECT_ROOT, ".env"))

from vision_pilot import idb_driver, loop, screenshot, session_log, simulator
from vision_pilot.config import ModelConfig
from vision_pilot.decision import DecisionParser
from vision_pilot.model_client import AnthropicReasoningClient
from vision_pilot.perception import PerceptionAdapter, PerceptionError

# ---------------------------------------------------------------------------
# Lazy simulator connection
# ---------------------------------------------------------------------------

_udid: str | None = None


def _ensure_simulator() -> str:
    """Boot and connect to the simulator on first call. Returns UDID."""
    global _udid
    if _udid is not None:
        return _udid

    udid = simulator.ensure_booted()
    if not udid:
        raise RuntimeError("Could not boot any iOS simulator")

    time.sleep(2)
    idb_driver.IdbDriver(udid).connect()
    _udid = udid
    return _udid


def _session_payload(run) -> str:
    """Run a session callable; a perception failure becomes an error payload."""
    try:
        result = run()
    except PerceptionError as exc:
        payload = {"error": str(exc)}
        if exc.result is not None:
            payload["result"] = exc.result.to_dict()
        return json.dumps(payload, indent=2)
    return json.dumps(result.to_dict(), indent=2)


# ---------------------------------------------------------------------------
# MCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "vision-pilot",
    instructions="Vision-guided simulator automation: run goals, explore apps, verify what is on screen",
)


@mcp.tool()
def pilot_run_goal(
    goal: str,
    bundle_id: str = "com.apple.mobilesafari",
    max_steps: int = 20,
) -> str:
    """Drive the app toward a plain-English goal using screenshots only.

    Each step captures the screen, asks the vision model for the next action,
    and executes it, until the model confirms the goal or the budget runs out.

    Args:
        goal: What to accomplish, e.g. "Log in and open the Profile tab".
        bundle_id: App bundle ID to launch (default: Safari).
        max_steps: Step budget (default: 20).

    Returns:
        JSON session result: success, termination_reason, steps, issues.
    """
    udid = _ensure_simulator()
    return _session_payload(
        lambda: loop.run_goal(goal, udid=udid, bundle_id=bundle_id, max_steps=max_steps)
    )


@mcp.tool()
def pilot_explore(
    focus: str = "",
    issue_type: str = "",
    bundle_id: str = "com.apple.mobilesafari",
    max_steps: int = 20,
    max_screens: int = 15,
) -> str:
    """Explore the app autonomously and report screens, navigation and issues.

    Args:
        focus: Optional free-text focus for the exploration.
        issue_type: Hunt one kind of issue instead: visual, functional,
            accessibility or performance.
        bundle_id: App bundle ID to launch (default: Safari).
        max_steps: Step budget (default: 20).
        max_screens: Distinct-screen budget (default: 15).

    Returns:
        JSON session result including coverage_score and navigation_map.
    """
    udid = _ensure_simulator()
    return _session_payload(
        lambda: loop.explore(
            udid=udid,
            focus=focus,
            issue_type=issue_type or None,
            bundle_id=bundle_id,
            max_steps=max_steps,
            max_screens=max_screens,
        )
    )


@mcp.tool()
def pilot_verify_condition(condition: str) -> str:
    """Ask the vision model whether a condition holds on the current screen.

    Args:
        condition: e.g. "An error banner saying 'Invalid password' is visible".

    Returns:
        JSON with satisfied, observation and confidence.
    """
    udid = _ensure_simulator()
    image = PerceptionAdapter(screenshot.SimulatorCamera(udid)).capture("verify")
    parser = DecisionParser(AnthropicReasoningClient(ModelConfig.from_env()))
    check = parser.verify_condition(image, condition)
    return json.dumps(
        {
            "condition": condition,
            "satisfied": check.satisfied,
            "observation": check.observation,
            "confidence": check.confidence.value,
        },
        indent=2,
    )


def _file_source(path: str):
    def read() -> bytes:
        with open(path, "rb") as f:
            return f.read()

    return read


@mcp.tool()
def pilot_compare_screens(baseline_path: str, current_path: str = "", context: str = "") -> str:
    """Ask the vision model how the current screen differs from a baseline.

    Args:
        baseline_path: PNG of the expected state (e.g. from pilot_screenshot).
        current_path: PNG of the actual state. Empty = capture the simulator now.
        context: Optional note for the model, e.g. "after enabling dark mode".

    Returns:
        JSON with identical, differences, regressions and improvements.
    """
    try:
        baseline = PerceptionAdapter(_file_source(baseline_path)).capture("baseline")
        if current_path:
            current = PerceptionAdapter(_file_source(current_path)).capture("current")
        else:
            current = PerceptionAdapter(screenshot.SimulatorCamera(_ensure_simulator())).capture("current")
    except PerceptionError as exc:
        return json.dumps({"error": str(exc)}, indent=2)

    parser = DecisionParser(AnthropicReasoningClient(ModelConfig.from_env()))
    comparison = parser.compare_screens(baseline, current, context=context)
    return json.dumps(comparison.to_dict(), indent=2)


@mcp.tool()
def pilot_screenshot() -> str:
    """Capture a screenshot of the current simulator screen.

    Returns:
        Path to the saved PNG screenshot file.
    """
    udid = _ensure_simulator()
    image = PerceptionAdapter(screenshot.SimulatorCamera(udid), save_dir="_artifacts/").capture("manual")
    return image.path


@mcp.tool()
def pilot_list_sessions(limit: int = 20) -> str:
    """List recent persisted sessions, newest first."""
    return json.dumps(session_log.list_sessions(limit=limit), indent=2)


@mcp.tool()
def pilot_replay_session(session_id: str) -> str:
    """Replay stored state and events for a session."""
    return json.dumps(session_log.replay_session(session_id), indent=2)


@mcp.tool()
def pilot_session_report(session_id: str = "") -> str:
    """Return the JSON report of a session (default: the latest one)."""
    resolved = session_id or session_log.latest_session_id()
    if not resolved:
        return json.dumps({"error": "no sessions recorded"}, indent=2)
    stored = session_log.load_report(resolved)
    if stored is None:
        return json.dumps({"error": f"no report for session '{resolved}'"}, indent=2)
    return json.dumps(stored, indent=2)


@mcp.tool()
def pilot_runtime_health() -> str:
    """Report whether the tools a session needs are available."""
    return json.dumps(
        {
            "python": sys.version.split()[0],
            "anthropic_key_set": bool(os.getenv("ANTHROPIC_API_KEY")),
            "model": ModelConfig.from_env().model,
            "idb": idb_driver._find_idb(),
            "xcrun": shutil.which("xcrun"),
            "simulator": _udid,
        },
        indent=2,
    )


if __name__ == "__main__":
    mcp.run(transport="stdio")
