"""Per-session telemetry: state.json, events.jsonl and report.json on disk.

Each session writes only under its own directory, so concurrent sessions
never touch the same files.
"""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SESSIONS_ROOT = _PROJECT_ROOT / "_artifacts" / "sessions"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _session_dir(session_id: str) -> Path:
    return _SESSIONS_ROOT / session_id


def _state_path(session_id: str) -> Path:
    return _session_dir(session_id) / "state.json"


def _events_path(session_id: str) -> Path:
    return _session_dir(session_id) / "events.jsonl"


def _report_path(session_id: str) -> Path:
    return _session_dir(session_id) / "report.json"


def new_session_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"session_{stamp}_{uuid.uuid4().hex[:8]}"


def create_session(
    mode: str,
    objective: str,
    max_steps: int,
    max_screens: int,
    session_id: str | None = None,
) -> dict:
    """Create a new session state document and persist it."""
    resolved_id = session_id or new_session_id()
    created_at = _now_iso()
    state = {
        "session_id": resolved_id,
        "mode": mode,
        "objective": objective,
        "max_steps": max_steps,
        "max_screens": max_screens,
        "status": "running",
        "termination_reason": "",
        "history": [],
        "created_at": created_at,
        "updated_at": created_at,
        "completed_at": "",
        "last_step": 0,
        "metrics": {
            "model_calls": 0,
            "parse_fallbacks": 0,
            "action_failures": 0,
            "policy_blocks": 0,
        },
    }
    save_state(state)
    append_event(resolved_id, {"type": "session_started", "timestamp": created_at})
    return state


def load_state(session_id: str) -> dict | None:
    path = _state_path(session_id)
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError:
        return None


def save_state(state: dict) -> None:
    session_dir = _session_dir(state["session_id"])
    session_dir.mkdir(parents=True, exist_ok=True)
    state["updated_at"] = _now_iso()
    _state_path(state["session_id"]).write_text(json.dumps(state, indent=2))


def append_event(session_id: str, event: dict) -> None:
    _session_dir(session_id).mkdir(parents=True, exist_ok=True)
    payload = dict(event)
    payload.setdefault("timestamp", _now_iso())
    with _events_path(session_id).open("a") as f:
        f.write(json.dumps(payload) + "\n")


def append_history(state: dict, step_record: dict) -> None:
    state.setdefault("history", []).append(step_record)
    state["last_step"] = max(int(state.get("last_step", 0)), int(step_record.get("step", 0)))
    save_state(state)


def increment_metric(state: dict, metric: str, amount: int = 1) -> None:
    metrics = state.setdefault("metrics", {})
    metrics[metric] = int(metrics.get(metric, 0)) + amount
    save_state(state)


def finalize_session(state: dict, status: str, termination_reason: str, steps: int) -> None:
    """Mark the session finished (status is completed, failed or error)."""
    state["status"] = status
    state["termination_reason"] = termination_reason
    state["last_step"] = steps
    state["completed_at"] = _now_iso()
    save_state(state)
    append_event(
        state["session_id"],
        {
            "type": "session_finished",
            "status": status,
            "termination_reason": termination_reason,
            "steps": steps,
        },
    )


def write_report(session_id: str, payload: dict) -> str:
    _session_dir(session_id).mkdir(parents=True, exist_ok=True)
    path = _report_path(session_id)
    path.write_text(json.dumps(payload, indent=2))
    return str(path)


def load_report(session_id: str) -> dict | None:
    path = _report_path(session_id)
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError:
        return None


def list_sessions(limit: int = 20) -> list[dict]:
    """Recent session summaries, newest first."""
    if not _SESSIONS_ROOT.exists():
        return []

    items: list[dict] = []
    for entry in _SESSIONS_ROOT.iterdir():
        state = load_state(entry.name) if entry.is_dir() else None
        if state is None:
            continue
        items.append(
            {
                "session_id": state.get("session_id", entry.name),
                "mode": state.get("mode", ""),
                "objective": state.get("objective", ""),
                "status": state.get("status", "unknown"),
                "termination_reason": state.get("termination_reason", ""),
                "last_step": state.get("last_step", 0),
                "created_at": state.get("created_at", ""),
            }
        )

    items.sort(key=lambda row: row.get("created_at", ""), reverse=True)
    return items[: max(1, limit)]


def latest_session_id() -> str | None:
    sessions = list_sessions(limit=1)
    return sessions[0]["session_id"] if sessions else None


def replay_session(session_id: str) -> dict:
    """Load state plus every recorded event for audit."""
    state = load_state(session_id)
    if state is None:
        return {"error": f"session '{session_id}' not found"}

    events: list[dict] = []
    events_path = _events_path(session_id)
    if events_path.exists():
        for line in events_path.read_text().splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue

    return {"session_id": session_id, "state": state, "events": events}
