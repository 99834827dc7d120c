"""report.py - JSON report for a finished session."""

import json
import os
from datetime import datetime, timezone

from vision_pilot.models import IssueType, SessionResult, Severity, issue_to_dict


def _screens(result: SessionResult) -> list[dict]:
    nav = result.navigation_map
    return [
        {
            "name": label,
            "reachable_from": [src for src, targets in nav.items() if label in targets],
            "leads_to": list(nav.get(label, [])),
        }
        for label in result.visited_labels
    ]


def build_report(result: SessionResult) -> dict:
    """Summary counts, per-screen navigation and the full step history."""
    issues = result.issues
    summary = {
        "mode": result.mode.value,
        "objective": result.objective,
        "success": result.success,
        "termination_reason": result.termination_reason.value,
        "steps": result.step_count,
        "screens_discovered": len(result.visited_labels),
        "elements_found": result.elements_found,
        "issues_found": len(issues),
        "issues_by_type": {kind.value: sum(1 for i in issues if i.type == kind) for kind in IssueType},
        "issues_by_severity": {
            level.value: sum(1 for i in issues if i.severity == level)
            for level in (Severity.HIGH, Severity.MEDIUM, Severity.LOW)
        },
        "coverage_score": result.coverage_score,
        "duration_seconds": result.duration_seconds,
        **result.summary(),
    }
    if result.error:
        summary["error"] = result.error

    return {
        "session_id": result.session_id,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "summary": summary,
        "final_state": result.final_state,
        "screens": _screens(result),
        "explored_targets": list(result.explored_targets),
        "issues": [issue_to_dict(i) for i in issues],
        "steps": result.to_dict()["steps"],
    }


def save_report(result: SessionResult, path: str) -> str:
    """Write the report to `path` (a directory gets `<session_id>.json`)."""
    if os.path.isdir(path) or path.endswith(os.sep):
        os.makedirs(path, exist_ok=True)
        path = os.path.join(path, f"{result.session_id}.json")
    else:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
    with open(path, "w") as f:
        json.dump(build_report(result), f, indent=2)
    return path
