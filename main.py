#!/usr/bin/env python3
"""Vision Pilot - CLI for vision-guided simulator sessions.

Usage:
    python main.py --goal "Log in with demo@example.com / hunter2"
    python main.py --explore --focus "Settings and profile screens" --max-screens 10
    python main.py --explore --issue-type accessibility --report _artifacts/reports/
    python main.py --list-sessions
"""

import argparse
import json
import sys
import time

from dotenv import load_dotenv

load_dotenv()

from vision_pilot import loop, report, session_log, simulator
from vision_pilot.config import LoopConfig
from vision_pilot.loop import ExplorationPolicy
from vision_pilot.models import IssueType, Mode
from vision_pilot.perception import PerceptionError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PERCEPTION = 2


def log(msg: str) -> None:
    print(f"[main] {msg}", file=sys.stderr)


def boot(udid: str | None) -> str:
    """Find or boot the simulator. Exits if none can be booted."""
    log("Ensuring simulator is booted...")
    resolved = simulator.ensure_booted(udid)
    if not resolved:
        print("FATAL: Could not boot any simulator", file=sys.stderr)
        sys.exit(EXIT_FAILED)
    log(f"Simulator UDID: {resolved}")
    time.sleep(2)
    return resolved


def print_summary(result) -> None:
    status = "SUCCESS" if result.success else "FAILED"
    print(f"\n{'=' * 60}", file=sys.stderr)
    print(f"{result.mode.value.upper()} {status} in {result.step_count} steps", file=sys.stderr)
    print(f"Termination: {result.termination_reason.value}", file=sys.stderr)
    print(f"Screens: {len(result.visited_labels)} | Issues: {len(result.issues)}", file=sys.stderr)
    if result.coverage_score is not None:
        print(f"Coverage score: {result.coverage_score}%", file=sys.stderr)
    for issue in result.issues:
        print(f"  - [{issue.severity.value}] {issue.screen}: {issue.description}", file=sys.stderr)
    print(f"{'=' * 60}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Vision Pilot - screenshot-driven UI automation via a vision model"
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--goal", type=str, help="Plain-English goal to accomplish")
    mode.add_argument("--explore", action="store_true", help="Explore the app autonomously")
    mode.add_argument(
        "--list-sessions", action="store_true", help="List recent sessions and exit"
    )
    parser.add_argument("--focus", type=str, default="", help="Exploration focus text")
    parser.add_argument(
        "--issue-type",
        choices=[kind.value for kind in IssueType],
        help="Explore while hunting one kind of issue",
    )
    parser.add_argument("--udid", type=str, help="Simulator UDID (default: first booted)")
    parser.add_argument(
        "--bundle-id",
        default="com.apple.mobilesafari",
        help="App bundle ID to launch (default: Safari)",
    )
    parser.add_argument("--max-steps", type=int, default=20, help="Step budget (default: 20)")
    parser.add_argument(
        "--max-screens", type=int, default=15, help="Screen budget for --explore (default: 15)"
    )
    parser.add_argument("--report", type=str, help="Write the JSON report to this file or directory")
    return parser


def loop_config(args) -> LoopConfig:
    if args.goal:
        return LoopConfig(mode=Mode.GOAL, goal_description=args.goal, max_steps=args.max_steps)
    focus = ExplorationPolicy.focus_for(args.issue_type) if args.issue_type else args.focus
    return LoopConfig(
        mode=Mode.EXPLORE,
        exploration_focus=focus,
        max_steps=args.max_steps,
        max_screens=args.max_screens,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_sessions:
        print(json.dumps(session_log.list_sessions(), indent=2))
        return EXIT_OK

    if not args.goal and not args.explore:
        parser.print_help()
        return EXIT_FAILED

    try:
        config = loop_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    udid = boot(args.udid)
    try:
        result = loop.build_controller(config, udid, bundle_id=args.bundle_id).run()
    except PerceptionError as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        if exc.result is not None and args.report:
            log(f"Report: {report.save_report(exc.result, args.report)}")
        return EXIT_PERCEPTION

    print_summary(result)
    if args.report:
        log(f"Report: {report.save_report(result, args.report)}")
    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK if result.success else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
