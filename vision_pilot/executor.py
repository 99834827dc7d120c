"""executor.py - Turn an ActionSpec into a device gesture.

Targets are resolved through a fixed chain, first match wins:
identifier (only for identifier-like targets) -> visible text ->
accessibility label; then each fallback target through the same chain; then
explicit coordinates; then, for description targets, a model-located point.
Execution failures are captured into an ExecutionOutcome and logged; they
never propagate to the loop.
"""

import re
import sys
import time
from dataclasses import dataclass
from typing import Callable

from vision_pilot.device import DeviceActionError, DeviceDriver, ElementHandle
from vision_pilot.models import ActionSpec, ActionType, Coordinates
from vision_pilot.policy import ActionPolicy

_IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")

BACK_LABELS = ("Back", "Close", "Cancel", "Done")
DIRECTIONS = ("up", "down", "left", "right")
DEFAULT_WAIT_MS = 1000


class TargetNotFound(DeviceActionError):
    """No strategy in the resolution chain matched the target."""


@dataclass
class ExecutionOutcome:
    success: bool
    error: str | None = None
    resolved_via: str | None = None
    blocked: bool = False


def _log(msg: str) -> None:
    print(f"[exec] {msg}", file=sys.stderr)


def is_identifier_like(target: str) -> bool:
    """True for machine identifiers such as 'login-submit-button'."""
    return bool(target) and _IDENTIFIER_RE.match(target) is not None


def _direction(value: str | None, default: str) -> str:
    direction = (value or "").strip().lower()
    return direction if direction in DIRECTIONS else default


def _wait_ms(value: str | None) -> int:
    try:
        return int(float(value)) if value else DEFAULT_WAIT_MS
    except (ValueError, OverflowError):
        return DEFAULT_WAIT_MS


class ActionExecutor:
    """Executes one ActionSpec at a time against a DeviceDriver."""

    def __init__(
        self,
        driver: DeviceDriver,
        policy: ActionPolicy | None = None,
        back_labels: tuple[str, ...] = BACK_LABELS,
        locate: Callable[[str], Coordinates | None] | None = None,
        sleep=time.sleep,
    ):
        self.driver = driver
        self.policy = policy or ActionPolicy()
        self.back_labels = back_labels
        # Last resort for description targets: ask the vision model where it is.
        self.locate = locate
        self._sleep = sleep

    def execute(self, action: ActionSpec) -> ExecutionOutcome:
        """Run the action; any failure is recorded in the outcome, never raised."""
        allowed, reason = self.policy.validate_action(action)
        if not allowed:
            _log(f"POLICY BLOCKED {action.type.value} on '{action.target}': {reason}")
            return ExecutionOutcome(success=False, error=f"POLICY BLOCKED: {reason}", blocked=True)

        try:
            resolved_via = self._dispatch(action)
        except Exception as exc:
            _log(f"{action.type.value} on '{action.target}' failed: {exc}")
            return ExecutionOutcome(success=False, error=str(exc))

        _log(f"{action.type.value} on '{action.target}' ok" + (f" via {resolved_via}" if resolved_via else ""))
        return ExecutionOutcome(success=True, resolved_via=resolved_via)

    # -- resolution --------------------------------------------------------

    def _resolve_one(self, target: str) -> tuple[ElementHandle | None, str | None]:
        if not target:
            return None, None
        if is_identifier_like(target):
            handle = self.driver.find_by_id(target)
            if handle is not None:
                return handle, "identifier"
        handle = self.driver.find_by_text(target)
        if handle is not None:
            return handle, "text"
        handle = self.driver.find_by_label(target)
        if handle is not None:
            return handle, "label"
        return None, None

    def resolve(self, action: ActionSpec) -> tuple[ElementHandle, str]:
        """Resolve the action's target to a handle. Raises TargetNotFound."""
        handle, via = self._resolve_one(action.target)
        if handle is not None:
            return handle, via

        for fallback in action.fallback_targets:
            _log(f"  trying fallback target '{fallback}'")
            handle, via = self._resolve_one(fallback)
            if handle is not None:
                return handle, f"fallback:{via}"

        if action.coordinates is not None:
            _log(f"  using coordinates ({action.coordinates.x}, {action.coordinates.y})")
            return ElementHandle(x=action.coordinates.x, y=action.coordinates.y), "coordinates"

        if self.locate is not None and action.target and not is_identifier_like(action.target):
            point = self.locate(action.target)
            if point is not None:
                _log(f"  model located '{action.target}' at ({point.x}, {point.y})")
                return ElementHandle(x=point.x, y=point.y), "model"

        raise TargetNotFound(f"could not resolve target '{action.target}'")

    # -- dispatch ----------------------------------------------------------

    def _dispatch(self, action: ActionSpec) -> str | None:
        kind = action.type
        if kind == ActionType.TAP:
            handle, via = self.resolve(action)
            self.driver.tap(handle)
            return via
        elif kind == ActionType.TYPE:
            handle, via = self.resolve(action)
            self.driver.clear_and_type(handle, action.value or "")
            return via
        elif kind == ActionType.SCROLL:
            container, via = self._container(action.target)
            self.driver.scroll(_direction(action.value, "down"), container)
            return via
        elif kind == ActionType.SWIPE:
            container, via = self._container(action.target)
            self.driver.swipe(_direction(action.value, "up"), container)
            return via
        elif kind == ActionType.LONG_PRESS:
            handle, via = self.resolve(action)
            self.driver.long_press(handle)
            return via
        elif kind == ActionType.WAIT:
            ms = self.policy.clamp_wait_ms(_wait_ms(action.value))
            self._sleep(ms / 1000)
            return None
        elif kind == ActionType.BACK:
            return self._back()
        elif kind == ActionType.NONE:
            return None
        raise DeviceActionError(f"unsupported action type {kind!r}")

    def _container(self, target: str) -> tuple[ElementHandle | None, str]:
        """Scroll containers are usually anonymous: use the nearest scrollable one."""
        if is_identifier_like(target):
            handle = self.driver.find_by_id(target)
            if handle is not None:
                return handle, "identifier"
        handle = self.driver.find_scrollable()
        if handle is not None:
            return handle, "scrollable"
        return None, "screen"

    def _back(self) -> str:
        if self.driver.press_back():
            return "platform"
        for label in self.back_labels:
            handle = self.driver.find_control(label)
            if handle is None:
                continue
            pattern = self.policy.matches_avoid_pattern(handle.label or label)
            if pattern:
                _log(f"  skipping back control '{handle.label}': matches avoid pattern '{pattern}'")
                continue
            self.driver.tap(handle)
            return f"control:{label}"
        raise TargetNotFound("no platform back and no back-like control on screen")
