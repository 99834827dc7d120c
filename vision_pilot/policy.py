"""Guardrails applied to proposed actions before they reach the device."""

from dataclasses import dataclass

from vision_pilot.config import DEFAULT_AVOID_PATTERNS
from vision_pilot.models import ActionSpec, ActionType


@dataclass
class ActionPolicy:
    """Keeps unattended sessions away from destructive controls."""

    avoid_patterns: tuple[str, ...] = DEFAULT_AVOID_PATTERNS
    max_wait_ms: int = 10_000

    def clamp_wait_ms(self, requested: int) -> int:
        return max(0, min(requested, self.max_wait_ms))

    def matches_avoid_pattern(self, text: str) -> str | None:
        lower = (text or "").lower()
        for pattern in self.avoid_patterns:
            if pattern and pattern.lower() in lower:
                return pattern
        return None

    def validate_action(self, action: ActionSpec) -> tuple[bool, str]:
        """Return (allowed, reason) for a proposed action.

        Back, wait and none carry no target to vet here; the executor checks
        the back-like control it resolves before tapping it.
        """
        if action.type in (ActionType.NONE, ActionType.WAIT, ActionType.BACK):
            return True, "allowed"

        for target in [action.target, *action.fallback_targets]:
            pattern = self.matches_avoid_pattern(target)
            if pattern:
                return False, f"target '{target}' matches avoid pattern '{pattern}'"
        return True, "allowed"
