"""config.py - Loop and model configuration.

Values come from keyword arguments, with environment (and a project .env)
supplying model defaults. The Anthropic SDK reads ANTHROPIC_API_KEY itself.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from vision_pilot.models import Mode

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

DEFAULT_AVOID_PATTERNS = ("logout", "delete", "remove", "cancel subscription")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass
class ModelConfig:
    """Reasoning-model request settings."""

    model: str = DEFAULT_MODEL
    max_tokens: int = 4096
    temperature: float = 0.2
    retries: int = 3
    custom_system_prompt: str | None = None

    @classmethod
    def from_env(cls) -> "ModelConfig":
        load_dotenv(_PROJECT_ROOT / ".env")
        return cls(
            model=os.getenv("VISION_PILOT_MODEL", "").strip() or DEFAULT_MODEL,
            max_tokens=_env_int("VISION_PILOT_MAX_TOKENS", 4096),
            temperature=_env_float("VISION_PILOT_TEMPERATURE", 0.2),
            retries=_env_int("VISION_PILOT_MODEL_RETRIES", 3),
            custom_system_prompt=os.getenv("VISION_PILOT_SYSTEM_PROMPT") or None,
        )


@dataclass
class LoopConfig:
    """Budgets and mode-specific context for one session."""

    mode: Mode = Mode.GOAL
    max_steps: int = 20
    max_screens: int = 15
    goal_description: str = ""
    exploration_focus: str = ""
    settle_seconds: float = 0.5
    avoid_patterns: tuple[str, ...] = DEFAULT_AVOID_PATTERNS
    max_wait_ms: int = 10_000
    save_screenshots: bool = True

    def __post_init__(self):
        self.mode = Mode(self.mode)
        self.validate()

    def validate(self) -> None:
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {self.max_steps}")
        if self.max_screens < 1:
            raise ValueError(f"max_screens must be >= 1, got {self.max_screens}")
        if self.settle_seconds < 0:
            raise ValueError("settle_seconds cannot be negative")
        if self.mode == Mode.GOAL and not self.goal_description.strip():
            raise ValueError("goal mode requires a goal_description")

    @property
    def objective(self) -> str:
        if self.mode == Mode.GOAL:
            return self.goal_description
        return self.exploration_focus
