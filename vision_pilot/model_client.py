"""model_client.py - Reasoning-model client over Anthropic's Messages API.

The client is stateless. Multi-turn memory lives in a Conversation object that
the caller creates per session and passes in on every call, so two sessions
never share history.
"""

import sys
import time
from dataclasses import dataclass, field

import anthropic

from vision_pilot.config import ModelConfig
from vision_pilot.models import EncodedImage

_IMAGE_PLACEHOLDER = "[earlier screenshot omitted]"


class ModelCallError(RuntimeError):
    """The reasoning model could not be reached after bounded retries."""


def _log(msg: str) -> None:
    print(f"[model] {msg}", file=sys.stderr)


def image_block(image: EncodedImage) -> dict:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": image.media_type, "data": image.data},
    }


@dataclass
class Conversation:
    """Ordered user/assistant turns for one session."""

    turns: list[dict] = field(default_factory=list)

    def append_user(self, text: str, image: EncodedImage | None = None) -> None:
        content: list[dict] = []
        if image is not None:
            content.append(image_block(image))
        content.append({"type": "text", "text": text})
        self.turns.append({"role": "user", "content": content})

    def append_assistant(self, text: str) -> None:
        # The API rejects empty assistant turns.
        self.turns.append({"role": "assistant", "content": [{"type": "text", "text": text or "(no reply)"}]})

    def messages(self, max_images: int | None = None) -> list[dict]:
        """Render turns for a request, keeping only the newest max_images screenshots."""
        if max_images is None:
            return [dict(turn) for turn in self.turns]

        image_turns = [
            i for i, turn in enumerate(self.turns)
            if any(block.get("type") == "image" for block in turn["content"])
        ]
        keep = set(image_turns[-max_images:]) if max_images > 0 else set()

        rendered = []
        for i, turn in enumerate(self.turns):
            if i in keep or i not in image_turns:
                rendered.append(dict(turn))
                continue
            content = [
                {"type": "text", "text": _IMAGE_PLACEHOLDER} if block.get("type") == "image" else block
                for block in turn["content"]
            ]
            rendered.append({"role": turn["role"], "content": content})
        return rendered

    def __len__(self) -> int:
        return len(self.turns)


class AnthropicReasoningClient:
    """`(system, history, image, text) -> reply text` over the Messages API."""

    def __init__(self, config: ModelConfig | None = None, client=None):
        self.config = config or ModelConfig.from_env()
        self._client = client or anthropic.Anthropic()

    def complete(
        self,
        system_prompt: str,
        history: list[dict],
        image: EncodedImage | list[EncodedImage] | None,
        user_text: str,
    ) -> str:
        """One request; `image` may be a list when the prompt compares screens."""
        if image is None:
            images = []
        else:
            images = image if isinstance(image, list) else [image]
        content = [image_block(img) for img in images]
        content.append({"type": "text", "text": user_text})
        messages = list(history) + [{"role": "user", "content": content}]

        response = self._call_model(system_prompt, messages)
        return _reply_text(response)

    def _call_model(self, system_prompt: str, messages: list[dict]):
        """Call Anthropic with bounded retries for transient API failures."""
        retries = max(1, self.config.retries)
        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                return self._client.messages.create(
                    model=self.config.model,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                    system=system_prompt,
                    messages=messages,
                )
            except Exception as exc:
                last_error = exc
                wait_seconds = min(2 ** (attempt - 1), 8)
                _log(f"Model call failed ({attempt}/{retries}): {exc}")
                if attempt < retries:
                    _log(f"Retrying model call in {wait_seconds}s")
                    time.sleep(wait_seconds)
        raise ModelCallError(f"Model call failed after {retries} attempts: {last_error}")


def _reply_text(response) -> str:
    parts = []
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", "") == "text":
            parts.append(block.text)
    return "\n".join(parts)
