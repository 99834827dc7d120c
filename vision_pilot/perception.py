"""perception.py - Capture the current screen and encode it for the model.

A capture failure is fatal to the session: without perception the loop cannot
safely act, so errors are raised as PerceptionError and never retried here.
"""

import base64
import io
import sys
from typing import Callable

from PIL import Image, UnidentifiedImageError

from vision_pilot import screenshot
from vision_pilot.models import EncodedImage


class PerceptionError(RuntimeError):
    """The current screen could not be captured."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        # Filled in by the loop with the session's error SessionResult.
        self.result = result


def _log(msg: str) -> None:
    print(f"[perceive] {msg}", file=sys.stderr)


class PerceptionAdapter:
    """Turns a `() -> bytes` screenshot source into EncodedImage values.

    Anthropic's API limits images to 2000px per side in many-image requests,
    so frames are downscaled to fit max_dim (default 1600).
    """

    def __init__(
        self,
        capture_fn: Callable[[], bytes],
        max_dim: int = 1600,
        save_dir: str | None = None,
    ):
        self.capture_fn = capture_fn
        self.max_dim = max_dim
        self.save_dir = save_dir

    def capture(self, label: str = "frame") -> EncodedImage:
        try:
            raw = self.capture_fn()
        except Exception as exc:
            raise PerceptionError(f"screenshot capture failed: {exc}") from exc
        if not raw:
            raise PerceptionError("screenshot capture returned no data")

        try:
            png = self._normalize(raw)
        except (UnidentifiedImageError, OSError) as exc:
            raise PerceptionError(f"screenshot is not a readable image: {exc}") from exc

        path = None
        if self.save_dir is not None:
            try:
                path = screenshot.labelled_path(label, self.save_dir)
                with open(path, "wb") as f:
                    f.write(png)
            except OSError as exc:
                _log(f"Could not save screenshot artifact ({exc}), continuing without it")
                path = None

        return EncodedImage(
            data=base64.standard_b64encode(png).decode("ascii"),
            media_type="image/png",
            path=path,
        )

    def _normalize(self, raw: bytes) -> bytes:
        """Decode, downscale to max_dim, re-encode as PNG."""
        img = Image.open(io.BytesIO(raw))
        img.load()
        w, h = img.size
        if max(w, h) > self.max_dim:
            scale = self.max_dim / max(w, h)
            new_w, new_h = int(w * scale), int(h * scale)
            img = img.resize((new_w, new_h), Image.LANCZOS)
            _log(f"Resized screenshot {w}x{h} -> {new_w}x{new_h}")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()
