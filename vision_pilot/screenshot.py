"""Capture iOS Simulator screenshots via xcrun simctl."""

import os
import re
import subprocess
import sys
import tempfile
from datetime import datetime

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _log(msg: str) -> None:
    print(f"[screenshot] {msg}", file=sys.stderr)


def resolve_output_dir(output_dir: str) -> str:
    return os.path.join(_PROJECT_ROOT, output_dir)


def timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S_%f")


def sanitize_label(label: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", label)


def labelled_path(label: str, output_dir: str = "_artifacts/", ext: str = "png") -> str:
    """Artifact path with the label baked into the filename."""
    resolved_dir = resolve_output_dir(output_dir)
    os.makedirs(resolved_dir, exist_ok=True)
    return os.path.join(resolved_dir, f"screenshot_{sanitize_label(label)}_{timestamp()}.{ext}")


def capture_png(udid: str, dest: str) -> None:
    """Write the simulator's current frame to dest. Raises on failure."""
    try:
        subprocess.run(
            ["xcrun", "simctl", "io", udid, "screenshot", dest],
            check=True,
            capture_output=True,
            timeout=30,
        )
    except subprocess.CalledProcessError as exc:
        detail = exc.stderr.decode(errors="replace").strip() if exc.stderr else str(exc)
        raise RuntimeError(f"simctl screenshot failed: {detail}") from exc


class SimulatorCamera:
    """Screenshot source for one simulator: calling it returns PNG bytes."""

    def __init__(self, udid: str):
        self.udid = udid

    def __call__(self) -> bytes:
        fd, tmp_path = tempfile.mkstemp(prefix="vision_pilot_", suffix=".png")
        os.close(fd)
        try:
            capture_png(self.udid, tmp_path)
            with open(tmp_path, "rb") as f:
                data = f.read()
        finally:
            os.remove(tmp_path)
        _log(f"captured {len(data)} bytes from {self.udid}")
        return data
