"""idb_driver.py - DeviceDriver over Facebook idb for iOS simulators.

Element lookups read a fresh accessibility tree (`idb ui describe-all`) each
time, so a lookup always reflects the screen as it is now. Every command is
scoped with --udid so concurrent sessions on different simulators never cross.
"""

import json
import os
import shutil
import subprocess
import sys

from vision_pilot import locator, screen_mapper
from vision_pilot.device import DeviceActionError, ElementHandle

# HID usage code for backspace.
_KEY_DELETE = "42"

DEFAULT_SCREEN = (390, 844)

_idb_path: str | None = None


def _log(msg: str) -> None:
    print(f"[idb] {msg}", file=sys.stderr)


def _find_idb() -> str | None:
    """Find the idb binary: the running venv's bin directory first, then PATH."""
    global _idb_path
    if _idb_path is not None:
        return _idb_path or None

    venv_idb = os.path.join(os.path.dirname(sys.executable), "idb")
    if os.path.isfile(venv_idb) and os.access(venv_idb, os.X_OK):
        _idb_path = venv_idb
    else:
        _idb_path = shutil.which("idb") or ""

    if _idb_path:
        _log(f"idb found: {_idb_path}")
    else:
        _log("idb CLI not found")
    return _idb_path or None


def _run(cmd: list[str], timeout: int = 30) -> tuple[str, str, int]:
    """Run a subprocess command and return (stdout, stderr, returncode)."""
    _log(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        return "", str(exc), -1
    if result.returncode != 0:
        _log(f"stderr: {result.stderr.strip()}")
    return result.stdout, result.stderr, result.returncode


def _handle(element: dict) -> ElementHandle:
    x, y = screen_mapper.get_element_center(element)
    return ElementHandle(
        x=x,
        y=y,
        identifier=element.get("identifier"),
        label=element.get("label"),
        type=element.get("type", "Unknown"),
        frame=dict(element.get("frame") or {}),
    )


class IdbDriver:
    """Drives one simulator through the idb CLI."""

    def __init__(self, udid: str, swipe_seconds: float = 0.5):
        self.udid = udid
        self.swipe_seconds = swipe_seconds
        self._screen: tuple[int, int] | None = None

    # -- plumbing ----------------------------------------------------------

    def _idb(self, *args: str, timeout: int = 30) -> str:
        idb = _find_idb()
        if idb is None:
            raise DeviceActionError("idb CLI is not installed")
        stdout, stderr, rc = _run([idb, *args, "--udid", self.udid], timeout=timeout)
        if rc != 0:
            raise DeviceActionError(f"idb {' '.join(args[:2])} failed: {stderr.strip()}")
        return stdout

    def connect(self) -> bool:
        idb = _find_idb()
        if idb is None:
            return False
        _, stderr, rc = _run([idb, "connect", self.udid])
        if rc != 0:
            _log(f"idb connect failed: {stderr.strip()}")
            return False
        _log(f"Connected to {self.udid}")
        return True

    def launch_app(self, bundle_id: str) -> None:
        self._idb("launch", bundle_id)
        _log(f"Launched {bundle_id}")

    def elements(self) -> list[dict]:
        raw = self._idb("ui", "describe-all", "--json")
        return screen_mapper.flatten_elements(screen_mapper.parse_tree(raw))

    def screen_size(self) -> tuple[int, int]:
        """Screen size in points, from `idb describe`; falls back to 390x844."""
        if self._screen is not None:
            return self._screen
        self._screen = DEFAULT_SCREEN
        try:
            info = json.loads(self._idb("describe", "--json", timeout=10))
            dims = info.get("screen_dimensions", {})
            w, h = dims.get("width"), dims.get("height")
            scale = dims.get("density") or 3
            if w and h:
                self._screen = (int(w / scale), int(h / scale))
        except (DeviceActionError, json.JSONDecodeError, AttributeError, TypeError) as exc:
            _log(f"Could not detect screen size ({exc}), using {DEFAULT_SCREEN}")
        return self._screen

    # -- lookup ------------------------------------------------------------

    def find_by_id(self, identifier: str) -> ElementHandle | None:
        el = locator.find_by_identifier(identifier, self.elements())
        return _handle(el) if el else None

    def find_by_text(self, text: str) -> ElementHandle | None:
        el = locator.find_by_text(text, self.elements())
        return _handle(el) if el else None

    def find_by_label(self, label: str) -> ElementHandle | None:
        el = locator.find_by_label(label, self.elements())
        return _handle(el) if el else None

    def find_control(self, label: str) -> ElementHandle | None:
        el = locator.find_control(label, self.elements())
        return _handle(el) if el else None

    def find_scrollable(self) -> ElementHandle | None:
        for el in self.elements():
            if screen_mapper.is_scrollable(el) and screen_mapper.is_visible(el):
                return _handle(el)
        return None

    # -- gestures ----------------------------------------------------------

    def tap(self, element: ElementHandle) -> None:
        self.tap_point(element.x, element.y)

    def tap_point(self, x: int, y: int) -> None:
        self._idb("ui", "tap", str(x), str(y))

    def long_press(self, element: ElementHandle, seconds: float = 1.0) -> None:
        self._idb("ui", "tap", str(element.x), str(element.y), "--duration", str(seconds))

    def clear_and_type(self, element: ElementHandle, text: str) -> None:
        self.tap(element)
        existing = self._current_value(element)
        if existing:
            self._idb("ui", "key-sequence", *([_KEY_DELETE] * len(existing)))
        if text:
            self._idb("ui", "text", text)

    def _current_value(self, element: ElementHandle) -> str:
        for el in self.elements():
            if element.identifier and el.get("identifier") == element.identifier:
                return el.get("value") or ""
            if screen_mapper.get_element_center(el) == (element.x, element.y) and el.get("value"):
                return el["value"]
        return ""

    def _swipe_points(self, direction: str, container: ElementHandle | None):
        if container is not None and container.frame.get("width") and container.frame.get("height"):
            f = container.frame
            cx, cy = int(f["x"] + f["width"] / 2), int(f["y"] + f["height"] / 2)
            dx, dy = int(f["width"] * 0.35), int(f["height"] * 0.35)
        else:
            w, h = self.screen_size()
            cx, cy = w // 2, h // 2
            dx, dy = int(w * 0.35), int(h * 0.35)
        moves = {
            "up": (cx, cy + dy, cx, cy - dy),
            "down": (cx, cy - dy, cx, cy + dy),
            "left": (cx + dx, cy, cx - dx, cy),
            "right": (cx - dx, cy, cx + dx, cy),
        }
        if direction not in moves:
            raise DeviceActionError(f"invalid direction '{direction}'")
        return moves[direction]

    def swipe(self, direction: str, container: ElementHandle | None = None) -> None:
        """Move the finger in `direction`."""
        x1, y1, x2, y2 = self._swipe_points(direction, container)
        self._idb(
            "ui", "swipe", str(x1), str(y1), str(x2), str(y2),
            "--duration", str(self.swipe_seconds),
        )

    def scroll(self, direction: str, container: ElementHandle | None = None) -> None:
        """Reveal content in `direction`: the finger moves the opposite way."""
        opposite = {"up": "down", "down": "up", "left": "right", "right": "left"}
        if direction not in opposite:
            raise DeviceActionError(f"invalid direction '{direction}'")
        self.swipe(opposite[direction], container)

    def press_back(self) -> bool:
        # iOS has no platform back; callers fall back to a back-like control.
        return False
