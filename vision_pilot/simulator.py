"""Find or boot the iOS Simulator a session will drive (xcrun simctl)."""

import re
import subprocess
import sys

PREFERRED_DEVICE = "iPhone 17 Pro"

_BOOTED_RE = re.compile(r"\s+.+\(([0-9A-F-]{36})\)\s+\(Booted\)")
_DEVICE_RE = re.compile(r"\s+(iPhone[^(]+?)\s+\(([0-9A-F-]{36})\)\s+\((\w+)\)")


def _log(msg: str) -> None:
    print(f"[simctl] {msg}", file=sys.stderr)


def _simctl(*args: str) -> subprocess.CompletedProcess:
    cmd = ["xcrun", "simctl", *args]
    _log(f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=120)
    except (OSError, subprocess.TimeoutExpired) as exc:
        _log(f"{' '.join(cmd)} failed: {exc}")
        return subprocess.CompletedProcess(cmd, -1, "", str(exc))


def get_booted_udid() -> str | None:
    """UDID of the first booted simulator, or None."""
    result = _simctl("list", "devices", "booted")
    if result.returncode != 0:
        return None
    for line in result.stdout.splitlines():
        m = _BOOTED_RE.search(line)
        if m:
            return m.group(1)
    return None


def list_iphones() -> list[dict]:
    """Available iPhone simulators as {name, udid, state} dicts."""
    result = _simctl("list", "devices", "available")
    if result.returncode != 0:
        return []
    devices = []
    for line in result.stdout.splitlines():
        m = _DEVICE_RE.search(line)
        if m:
            devices.append({"name": m.group(1).strip(), "udid": m.group(2), "state": m.group(3)})
    return devices


def boot(udid: str | None = None) -> str | None:
    """Boot `udid`, or the preferred iPhone (else the first one). Returns the UDID."""
    if udid is None:
        devices = list_iphones()
        if not devices:
            _log("No available iPhone simulators")
            return None
        target = next((d for d in devices if d["name"] == PREFERRED_DEVICE), devices[0])
        if target["state"] == "Booted":
            return target["udid"]
        udid = target["udid"]
        _log(f"Selected {target['name']} ({udid})")

    result = _simctl("boot", udid)
    # "Unable to boot device in current state: Booted" is success for us.
    if result.returncode != 0 and "Booted" not in result.stderr:
        _log(f"Failed to boot {udid}: {result.stderr.strip()}")
        return None
    return udid


def ensure_booted(udid: str | None = None) -> str | None:
    """Return a booted simulator's UDID, booting one if necessary."""
    if udid:
        return boot(udid)
    return get_booted_udid() or boot()
