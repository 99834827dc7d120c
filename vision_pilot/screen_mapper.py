"""screen_mapper.py - Normalize idb accessibility dumps into flat element dicts.

`idb ui describe-all --json` returns a JSON array of nodes using AX* keys.
Each node becomes a dict with identifier, label, value, title, type, frame
and enabled, which is all the driver needs for lookup and tap geometry.
"""

import json
import re
import sys

SCROLLABLE_TYPES = ("ScrollView", "Table", "CollectionView", "WebView", "TextView")

_FRAME_CURLY_RE = re.compile(
    r"\{\{([\d.]+),\s*([\d.]+)\},\s*\{([\d.]+),\s*([\d.]+)\}\}"
)


def _log(msg: str) -> None:
    print(f"[mapper] {msg}", file=sys.stderr)


def _frame(node: dict) -> dict:
    raw = node.get("frame") or node.get("Frame") or node.get("rect")
    if isinstance(raw, str):
        m = _FRAME_CURLY_RE.search(raw)
        if m:
            x, y, w, h = (float(g) for g in m.groups())
            return {"x": x, "y": y, "width": w, "height": h}
    elif isinstance(raw, dict):
        for keys in (("x", "y", "width", "height"), ("X", "Y", "Width", "Height")):
            if all(k in raw for k in keys):
                try:
                    return {name: float(raw[k]) for name, k in zip(("x", "y", "width", "height"), keys)}
                except (TypeError, ValueError):
                    break
    return {"x": 0.0, "y": 0.0, "width": 0.0, "height": 0.0}


def _first(node: dict, *keys: str) -> str | None:
    for key in keys:
        val = node.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return None


def parse_tree(raw_text: str) -> list:
    """Decode a describe-all dump. Returns [] for empty or non-JSON output."""
    text = (raw_text or "").strip()
    if not text:
        _log("empty input")
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        # Older idb builds print one JSON object per line.
        parsed = []
        for line in text.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                parsed.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        _log(f"parsed {len(parsed)} line-delimited nodes")
    if isinstance(parsed, dict):
        parsed = [parsed]
    return parsed if isinstance(parsed, list) else []


def normalize_element(node: dict) -> dict:
    identifier = _first(node, "AXUniqueId", "identifier", "AXIdentifier")
    label = _first(node, "AXLabel", "label")
    value = _first(node, "AXValue", "value")
    title = _first(node, "title", "AXTitle")
    etype = _first(node, "type", "role", "AXRole") or "Unknown"
    enabled = node.get("enabled", True) is not False
    text = " ".join(s for s in (label, value, title) if s)
    return {
        "identifier": identifier,
        "label": label,
        "value": value,
        "title": title,
        "type": etype,
        "frame": _frame(node),
        "enabled": enabled,
        "searchable_text": text.lower(),
    }


def flatten_elements(tree) -> list[dict]:
    """Walk a parsed tree (dict or list, with optional children) into a flat list."""
    results: list[dict] = []
    if isinstance(tree, dict):
        results.append(normalize_element(tree))
        for child in tree.get("children", []) or []:
            results.extend(flatten_elements(child))
    elif isinstance(tree, list):
        for item in tree:
            results.extend(flatten_elements(item))
    return results


def get_element_center(element: dict) -> tuple[int, int]:
    frame = element.get("frame") or {}
    x = frame.get("x", 0.0)
    y = frame.get("y", 0.0)
    w = frame.get("width", 0.0)
    h = frame.get("height", 0.0)
    return (int(x + w / 2), int(y + h / 2))


def is_visible(element: dict) -> bool:
    frame = element.get("frame") or {}
    return frame.get("width", 0) > 0 and frame.get("height", 0) > 0


def is_scrollable(element: dict) -> bool:
    etype = str(element.get("type", ""))
    return any(kind in etype for kind in SCROLLABLE_TYPES)
