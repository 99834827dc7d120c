"""Element lookup over flattened accessibility elements.

Identifier lookup is exact. Text and label lookup try an exact
(case-insensitive) match first, then fall back to fuzzy matching. Control
lookup (used for back-like buttons) is exact only.
"""

import sys

from thefuzz import fuzz

from vision_pilot.screen_mapper import is_visible

MIN_FUZZY_LENGTH = 3


def _log(msg: str) -> None:
    print(f"[nav] {msg}", file=sys.stderr)


def _score(query: str, candidate: str) -> int:
    return fuzz.partial_ratio(query.lower(), candidate.lower())


def _candidates(elements: list[dict]) -> list[dict]:
    return [el for el in elements if is_visible(el)]


def find_by_identifier(identifier: str, elements: list[dict]) -> dict | None:
    for el in _candidates(elements):
        if el.get("identifier") == identifier:
            return el
    return None


def _best_match(query: str, elements: list[dict], keys: tuple[str, ...], threshold: int):
    wanted = query.strip().lower()
    if not wanted:
        return None, 0

    for el in elements:
        for key in keys:
            val = el.get(key)
            if val and val.strip().lower() == wanted:
                return el, 100

    best_el = None
    best_score = 0
    for el in elements:
        for key in keys:
            val = el.get(key)
            if not val or len(val.strip()) < MIN_FUZZY_LENGTH:
                continue
            score = _score(wanted, val)
            if score > best_score:
                best_score = score
                best_el = el

    if best_score >= threshold:
        return best_el, best_score
    return None, best_score


def find_by_text(text: str, elements: list[dict], threshold: int = 80) -> dict | None:
    """Match against visible text content (value and title, then label)."""
    el, score = _best_match(text, _candidates(elements), ("value", "title", "label"), threshold)
    if el is None:
        _log(f"find_by_text: '{text}' -> no match above {threshold} (best={score})")
    else:
        _log(f"find_by_text: '{text}' -> '{el.get('searchable_text', '')}' (score={score})")
    return el


def find_by_label(label: str, elements: list[dict], threshold: int = 80) -> dict | None:
    """Match against accessibility labels only."""
    el, score = _best_match(label, _candidates(elements), ("label",), threshold)
    if el is None:
        _log(f"find_by_label: '{label}' -> no match above {threshold} (best={score})")
    return el


def find_control(text: str, elements: list[dict]) -> dict | None:
    """Exact, case-insensitive match on label, then on title or value. Never fuzzy."""
    wanted = (text or "").strip().lower()
    if not wanted:
        return None
    visible = _candidates(elements)
    for keys in (("label",), ("title", "value")):
        for el in visible:
            for key in keys:
                val = el.get(key)
                if val and val.strip().lower() == wanted:
                    return el
    return None
