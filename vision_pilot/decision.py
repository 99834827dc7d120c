"""decision.py - Ask the reasoning model what to do next and parse its reply.

The model is asked to answer with a single JSON object. Whatever comes back,
the parser produces an ActionDecision: a reply it cannot use becomes a
low-confidence no-op instead of an exception, so the loop keeps going and the
step budget bounds the damage.
"""

import json
import sys
from dataclasses import dataclass, field

from vision_pilot.model_client import Conversation, ModelCallError
from vision_pilot.models import (
    ActionDecision,
    ActionSpec,
    ActionType,
    Confidence,
    Coordinates,
    ElementRef,
    EncodedImage,
    Issue,
    IssueType,
    Severity,
    UNKNOWN_STATE,
)

SYSTEM_PROMPT = """\
You are an expert mobile app tester with VISION capabilities.

CRITICAL: You can SEE the screenshot. Base your decisions on what you ACTUALLY SEE, not assumptions.

When analyzing a screenshot:
1. DESCRIBE what you see on screen (UI elements, text, buttons, states)
2. IDENTIFY interactive elements (buttons, inputs, tabs, toggles, etc.)
3. DETECT loading states, errors, modals, or unexpected conditions
4. DETERMINE the current app state/screen

When choosing an action:
- Find the relevant element VISUALLY.
- If the element has a visible testID / accessibility identifier, use it as the target.
- Otherwise describe it by its visible text, or by position and appearance
  (e.g. "blue Submit button at the bottom").
- Offer alternative descriptions in fallbackTargets when unsure.

Always respond with ONE valid JSON object:

{
  "observation": "What I see on the screen",
  "stateLabel": "short_screen_name (e.g. login_screen, home_screen, loading, error)",
  "candidateElements": [
    {"type": "button | input | toggle | tab | list | text | image",
     "identifier": "testID or visual description",
     "interactable": true,
     "region": "top | center | bottom | left | right"}
  ],
  "action": {
    "type": "tap | type | scroll | swipe | longPress | wait | back | none",
    "target": "testID or visual description of element",
    "value": "text to type, scroll direction, or wait milliseconds",
    "coordinates": {"x": 150, "y": 220},
    "fallbackTargets": ["alternative target 1"]
  },
  "confidence": "high | medium | low",
  "reasoning": "Why I chose this action",
  "concerns": "Any uncertainties",
  "issues": [
    {"type": "visual | functional | accessibility | performance",
     "severity": "low | medium | high",
     "description": "what is wrong",
     "element": "which element, if any"}
  ]
}

Guidelines:
- NEVER guess; only report what you can see.
- If an element isn't visible, say so and suggest scrolling.
- Report loading spinners, skeleton screens, and async states.
- Note visual bugs (overlapping text, cut-off elements, wrong colors) under "issues".
- Use action type "none" only to signal that you are finished."""

SCREEN_ANALYSIS_PROMPT = """\
Analyze this mobile app screen comprehensively.

Return JSON:
{
  "screenName": "unique identifier for this screen",
  "description": "what this screen is for",
  "elements": [
    {"type": "button | input | toggle | tab | list | text | image | icon",
     "identifier": "testID or description",
     "text": "visible text if any",
     "region": "top-left | top-center | top-right | center | bottom-center | ...",
     "interactable": true}
  ],
  "issues": [
    {"type": "visual | functional | accessibility | performance",
     "severity": "low | medium | high",
     "description": "what's wrong",
     "element": "which element if applicable"}
  ],
  "suggestedTestCases": ["Test case description"]
}"""

VERIFY_PROMPT = """\
Verify this condition: "{condition}"

Return JSON:
{{
  "satisfied": true/false,
  "observation": "what you see related to the condition",
  "confidence": "high | medium | low"
}}"""

COMPARE_PROMPT = """\
Compare these two mobile app screenshots.

IMAGE 1 = BASELINE (expected state)
IMAGE 2 = CURRENT (actual state)

{context}Return JSON:
{{
  "identical": true/false,
  "differences": ["List of visual differences"],
  "regressions": ["Things that got worse or broke"],
  "improvements": ["Things that improved"]
}}

Look for:
- Layout changes
- Missing or new elements
- Text changes
- Color/styling differences
- Positioning shifts
- State differences (selected, disabled, etc.)"""

LOCATE_PROMPT = """\
Find the element: "{description}"

Return JSON:
{{
  "found": true/false,
  "coordinates": {{"x": 0, "y": 0}},
  "confidence": "high | medium | low",
  "description": "what you found"
}}

Provide the CENTER point of the element{space}.
If the element is not visible, set found to false."""

_STATE_KEYS = ("stateLabel", "currentState", "screenName")


def _log(msg: str) -> None:
    print(f"[decide] {msg}", file=sys.stderr)


class MalformedReply(ValueError):
    """A reply that does not hold a usable decision."""


@dataclass
class ScreenAnalysis:
    screen_name: str
    description: str
    elements: list[ElementRef] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    suggested_test_cases: list[str] = field(default_factory=list)


@dataclass
class ConditionCheck:
    satisfied: bool
    observation: str
    confidence: Confidence


@dataclass
class ScreenComparison:
    identical: bool
    differences: list[str] = field(default_factory=list)
    regressions: list[str] = field(default_factory=list)
    improvements: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "identical": self.identical,
            "differences": self.differences,
            "regressions": self.regressions,
            "improvements": self.improvements,
        }


@dataclass
class ElementLocation:
    coordinates: Coordinates
    confidence: Confidence
    description: str = ""


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def extract_json_object(text: str) -> str | None:
    """Return the first balanced {...} substring, ignoring braces inside strings."""
    if not text:
        return None

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------

def _text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, bool)):
        return str(value)
    return json.dumps(value)


def _coordinates(raw) -> Coordinates | None:
    if not isinstance(raw, dict):
        return None
    try:
        return Coordinates(x=int(raw["x"]), y=int(raw["y"]))
    except (KeyError, TypeError, ValueError):
        return None


def _confidence(raw) -> Confidence:
    try:
        return Confidence(str(raw).strip().lower())
    except ValueError:
        return Confidence.LOW


def _strings(raw) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [s for s in (_text(item) for item in raw) if s]


def _elements(raw) -> list[ElementRef]:
    if not isinstance(raw, list):
        return []
    elements = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        identifier = _text(item.get("identifier")) or _text(item.get("text")) or ""
        if not identifier:
            continue
        interactable = item.get("interactable")
        if interactable is None:
            interactable = str(item.get("state", "enabled")).lower() != "disabled"
        elements.append(
            ElementRef(
                type=_text(item.get("type")) or "unknown",
                identifier=identifier,
                interactable=bool(interactable),
                region=_text(item.get("region") or item.get("position")) or "",
                text=_text(item.get("text")) or "",
            )
        )
    return elements


def parse_issues(raw, screen: str) -> list[Issue]:
    """Keep well-formed issues; an issue with an unknown type or severity is dropped."""
    if not isinstance(raw, list):
        return []
    issues = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            issue_type = IssueType(str(item.get("type", "")).strip().lower())
            severity = Severity(str(item.get("severity", "")).strip().lower())
        except ValueError:
            _log(f"Dropping issue with unknown type/severity: {item}")
            continue
        description = _text(item.get("description")) or ""
        if not description:
            continue
        issues.append(
            Issue(
                screen=screen,
                type=issue_type,
                severity=severity,
                description=description,
                element=_text(item.get("element")),
            )
        )
    return issues


def _action(raw) -> ActionSpec:
    if not isinstance(raw, dict):
        raise MalformedReply("missing 'action' object")
    try:
        action_type = ActionType(str(raw.get("type", "")).strip())
    except ValueError:
        raise MalformedReply(f"unknown action type {raw.get('type')!r}")

    fallbacks = raw.get("fallbackTargets") or []
    if not isinstance(fallbacks, list):
        fallbacks = [fallbacks]

    value = raw.get("value")
    return ActionSpec(
        type=action_type,
        target=(_text(raw.get("target")) or "").strip(),
        value=_text(value) if value not in (None, "") else None,
        coordinates=_coordinates(raw.get("coordinates")),
        fallback_targets=[t.strip() for t in (_text(f) for f in fallbacks) if t and t.strip()],
    )


# ---------------------------------------------------------------------------
# Decision parsing
# ---------------------------------------------------------------------------

def fallback_decision(reply: str, reason: str) -> ActionDecision:
    return ActionDecision(
        observation=reply or "",
        state_label=UNKNOWN_STATE,
        action=ActionSpec.noop(),
        confidence=Confidence.LOW,
        concerns=f"Could not parse structured response: {reason}",
        is_fallback=True,
    )


def decision_from_payload(payload) -> ActionDecision:
    """Build an ActionDecision from decoded JSON, raising MalformedReply when unusable."""
    if not isinstance(payload, dict):
        raise MalformedReply("reply JSON is not an object")

    action = _action(payload.get("action"))
    label = ""
    for key in _STATE_KEYS:
        label = (_text(payload.get(key)) or "").strip()
        if label:
            break
    if not label:
        raise MalformedReply("missing 'stateLabel'")
    # Present but unrecognised degrades to low; absent is malformed.
    if payload.get("confidence") in (None, ""):
        raise MalformedReply("missing 'confidence'")

    return ActionDecision(
        observation=_text(payload.get("observation")) or "",
        state_label=label,
        action=action,
        confidence=_confidence(payload.get("confidence")),
        candidate_elements=_elements(payload.get("candidateElements", payload.get("elements"))),
        reasoning=_text(payload.get("reasoning")),
        concerns=_text(payload.get("concerns")),
        issues=parse_issues(payload.get("issues"), label),
    )


def parse_decision(reply: str) -> ActionDecision:
    """Parse a raw model reply. Never raises."""
    blob = extract_json_object(reply or "")
    if blob is None:
        _log("No JSON object in reply, using fallback decision")
        return fallback_decision(reply, "no JSON object found")
    try:
        payload = json.loads(blob)
    except json.JSONDecodeError as exc:
        _log(f"Invalid JSON in reply: {exc}")
        return fallback_decision(reply, f"invalid JSON ({exc.msg})")
    try:
        return decision_from_payload(payload)
    except MalformedReply as exc:
        _log(f"Malformed decision: {exc}")
        return fallback_decision(reply, str(exc))


def _load_object(reply: str) -> dict | None:
    blob = extract_json_object(reply or "")
    if blob is None:
        return None
    try:
        payload = json.loads(blob)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class DecisionParser:
    """Wraps the reasoning client: prompt in, ActionDecision out."""

    def __init__(self, client, custom_system_prompt: str | None = None, max_images: int = 3):
        self.client = client
        self.max_images = max_images
        self.system_prompt = SYSTEM_PROMPT
        if custom_system_prompt:
            self.system_prompt += "\n\nAdditional instructions:\n\n" + custom_system_prompt

    def new_conversation(self) -> Conversation:
        return Conversation()

    def decide(
        self, image: EncodedImage, context_prompt: str, conversation: Conversation
    ) -> ActionDecision:
        """Send one turn and record it in the session conversation."""
        try:
            reply = self.client.complete(
                self.system_prompt,
                conversation.messages(self.max_images),
                image,
                context_prompt,
            )
        except ModelCallError as exc:
            _log(f"Model unavailable this step: {exc}")
            return fallback_decision("", f"model call failed: {exc}")

        conversation.append_user(context_prompt, image)
        conversation.append_assistant(reply)
        return parse_decision(reply)

    def analyze_screen(self, image: EncodedImage) -> ScreenAnalysis:
        """One-shot structured analysis of a screen, outside any session."""
        try:
            reply = self.client.complete(self.system_prompt, [], image, SCREEN_ANALYSIS_PROMPT)
        except ModelCallError as exc:
            _log(f"Screen analysis failed: {exc}")
            reply = ""

        payload = _load_object(reply)
        if payload is None:
            return ScreenAnalysis(screen_name=UNKNOWN_STATE, description=reply)

        name = (_text(payload.get("screenName")) or UNKNOWN_STATE).strip() or UNKNOWN_STATE
        cases = payload.get("suggestedTestCases")
        return ScreenAnalysis(
            screen_name=name,
            description=_text(payload.get("description")) or "",
            elements=_elements(payload.get("elements")),
            issues=parse_issues(payload.get("issues"), name),
            suggested_test_cases=[_text(c) for c in cases if c] if isinstance(cases, list) else [],
        )

    def verify_condition(self, image: EncodedImage, condition: str) -> ConditionCheck:
        """Ask whether a visual condition holds on the given screenshot."""
        try:
            reply = self.client.complete(
                self.system_prompt, [], image, VERIFY_PROMPT.format(condition=condition)
            )
        except ModelCallError as exc:
            _log(f"Condition check failed: {exc}")
            reply = ""

        payload = _load_object(reply)
        if payload is None:
            return ConditionCheck(satisfied=False, observation=reply, confidence=Confidence.LOW)
        return ConditionCheck(
            satisfied=payload.get("satisfied") is True,
            observation=_text(payload.get("observation")) or "",
            confidence=_confidence(payload.get("confidence")),
        )

    def compare_screens(
        self, baseline: EncodedImage, current: EncodedImage, context: str = ""
    ) -> ScreenComparison:
        """Model judgement of what changed between a baseline and the current screen."""
        prompt = COMPARE_PROMPT.format(context=f"Context: {context}\n\n" if context else "")
        try:
            reply = self.client.complete(self.system_prompt, [], [baseline, current], prompt)
        except ModelCallError as exc:
            _log(f"Screen comparison failed: {exc}")
            reply = ""

        payload = _load_object(reply)
        if payload is None:
            return ScreenComparison(identical=False, differences=[reply] if reply else [])
        return ScreenComparison(
            identical=payload.get("identical") is True,
            differences=_strings(payload.get("differences")),
            regressions=_strings(payload.get("regressions")),
            improvements=_strings(payload.get("improvements")),
        )

    def locate_element(
        self,
        image: EncodedImage,
        description: str,
        screen_size: tuple[int, int] | None = None,
    ) -> ElementLocation | None:
        """Ask the model for the centre point of a described element; None when not found."""
        space = " in pixel coordinates"
        if screen_size is not None:
            space = f" in screen points, on a {screen_size[0]}x{screen_size[1]} screen"
        prompt = LOCATE_PROMPT.format(description=description, space=space)
        try:
            reply = self.client.complete(self.system_prompt, [], image, prompt)
        except ModelCallError as exc:
            _log(f"Element lookup failed: {exc}")
            return None

        payload = _load_object(reply)
        if payload is None or payload.get("found") is not True:
            return None
        point = _coordinates(payload.get("coordinates"))
        if point is None:
            return None
        if screen_size is not None and not (0 <= point.x <= screen_size[0] and 0 <= point.y <= screen_size[1]):
            _log(f"Located point ({point.x}, {point.y}) is off screen, ignoring")
            return None
        return ElementLocation(
            coordinates=point,
            confidence=_confidence(payload.get("confidence")),
            description=_text(payload.get("description")) or "",
        )
