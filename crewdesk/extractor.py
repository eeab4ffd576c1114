import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from .schemas import ActionKind, TriggeredAction

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")


@dataclass
class Extraction:
    narration_text: str
    action: Optional[TriggeredAction] = None


def _candidate(text: str) -> Optional[str]:
    match = _FENCED_JSON_RE.search(text)
    if match and match.group(1):
        return match.group(1)
    # Greedy: first "{" to last "}". Brace-bearing prose around the object defeats this.
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return None


def _known_kind(value: Any) -> Optional[ActionKind]:
    if not isinstance(value, str):
        return None
    try:
        return ActionKind(value)
    except ValueError:
        return None


def extract(response_text: Optional[str]) -> Extraction:
    """Split a model reply into narration and an optional tool call.

    Any parse problem degrades to narration-only with the full reply as text.
    """
    text = response_text or ""
    raw = _candidate(text)
    if raw is None:
        return Extraction(narration_text=text)
    try:
        parsed = json.loads(raw)
    except ValueError:
        return Extraction(narration_text=text)
    if not isinstance(parsed, dict):
        return Extraction(narration_text=text)
    tool, data, narration = parsed.get("tool"), parsed.get("data"), parsed.get("text")
    if not (tool and data and narration):
        return Extraction(narration_text=text)
    kind = _known_kind(tool)
    if kind is None:
        return Extraction(narration_text=text)
    return Extraction(
        narration_text=str(narration),
        action=TriggeredAction(kind=kind, payload=data, narration_text=str(narration)),
    )
