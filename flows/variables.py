"""
Variable substitution for node text fields.

`{name}` placeholders are replaced with the display text of the session
variable. Unknown names stay verbatim so half-configured flows remain
readable in the chat window.
"""
from __future__ import annotations

import json
import re
from typing import Any

PLACEHOLDER = re.compile(r"\{(\w+)\}")


def to_display_text(value: Any) -> str:
    """Canonical text for a loosely typed variable value."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return str(value)


def resolve(text: str, variables: dict[str, Any]) -> str:
    if not text:
        return ""

    def replacer(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return to_display_text(variables[name])

    return PLACEHOLDER.sub(replacer, text)


def resolve_mapping(mapping: dict[str, Any], variables: dict[str, Any]) -> dict[str, Any]:
    """Substitute every string leaf of a (nested) dict/list structure."""
    def walk(obj: Any) -> Any:
        if isinstance(obj, str):
            return resolve(obj, variables)
        if isinstance(obj, dict):
            return {k: walk(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(v) for v in obj]
        return obj
    return walk(mapping)
