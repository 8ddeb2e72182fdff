from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any


_PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def _walk(current: Any, segments: list[str]) -> tuple[bool, Any]:
    for segment in segments:
        if not isinstance(current, Mapping) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def resolve_path(variables: Mapping[str, Any], path: str) -> tuple[bool, Any]:
    """Dotted lookup against the execution variable context.

    ``variables.x`` is an alias for ``x``; ``contact.x`` falls back to the
    contact's custom fields when ``x`` is not a standard contact field.
    """
    segments = [segment for segment in path.strip().split(".") if segment]
    if not segments:
        return False, None

    found, value = _walk(variables, segments)
    if found:
        return True, value

    head, rest = segments[0], segments[1:]
    if head == "variables" and rest:
        return _walk(variables, rest)
    if head == "contact" and rest:
        contact = variables.get("contact")
        if isinstance(contact, Mapping):
            return _walk(contact.get("custom_fields") or {}, rest)
    return False, None


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        found, value = resolve_path(variables, match.group(1))
        return _stringify(value) if found else ""

    return _PLACEHOLDER_RE.sub(_replace, template)


def render_value(value: Any, variables: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        return render_template(value, variables)
    if isinstance(value, dict):
        return {key: render_value(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, variables) for item in value]
    return value
