"""Variable interpolation for step configuration.

Resolves ``${data.path}`` and ``${variables.path}`` references inside
strings. Paths support dots, list indexes and bracket keys::

    ${data.apiResponse.body.items[0].id}
    ${data.apiResponse.headers['content-type']}

Unresolvable references are left untouched so a later step (or a human)
can see what was missing.
"""

import json
import re
from typing import Any, Optional

import structlog

from workflow.context import RunContext

logger = structlog.get_logger(__name__)

_REFERENCE = re.compile(r"\$\{((?:data|variables)(?:\.[A-Za-z0-9_\-]+|\[[^\]]+\])+)\}")
_FULL_REFERENCE = re.compile(r"^\s*" + _REFERENCE.pattern + r"\s*$")

_MISSING = object()


def parse_path(path: str) -> list[str]:
    """Split ``a.b['c-d'][0]`` into ``["a", "b", "c-d", "0"]``."""
    parts: list[str] = []
    current = ""
    in_brackets = False
    quote = ""

    for char in path:
        if char == "[" and not in_brackets:
            if current:
                parts.append(current)
                current = ""
            in_brackets = True
        elif char == "]" and in_brackets and not quote:
            if current:
                parts.append(current)
                current = ""
            in_brackets = False
        elif char in ("'", '"') and in_brackets:
            if not quote:
                quote = char
            elif quote == char:
                quote = ""
            else:
                current += char
        elif char == "." and not in_brackets:
            if current:
                parts.append(current)
                current = ""
        else:
            current += char

    if current:
        parts.append(current)
    return parts


def get_nested_value(obj: Any, path: str | list[str]) -> Any:
    """Walk ``obj`` along a dotted/indexed path. Returns None when any hop is missing."""
    parts = parse_path(path) if isinstance(path, str) else path
    current = obj
    for part in parts:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            current = getattr(current, part, None)
    return current


def _lookup(path: str, context: RunContext) -> Any:
    source, *keys = parse_path(path)
    base = context.data if source == "data" else context.variables
    if not keys:
        return dict(base)
    head, *rest = keys
    if head not in base:
        return _MISSING
    value = get_nested_value(base[head], rest) if rest else base[head]
    return _MISSING if value is None and rest else value


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class VariableInterpolator:
    """Resolves context references in strings and nested config objects."""

    @staticmethod
    def interpolate_string(template: Any, context: RunContext) -> Any:
        if not isinstance(template, str) or "${" not in template:
            return template

        def _replace(match: re.Match) -> str:
            value = _lookup(match.group(1), context)
            if value is _MISSING:
                return match.group(0)
            return stringify(value)

        return _REFERENCE.sub(_replace, template)

    @staticmethod
    def resolve_reference(template: Any, context: RunContext) -> Any:
        """Like interpolate_string, but a lone reference keeps the referenced type.

        ``"${data.items}"`` returns the list itself rather than its JSON text.
        """
        if isinstance(template, str):
            match = _FULL_REFERENCE.match(template)
            if match:
                value = _lookup(match.group(1), context)
                return template if value is _MISSING else value
        return VariableInterpolator.interpolate_string(template, context)

    @classmethod
    def interpolate_object(cls, obj: Any, context: RunContext) -> Any:
        if isinstance(obj, str):
            return cls.interpolate_string(obj, context)
        if isinstance(obj, list):
            return [cls.interpolate_object(item, context) for item in obj]
        if isinstance(obj, dict):
            return {key: cls.interpolate_object(value, context) for key, value in obj.items()}
        return obj

    @classmethod
    def interpolate_number(
        cls,
        value: Any,
        context: RunContext,
        default: Optional[float] = None,
    ) -> Optional[float]:
        """Interpolate then coerce to a number; ``default`` when empty or unparsable."""
        if value is None or value == "":
            return default
        if isinstance(value, bool):
            return default
        if isinstance(value, (int, float)):
            return value
        resolved = cls.interpolate_string(str(value), context).strip()
        try:
            number = float(resolved)
        except ValueError:
            logger.warning("Could not coerce value to number", value=resolved)
            return default
        return int(number) if number.is_integer() else number

    @classmethod
    def interpolate_bool(cls, value: Any, context: RunContext, default: bool = False) -> bool:
        if value is None or value == "":
            return default
        if isinstance(value, bool):
            return value
        resolved = cls.interpolate_string(str(value), context).strip().lower()
        return resolved in ("true", "1", "yes", "on")
