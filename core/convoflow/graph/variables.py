"""
Variable Store - per-session key/value state with ``{{name}}`` interpolation.

Values are arbitrary JSON-like data. Placeholders may use dotted paths
(``{{contact.first_name}}``) to reach into nested dicts; a name that does
not resolve interpolates to the empty string.
"""

import json
import re
from typing import Any

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")

# Returned by VariableStore.resolve for names that do not exist
MISSING = object()


def stringify(value: Any) -> str:
    """Render a variable value the way it appears inside interpolated text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class VariableStore:
    """
    Session-scoped variables.

    Single writer within one turn. The store owns a private copy of the
    mapping it is created from, so a caller's dict is never mutated.
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self._values: dict[str, Any] = dict(initial or {})

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) is not MISSING

    def __len__(self) -> int:
        return len(self._values)

    def get(self, name: str, default: Any = None) -> Any:
        value = self.resolve(name)
        return default if value is MISSING else value

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value

    def update(self, values: dict[str, Any]) -> None:
        self._values.update(values)

    def delete(self, name: str) -> None:
        self._values.pop(name, None)

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy of the current mapping."""
        return dict(self._values)

    def resolve(self, name: str) -> Any:
        """
        Look up ``name``, following dots into nested dicts.

        An exact key match wins over a dotted path, so a variable literally
        named ``a.b`` is still reachable. Returns a sentinel when missing.
        """
        if name in self._values:
            return self._values[name]
        if "." not in name:
            return MISSING
        current: Any = self._values
        for part in name.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return MISSING
        return current

    def interpolate(self, template: str) -> str:
        """Replace every ``{{name}}`` with the stringified current value."""
        if not isinstance(template, str) or "{{" not in template:
            return template

        def _replace(match: re.Match) -> str:
            value = self.resolve(match.group(1))
            return "" if value is MISSING else stringify(value)

        return PLACEHOLDER_PATTERN.sub(_replace, template)

    def interpolate_payload(self, payload: Any) -> Any:
        """Interpolate every string inside a nested dict/list payload."""
        if isinstance(payload, str):
            return self.interpolate(payload)
        if isinstance(payload, dict):
            return {key: self.interpolate_payload(value) for key, value in payload.items()}
        if isinstance(payload, list):
            return [self.interpolate_payload(item) for item in payload]
        return payload
