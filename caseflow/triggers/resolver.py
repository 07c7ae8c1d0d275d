"""
Placeholder resolution for trigger actions.

Resolves ``{{ event.payload.key }}`` syntax in action text without eval/exec.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional

from caseflow.core.models import BusinessEvent


@dataclass
class PlaceholderReference:
    """Represents a parsed placeholder reference."""

    full_match: str
    root: str
    path: list[str | int]  # e.g. ["payload", "document", "name"]
    start_pos: int
    end_pos: int


class EventPlaceholderResolver:
    """
    Resolves placeholders against a business event.

    Supports:
    - {{ event.name }}, {{ event.case_id }}, {{ event.module_tag }}
    - {{ event.payload.key }} - a payload value
    - {{ event.payload.nested.path }} and list indices ({{ event.payload.files[0] }})

    Navigation only goes through dict keys and list indices.
    """

    # Pattern to match {{ reference }}
    PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")

    # Pattern to validate reference format
    REFERENCE_PATTERN = re.compile(r"^([a-zA-Z_][a-zA-Z0-9_\-]*)(?:\.([a-zA-Z_][a-zA-Z0-9_.\[\]\-]*)?)?$")

    ALLOWED_ROOTS = {"event"}
    EVENT_FIELDS = {"name", "case_id", "module_tag", "payload", "occurred_at"}

    def __init__(self, event: BusinessEvent):
        self.event = event
        self._context = {"event": event.model_dump(mode="json")}

    def resolve(self, value: Any) -> Any:
        """Resolve placeholders in strings, dicts and lists recursively."""
        if isinstance(value, str):
            return self._resolve_string(value)
        elif isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [self.resolve(v) for v in value]
        return value

    def _resolve_string(self, text: str) -> str:
        references = find_references(text)
        if not references:
            return text

        result = text
        for ref in reversed(references):  # Reverse to maintain positions
            value = self._navigate(self._context.get(ref.root), ref.path)
            str_value = str(value) if value is not None else ""
            result = result[:ref.start_pos] + str_value + result[ref.end_pos:]
        return result

    def _navigate(self, value: Any, path: list) -> Any:
        current = value
        for key in path:
            if current is None:
                return None
            if isinstance(key, int):
                if isinstance(current, list) and 0 <= key < len(current):
                    current = current[key]
                else:
                    return None
            elif isinstance(current, dict):
                current = current.get(key)
            else:
                return None
        return current


def _parse_reference(reference: str) -> Optional[tuple[str, list[str | int]]]:
    """
    Parse a reference string into (root, path).

    Examples:
        "event.case_id" -> ("event", ["case_id"])
        "event.payload.files[0]" -> ("event", ["payload", "files", 0])
    """
    match = EventPlaceholderResolver.REFERENCE_PATTERN.match(reference)
    if not match:
        return None

    root = match.group(1)
    path_str = match.group(2) or ""

    path: list[str | int] = []
    if path_str:
        for part in re.split(r"\.(?![^\[]*\])", path_str):
            array_match = re.match(r"([a-zA-Z_][a-zA-Z0-9_\-]*)\[(\d+)\]", part)
            if array_match:
                path.append(array_match.group(1))
                path.append(int(array_match.group(2)))
            else:
                path.append(part)

    return root, path


def find_references(text: str) -> list[PlaceholderReference]:
    """Find all well-formed placeholder references in a string."""
    references = []
    for match in EventPlaceholderResolver.PLACEHOLDER_PATTERN.finditer(text):
        parsed = _parse_reference(match.group(1).strip())
        if parsed:
            references.append(PlaceholderReference(
                full_match=match.group(0),
                root=parsed[0],
                path=parsed[1],
                start_pos=match.start(),
                end_pos=match.end(),
            ))
    return references


def validate_placeholders(text: str) -> list[str]:
    """
    Check every ``{{ ... }}`` in text.

    Returns a list of problems; empty when all placeholders are resolvable.
    """
    problems = []
    for match in EventPlaceholderResolver.PLACEHOLDER_PATTERN.finditer(text):
        reference = match.group(1).strip()
        parsed = _parse_reference(reference)
        if parsed is None:
            problems.append(f"Malformed placeholder '{match.group(0)}'")
            continue
        root, path = parsed
        if root not in EventPlaceholderResolver.ALLOWED_ROOTS:
            problems.append(f"Unknown placeholder root '{root}' in '{match.group(0)}'")
        elif not path or path[0] not in EventPlaceholderResolver.EVENT_FIELDS:
            problems.append(f"Unknown event field in '{match.group(0)}'")
    return problems
