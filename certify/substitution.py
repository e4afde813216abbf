"""
Placeholder Substitution Engine

Renders HTML templates and email texts containing {{field}} placeholders.

Substitution is a literal pass per key, applied in the order the fields are
given. A later key therefore rewrites any placeholder text that an earlier
value introduced:

    render("{{a}}{{b}}", [("a", "{{b}}"), ("b", "Z")])  ->  "ZZ"

Placeholders with no matching key are left untouched. Field sources are
layered with merge_fields, where a later source wins for an identical key.
"""

import re
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")

FieldPairs = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]

# Keys the row's name column is also published under
NAME_ALIASES = ("name", "nome")


def placeholder(key: str) -> str:
    """Wrap a key in placeholder delimiters"""
    return "{{" + key + "}}"


def _iter_pairs(fields: FieldPairs) -> Iterable[Tuple[str, Any]]:
    if isinstance(fields, Mapping):
        return fields.items()
    return fields


def render(template: str, fields: FieldPairs) -> str:
    """
    Replace every {{key}} occurrence with its value, one key at a time

    Args:
        template: Template text with {{key}} placeholders
        fields: Ordered (key, value) pairs or a mapping (insertion order)

    Returns:
        Rendered text; unknown placeholders are kept verbatim
    """
    rendered = template or ""
    for key, value in _iter_pairs(fields):
        rendered = rendered.replace(placeholder(str(key)), "" if value is None else str(value))
    return rendered


def detect_fields(template: str) -> List[str]:
    """Return unique placeholder names in first-seen order"""
    seen: List[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(template or ""):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen


def merge_fields(*sources: FieldPairs) -> Dict[str, Any]:
    """
    Combine field sources, lowest precedence first

    A key supplied again by a later source takes the later value but keeps
    its first position in the substitution order.
    """
    merged: Dict[str, Any] = {}
    for source in sources:
        for key, value in _iter_pairs(source):
            merged[key] = value
    return merged


def row_fields(row: Mapping[str, str], name_column: str) -> Dict[str, str]:
    """
    Build the field set used to render a certificate for one dataset row

    The name column value is published under the normalized aliases; the
    row's own columns take precedence over them.
    """
    name_value = row.get(name_column, "")
    return merge_fields([(alias, name_value) for alias in NAME_ALIASES], row)
