"""Update expression parsing and application.

Supported update grammar:

    SET path = :value [, path = :value ...]
    ADD path :value [, path :value ...]

Clauses may appear in any order; each clause keyword is recognized once and
only its first occurrence is applied. ``REMOVE`` and ``DELETE`` clauses are
recognized as clause boundaries but ignored. Actions outside the grammar (for
example ``SET a = if_not_exists(a, :v)``) are skipped.

``SET`` overwrites the target attribute. ``ADD`` adds the value to the current
number (default 0); if either operand is not a number, that action is a
no-op. An action whose ``#name`` or ``:value`` placeholder has no mapping is
also a no-op.

This module also owns the ``updatedAt`` merge applied to every update before it
is sent to a backend.
"""

import copy
import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from pydynastore.conditions import MISSING, resolve_path, resolve_segments
from pydynastore.keys import is_number, normalize_number

UPDATED_AT_ATTRIBUTE = "updatedAt"

_CLAUSE_PATTERN = re.compile(r"(?<![#:\w.])(SET|ADD|REMOVE|DELETE)(?=\s)", re.IGNORECASE)
_SET_ACTION_PATTERN = re.compile(r"^([#\w.]+)\s*=\s*(:\w+)$")
_ADD_ACTION_PATTERN = re.compile(r"^([#\w.]+)\s+(:\w+)$")


@dataclass(frozen=True)
class SetAction:
    """``SET path = :value``."""

    path: str
    value: str


@dataclass(frozen=True)
class AddAction:
    """``ADD path :value``."""

    path: str
    value: str


@dataclass(frozen=True)
class UpdateExpression:
    """A parsed update expression.

    Attributes:
        set_actions: Actions of the SET clause, in source order.
        add_actions: Actions of the ADD clause, in source order.

    """

    set_actions: tuple[SetAction, ...] = ()
    add_actions: tuple[AddAction, ...] = ()


def split_clauses(expression: str) -> dict[str, str]:
    """Split an update expression into its clauses, keyed by upper-case keyword.

    Only the first occurrence of each keyword is kept.
    """
    matches = list(_CLAUSE_PATTERN.finditer(expression))
    clauses: dict[str, str] = {}
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(expression)
        keyword = match.group(1).upper()
        if keyword not in clauses:
            clauses[keyword] = expression[match.end() : end].strip()
    return clauses


def _split_actions(clause: str) -> list[str]:
    return [action.strip() for action in clause.split(",") if action.strip()]


def parse_update(expression: str) -> UpdateExpression:
    """Parse an update expression. Unrecognized actions are dropped."""
    clauses = split_clauses(expression)

    set_actions: list[SetAction] = []
    for action in _split_actions(clauses.get("SET", "")):
        match = _SET_ACTION_PATTERN.match(action)
        if match:
            set_actions.append(SetAction(path=match.group(1), value=match.group(2)))

    add_actions: list[AddAction] = []
    for action in _split_actions(clauses.get("ADD", "")):
        match = _ADD_ACTION_PATTERN.match(action)
        if match:
            add_actions.append(AddAction(path=match.group(1), value=match.group(2)))

    return UpdateExpression(set_actions=tuple(set_actions), add_actions=tuple(add_actions))


def _assign(item: dict[str, Any], segments: list[str], value: Any) -> None:
    target: Any = item
    for segment in segments[:-1]:
        target = target.get(segment) if isinstance(target, dict) else None
        if not isinstance(target, dict):
            return
    target[segments[-1]] = value


def apply_update(
    item: Mapping[str, Any],
    update: UpdateExpression,
    *,
    names: Mapping[str, str] | None = None,
    values: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Apply a parsed update to a copy of ``item`` and return the copy.

    Example:
        update = parse_update("SET #name = :name ADD visits :one")
        apply_update(
            {"userId": "u1", "visits": 1},
            update,
            names={"#name": "name"},
            values={":name": "Marge", ":one": 1},
        )
        == {"userId": "u1", "visits": 2, "name": "Marge"}

    """
    names = names or {}
    values = values or {}
    result = copy.deepcopy(dict(item))

    for set_action in update.set_actions:
        segments = resolve_segments(set_action.path, names)
        if segments is None or set_action.value not in values:
            continue
        _assign(result, segments, copy.deepcopy(values[set_action.value]))

    for add_action in update.add_actions:
        segments = resolve_segments(add_action.path, names)
        if segments is None or add_action.value not in values:
            continue
        current = resolve_path(result, add_action.path, names)
        if current is MISSING:
            current = 0
        addend = values[add_action.value]
        if not (is_number(current) and is_number(addend)):
            continue
        total = Decimal(str(current)) + Decimal(str(addend))
        _assign(result, segments, normalize_number(total))

    return result


def sets_attribute(
    expression: str,
    attribute: str,
    names: Mapping[str, str] | None = None,
) -> bool:
    """Return True if the SET clause of ``expression`` already assigns ``attribute``."""
    names = names or {}
    for action in parse_update(expression).set_actions:
        if resolve_segments(action.path, names) == [attribute]:
            return True
    return False


def free_placeholder(prefix: str, base: str, taken: Mapping[str, Any]) -> str:
    """Return ``prefix + base`` (suffixed with a counter if needed) not already in ``taken``."""
    placeholder = f"{prefix}{base}"
    suffix = 0
    while placeholder in taken:
        suffix += 1
        placeholder = f"{prefix}{base}{suffix}"
    return placeholder


def merge_updated_at(
    expression: str,
    names: Mapping[str, str] | None,
    values: Mapping[str, Any] | None,
    *,
    timestamp: str,
    attribute: str = UPDATED_AT_ATTRIBUTE,
) -> tuple[str, dict[str, str], dict[str, Any]]:
    """Merge ``SET #updatedAt = :updatedAt`` into an update expression.

    The assignment joins the existing SET clause, or a new SET clause is
    prepended when there is none. If the caller already sets the attribute,
    the expression is returned unchanged.

    Args:
        expression: The caller's update expression.
        names: The caller's ``#name`` placeholders.
        values: The caller's ``:value`` placeholders.
        timestamp: The timestamp to assign.
        attribute: The timestamp attribute name.

    Returns:
        The merged expression and the merged placeholder maps (new dicts).

    Example:
        merge_updated_at("SET #n = :n", {"#n": "name"}, {":n": "x"}, timestamp=now)
        == ("SET #updatedAt = :updatedAt, #n = :n", {...}, {...})

    """
    merged_names = dict(names or {})
    merged_values = dict(values or {})

    if sets_attribute(expression, attribute, merged_names):
        return expression, merged_names, merged_values

    name_placeholder = free_placeholder("#", attribute, merged_names)
    value_placeholder = free_placeholder(":", attribute, merged_values)
    merged_names[name_placeholder] = attribute
    merged_values[value_placeholder] = timestamp
    assignment = f"{name_placeholder} = {value_placeholder}"

    set_match = next(
        (m for m in _CLAUSE_PATTERN.finditer(expression) if m.group(1).upper() == "SET"),
        None,
    )
    if set_match is None:
        merged = f"SET {assignment} {expression.strip()}".strip()
    else:
        merged = (
            f"{expression[: set_match.end()]} {assignment},{expression[set_match.end() :]}"
        )

    return merged, merged_names, merged_values


__all__ = [
    "UPDATED_AT_ATTRIBUTE",
    "AddAction",
    "SetAction",
    "UpdateExpression",
    "apply_update",
    "free_placeholder",
    "merge_updated_at",
    "parse_update",
    "sets_attribute",
    "split_clauses",
]
