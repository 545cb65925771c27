"""Condition expression parsing and evaluation.

Condition expressions gate conditional writes and filter query/scan results.
The supported grammar is the subset used by the application:

    condition   := disjunction
    disjunction := conjunction ( "OR" conjunction )*
    conjunction := atom ( "AND" atom )*
    atom        := "attribute_exists(" path ")"
                 | "attribute_not_exists(" path ")"
                 | path ( "=" | ">" | ">=" | "<" | "<=" ) ":value"

Parentheses are not supported. ``AND`` binds tighter than ``OR``, matching
DynamoDB. Paths may be attribute names, ``#name`` placeholders, or dotted
paths into nested maps.

Expressions are parsed into a small tree of frozen dataclasses and evaluated
against an item. Evaluation fails closed: an atom that does not parse, a
placeholder with no mapping, an ordering comparison across types, or a
comparison against a missing item all evaluate to False rather than raising.

Example:
    condition = parse_condition("#status = :status AND attribute_exists(email)")
    evaluate(condition, item, names={"#status": "status"}, values={":status": "active"})

"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal, TypeAlias, Union

from pydynastore.exceptions import InsufficientConditionsError
from pydynastore.keys import is_number

ComparisonOperator: TypeAlias = Literal["=", ">", ">=", "<", "<="]

MISSING = object()

_OR_PATTERN = re.compile(r"\s+OR\s+", re.IGNORECASE)
_AND_PATTERN = re.compile(r"\s+AND\s+", re.IGNORECASE)
_EXISTS_PATTERN = re.compile(r"^attribute_exists\s*\(\s*([#\w.]+)\s*\)$", re.IGNORECASE)
_NOT_EXISTS_PATTERN = re.compile(r"^attribute_not_exists\s*\(\s*([#\w.]+)\s*\)$", re.IGNORECASE)
_COMPARISON_PATTERN = re.compile(r"^([#\w.]+)\s*(>=|<=|=|>|<)\s*(:\w+)$")


@dataclass(frozen=True)
class Comparison:
    """Binary comparison between an attribute and a value placeholder."""

    path: str
    operator: ComparisonOperator
    value: str


@dataclass(frozen=True)
class AttributeExists:
    """True when the attribute is present on the item."""

    path: str


@dataclass(frozen=True)
class AttributeNotExists:
    """True when the item, or the attribute on it, is absent."""

    path: str


@dataclass(frozen=True)
class And:
    """Logical AND of two or more conditions."""

    conditions: tuple["Condition", ...]

    def __post_init__(self) -> None:
        if len(self.conditions) < 2:
            raise InsufficientConditionsError(operator="And", count=len(self.conditions))


@dataclass(frozen=True)
class Or:
    """Logical OR of two or more conditions."""

    conditions: tuple["Condition", ...]

    def __post_init__(self) -> None:
        if len(self.conditions) < 2:
            raise InsufficientConditionsError(operator="Or", count=len(self.conditions))


@dataclass(frozen=True)
class Unsupported:
    """An expression fragment outside the supported grammar. Always False."""

    text: str = field(default="")


Condition: TypeAlias = Union[Comparison, AttributeExists, AttributeNotExists, And, Or, Unsupported]


def _parse_atom(text: str) -> Condition:
    text = text.strip()

    match = _EXISTS_PATTERN.match(text)
    if match:
        return AttributeExists(path=match.group(1))

    match = _NOT_EXISTS_PATTERN.match(text)
    if match:
        return AttributeNotExists(path=match.group(1))

    match = _COMPARISON_PATTERN.match(text)
    if match:
        path, operator, value = match.groups()
        return Comparison(path=path, operator=operator, value=value)  # type: ignore[arg-type]

    return Unsupported(text=text)


def _parse_conjunction(text: str) -> Condition:
    parts = _AND_PATTERN.split(text)
    if len(parts) == 1:
        return _parse_atom(parts[0])
    return And(tuple(_parse_atom(part) for part in parts))


def parse_condition(expression: str) -> Condition:
    """Parse a condition expression into a condition tree.

    Never raises for unrecognized input; unknown fragments become Unsupported.
    """
    expression = expression.strip()
    if not expression:
        return Unsupported(text=expression)

    parts = _OR_PATTERN.split(expression)
    if len(parts) == 1:
        return _parse_conjunction(parts[0])
    return Or(tuple(_parse_conjunction(part) for part in parts))


def resolve_path(
    item: Mapping[str, Any],
    path: str,
    names: Mapping[str, str],
) -> Any:
    """Resolve a (possibly aliased, possibly dotted) path against ``item``.

    Returns the ``MISSING`` sentinel if the path does not resolve.
    """
    current: Any = item
    for segment in resolve_segments(path, names) or ():
        if not isinstance(current, Mapping) or segment not in current:
            return MISSING
        current = current[segment]
    return current


def resolve_segments(path: str, names: Mapping[str, str]) -> list[str] | None:
    """Split ``path`` on dots and substitute ``#name`` placeholders.

    Returns None if a placeholder has no mapping.
    """
    segments: list[str] = []
    for segment in path.split("."):
        if segment.startswith("#"):
            if segment not in names:
                return None
            segments.append(names[segment])
        else:
            segments.append(segment)
    return segments


def compare_values(left: Any, operator: ComparisonOperator, right: Any) -> bool:
    """Compare two values. Ordering requires both strings or both numbers."""
    if is_number(left) and is_number(right):
        left = Decimal(str(left)) if isinstance(left, float) else left
        right = Decimal(str(right)) if isinstance(right, float) else right
    elif isinstance(left, str) and isinstance(right, str):
        pass
    elif operator == "=":
        return type(left) is type(right) and bool(left == right)
    else:
        return False

    if operator == "=":
        return bool(left == right)
    if operator == ">":
        return bool(left > right)
    if operator == ">=":
        return bool(left >= right)
    if operator == "<":
        return bool(left < right)
    return bool(left <= right)


def evaluate(
    condition: Condition,
    item: Mapping[str, Any] | None,
    *,
    names: Mapping[str, str] | None = None,
    values: Mapping[str, Any] | None = None,
) -> bool:
    """Evaluate a parsed condition against ``item`` (None when the item is absent)."""
    names = names or {}
    values = values or {}

    if isinstance(condition, And):
        return all(evaluate(c, item, names=names, values=values) for c in condition.conditions)

    if isinstance(condition, Or):
        return any(evaluate(c, item, names=names, values=values) for c in condition.conditions)

    if isinstance(condition, AttributeExists):
        if item is None or resolve_segments(condition.path, names) is None:
            return False
        return resolve_path(item, condition.path, names) is not MISSING

    if isinstance(condition, AttributeNotExists):
        if resolve_segments(condition.path, names) is None:
            return False
        if item is None:
            return True
        return resolve_path(item, condition.path, names) is MISSING

    if isinstance(condition, Comparison):
        if item is None or condition.value not in values:
            return False
        if resolve_segments(condition.path, names) is None:
            return False
        actual = resolve_path(item, condition.path, names)
        if actual is MISSING:
            return False
        return compare_values(actual, condition.operator, values[condition.value])

    return False


def evaluate_condition(
    expression: str | None,
    item: Mapping[str, Any] | None,
    *,
    names: Mapping[str, str] | None = None,
    values: Mapping[str, Any] | None = None,
) -> bool:
    """Parse and evaluate a condition expression.

    Args:
        expression: The condition expression. None or blank is vacuously True.
        item: The current item, or None if it does not exist.
        names: ``#name`` placeholder mapping.
        values: ``:value`` placeholder mapping.

    Returns:
        Whether the condition holds. Unrecognized forms evaluate to False.

    """
    if expression is None or not expression.strip():
        return True
    return evaluate(parse_condition(expression), item, names=names, values=values)


__all__ = [
    "And",
    "AttributeExists",
    "AttributeNotExists",
    "Comparison",
    "ComparisonOperator",
    "Condition",
    "MISSING",
    "Or",
    "Unsupported",
    "compare_values",
    "evaluate",
    "evaluate_condition",
    "parse_condition",
    "resolve_path",
    "resolve_segments",
]
