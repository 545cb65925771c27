"""Fluent query and scan builders.

Builders are created by a service (``service.query(pk)`` / ``service.scan()``),
mutated by the caller and run with ``execute()``. Every chained method mutates
the builder and returns the same instance, so a builder must not be shared
between concurrent executions that expect independent state.

Builders only accumulate request state (``QueryRequest`` / ``ScanRequest``).
Execution is delegated back to the owning service, so the same builder API
drives both the DynamoDB-backed service and the in-memory emulator.

Example:
    result = await (
        messages.query("chat-1")
        .add_sort_key(SortKeyCondition.gt(1500))
        .filter("#role = :role", {"#role": "role"}, {":role": "user"})
        .limit(20)
        .execute()
    )

    async for batch in users.scan_stream().filter("#s = :s", {"#s": "status"}, {":s": "active"}):
        for user in batch:
            ...

"""

import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Generic, Literal, NamedTuple, TypeAlias, TypeVar

from pydantic import BaseModel
from typing_extensions import Self

from pydynastore.conditions import compare_values
from pydynastore.exceptions import ValidationError
from pydynastore.keys import KeyPart, KeyValue, LastEvaluatedKey

ItemT = TypeVar("ItemT", bound=BaseModel)

SortKeyOperator: TypeAlias = Literal["=", ">", ">=", "<", "<=", "begins_with", "between"]

if TYPE_CHECKING:
    from pydynastore.base import DynamoDbService

    class PaginatedResult(NamedTuple, Generic[ItemT]):
        """Result of a query or scan page.

        Attributes:
            items: The returned items (validated model instances).
            last_evaluated_key: Continuation token for the next page. None means
                the traversal is complete.
            count: Number of returned items, always ``len(items)``.
            scanned_count: Number of items inspected before the filter and
                limit were applied. Always >= count.

        """

        items: list[ItemT]
        last_evaluated_key: LastEvaluatedKey | None
        count: int
        scanned_count: int
else:

    class PaginatedResult(NamedTuple):
        """Result of a query or scan page.

        At runtime this is a non-generic NamedTuple for compatibility. During
        type checking it is treated as `PaginatedResult[ItemT]`.
        """

        items: list[Any]
        last_evaluated_key: LastEvaluatedKey | None
        count: int
        scanned_count: int


_SK_COMPARISON = re.compile(r"^([#\w]+)\s*(>=|<=|=|>|<)\s*(:\w+)$")
_SK_BEGINS_WITH = re.compile(r"^begins_with\s*\(\s*([#\w]+)\s*,\s*(:\w+)\s*\)$", re.IGNORECASE)
_SK_BETWEEN = re.compile(r"^([#\w]+)\s+BETWEEN\s+(:\w+)\s+AND\s+(:\w+)$", re.IGNORECASE)


@dataclass(frozen=True)
class SortKeyCondition:
    """A condition on the sort key of a query.

    Use the constructors rather than building instances directly.

    Example:
        SortKeyCondition.gt(1500)
        SortKeyCondition.begins_with("2024-")
        SortKeyCondition.between(1000, 2000)

    """

    operator: SortKeyOperator
    value: KeyValue
    upper: KeyValue | None = None

    @staticmethod
    def eq(value: KeyValue) -> "SortKeyCondition":
        return SortKeyCondition("=", value)

    @staticmethod
    def gt(value: KeyValue) -> "SortKeyCondition":
        return SortKeyCondition(">", value)

    @staticmethod
    def gte(value: KeyValue) -> "SortKeyCondition":
        return SortKeyCondition(">=", value)

    @staticmethod
    def lt(value: KeyValue) -> "SortKeyCondition":
        return SortKeyCondition("<", value)

    @staticmethod
    def lte(value: KeyValue) -> "SortKeyCondition":
        return SortKeyCondition("<=", value)

    @staticmethod
    def begins_with(prefix: str) -> "SortKeyCondition":
        return SortKeyCondition("begins_with", prefix)

    @staticmethod
    def between(lower: KeyValue, upper: KeyValue) -> "SortKeyCondition":
        return SortKeyCondition("between", lower, upper)

    @classmethod
    def parse(
        cls,
        expression: str,
        values: Mapping[str, Any] | None = None,
    ) -> "SortKeyCondition":
        """Parse a raw key-condition fragment on the sort key.

        Supports ``sk OP :v``, ``begins_with(sk, :v)`` and
        ``sk BETWEEN :a AND :b``. The attribute in the fragment is taken to be
        the active sort key.

        Raises:
            ValidationError: If the fragment is not recognized or references a
                value placeholder missing from ``values``.

        """
        values = values or {}
        text = expression.strip()

        def lookup(placeholder: str) -> Any:
            if placeholder not in values:
                raise ValidationError(
                    f"Sort key expression references undefined value {placeholder!r}"
                )
            return values[placeholder]

        match = _SK_COMPARISON.match(text)
        if match:
            return cls(match.group(2), lookup(match.group(3)))  # type: ignore[arg-type]

        match = _SK_BEGINS_WITH.match(text)
        if match:
            return cls("begins_with", lookup(match.group(2)))

        match = _SK_BETWEEN.match(text)
        if match:
            return cls("between", lookup(match.group(2)), lookup(match.group(3)))

        raise ValidationError(f"Unsupported sort key expression: {expression!r}")

    def validate_for(self, sort_key: KeyPart) -> None:
        """Check the condition's operands against the sort key type.

        Raises:
            ValidationError: If an operand has the wrong type, or begins_with is
                used on a numeric sort key.

        """
        if self.operator == "begins_with" and sort_key.type != "string":
            raise ValidationError(
                f"begins_with is not supported on numeric sort key {sort_key.name!r}"
            )
        sort_key.coerce(self.value)
        if self.operator == "between":
            sort_key.coerce(self.upper)

    def to_expression(
        self,
        name_placeholder: str,
        value_placeholder: str = ":sk",
    ) -> tuple[str, dict[str, Any]]:
        """Render the condition as a key-condition fragment and its values.

        Example:
            SortKeyCondition.between(1, 5).to_expression("#sk")
            == ("#sk BETWEEN :sk AND :skEnd", {":sk": 1, ":skEnd": 5})

        """
        if self.operator == "begins_with":
            return (
                f"begins_with({name_placeholder}, {value_placeholder})",
                {value_placeholder: self.value},
            )
        if self.operator == "between":
            upper_placeholder = f"{value_placeholder}End"
            return (
                f"{name_placeholder} BETWEEN {value_placeholder} AND {upper_placeholder}",
                {value_placeholder: self.value, upper_placeholder: self.upper},
            )
        return (
            f"{name_placeholder} {self.operator} {value_placeholder}",
            {value_placeholder: self.value},
        )

    def matches(self, value: Any) -> bool:
        """Evaluate the condition against a stored sort key value."""
        if self.operator == "begins_with":
            return isinstance(value, str) and isinstance(self.value, str) and (
                value.startswith(self.value)
            )
        if self.operator == "between":
            return compare_values(value, ">=", self.value) and compare_values(
                value, "<=", self.upper
            )
        return compare_values(value, self.operator, self.value)


@dataclass
class ReadRequest:
    """State shared by query and scan requests."""

    filter_expression: str | None = None
    expression_attribute_names: dict[str, str] = field(default_factory=dict)
    expression_attribute_values: dict[str, Any] = field(default_factory=dict)
    limit: int | None = None
    consistent_read: bool = False
    exclusive_start_key: LastEvaluatedKey | None = None
    index_name: str | None = None


@dataclass
class QueryRequest(ReadRequest):
    """Accumulated state of a query builder."""

    partition_key_value: Any = None
    sort_key_condition: SortKeyCondition | None = None
    scan_index_forward: bool = True


@dataclass
class ScanRequest(ReadRequest):
    """Accumulated state of a scan builder."""

    total_segments: int | None = None
    segment: int | None = None


RequestT = TypeVar("RequestT", bound=ReadRequest)


class _ReadBuilder(ABC, Generic[ItemT, RequestT]):
    """Builder methods shared by queries and scans."""

    def __init__(self, service: "DynamoDbService[ItemT]", request: RequestT) -> None:
        self._service = service
        self.request = request

    def filter(
        self,
        expression: str,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> Self:
        """Set the filter expression, applied after key matching.

        A later call replaces the expression; the alias maps are merged.
        Items removed by the filter still count towards ``scanned_count``.
        """
        self.request.filter_expression = expression
        self.request.expression_attribute_names.update(expression_attribute_names or {})
        self.request.expression_attribute_values.update(expression_attribute_values or {})
        return self

    def limit(self, count: int) -> Self:
        """Limit the number of items inspected by one page.

        Raises:
            ValidationError: If ``count`` is less than 1.

        """
        if count < 1:
            raise ValidationError(f"Limit must be at least 1, got {count}")
        self.request.limit = count
        return self

    def consistent_read(self, enabled: bool = True) -> Self:
        self.request.consistent_read = enabled
        return self

    def start_from(self, exclusive_start_key: LastEvaluatedKey | None) -> Self:
        """Resume after the given continuation token."""
        self.request.exclusive_start_key = (
            dict(exclusive_start_key) if exclusive_start_key is not None else None
        )
        return self

    def index(self, name: str) -> Self:
        """Read through a declared secondary index.

        Raises:
            IndexNotFoundError: If ``name`` is not a declared index.

        """
        self._service.index_schema(name)
        self.request.index_name = name
        return self

    @abstractmethod
    async def _run(self, request: RequestT) -> PaginatedResult[ItemT]: ...

    async def execute(self) -> PaginatedResult[ItemT]:
        """Run a single page of the request."""
        return await self._run(self.request)

    async def _pages(self) -> AsyncIterator[list[ItemT]]:
        request = replace(self.request)
        while True:
            result = await self._run(request)
            if result.items:
                yield result.items
            if result.last_evaluated_key is None:
                return
            request = replace(request, exclusive_start_key=result.last_evaluated_key)

    def __aiter__(self) -> AsyncIterator[list[ItemT]]:
        """Iterate over non-empty item batches until the traversal is exhausted.

        Each ``async for`` starts again from the builder's configured start key.
        """
        return self._pages()


class QueryBuilder(_ReadBuilder[ItemT, QueryRequest]):
    """Builder for a query on one partition key value.

    Only one sort key condition is active at a time: ``add_sort_key`` and
    ``sort_key_expression`` replace any previous condition.
    """

    def add_sort_key(self, condition: SortKeyCondition) -> Self:
        self.request.sort_key_condition = condition
        return self

    def sort_key_expression(
        self,
        expression: str,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> Self:
        """Set the sort key condition from a raw key-condition fragment.

        Example:
            builder.sort_key_expression("begins_with(#sk, :prefix)", {":prefix": "2024-"})

        Raises:
            ValidationError: If the fragment is outside the supported forms.

        """
        self.request.sort_key_condition = SortKeyCondition.parse(
            expression, expression_attribute_values
        )
        return self

    def scan_backward(self, enabled: bool = True) -> Self:
        """Return items in descending sort key order."""
        self.request.scan_index_forward = not enabled
        return self

    async def _run(self, request: QueryRequest) -> PaginatedResult[ItemT]:
        return await self._service._execute_query(request)


class ScanBuilder(_ReadBuilder[ItemT, ScanRequest]):
    """Builder for a full table (or index) scan."""

    def parallel(self, total_segments: int, segment: int) -> Self:
        """Restrict the scan to one segment of a parallel scan.

        Raises:
            ValidationError: If ``total_segments`` < 1 or ``segment`` is outside
                ``[0, total_segments)``.

        """
        if total_segments < 1:
            raise ValidationError(f"total_segments must be at least 1, got {total_segments}")
        if not 0 <= segment < total_segments:
            raise ValidationError(
                f"segment must be in [0, {total_segments}), got {segment}"
            )
        self.request.total_segments = total_segments
        self.request.segment = segment
        return self

    async def _run(self, request: ScanRequest) -> PaginatedResult[ItemT]:
        return await self._service._execute_scan(request)


__all__ = [
    "PaginatedResult",
    "QueryBuilder",
    "QueryRequest",
    "ReadRequest",
    "ScanBuilder",
    "ScanRequest",
    "SortKeyCondition",
    "SortKeyOperator",
]
