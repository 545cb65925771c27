"""The service contract shared by every backend.

This module provides the ``DynamoDbService`` abstract base class, the single
abstraction callers depend on, together with the operation types accepted by
batch and transactional writes. It also holds the logic that every backend
must reproduce identically:

- validating items against the item model and deriving their keys
- converting items to their stored representation (floats become Decimal)
- the ``createdAt``/``updatedAt`` timestamp side effects of writes
- merging ``updatedAt`` into the SET clause of updates

Concrete backends are ``AwsDynamoDbService`` (network) and
``MemoryDynamoDbService`` (in-process emulator). ``ServiceFactory`` picks one.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from types import TracebackType
from typing import Any, Generic, Literal, TypeAlias, TypeVar, Union

import pydantic
from pydantic import BaseModel
from pydantic_core import to_jsonable_python
from typing_extensions import Self

from pydynastore.builders import (
    PaginatedResult,
    QueryBuilder,
    QueryRequest,
    ScanBuilder,
    ScanRequest,
)
from pydynastore.exceptions import (
    EmptyUpdateError,
    IndexNotFoundError,
    InvalidKeySchemaError,
    ValidationError,
)
from pydynastore.expressions import UPDATED_AT_ATTRIBUTE, merge_updated_at
from pydynastore.keys import DynamoDBKey, KeySchema, KeySchemaDefinition, serialize_key

ItemT = TypeVar("ItemT", bound=BaseModel)
T = TypeVar("T")

CREATED_AT_ATTRIBUTE = "createdAt"

BATCH_WRITE_CHUNK_SIZE = 25
BATCH_GET_CHUNK_SIZE = 100
TRANSACTION_MAX_ITEMS = 100

ReturnValues: TypeAlias = Literal["NONE", "ALL_OLD"]
UpdateReturnValues: TypeAlias = Literal["NONE", "ALL_OLD", "UPDATED_OLD", "ALL_NEW", "UPDATED_NEW"]
KeyInput: TypeAlias = Union[Mapping[str, Any], BaseModel]
ItemInput: TypeAlias = Union[BaseModel, Mapping[str, Any]]
TableName: TypeAlias = str
"""Stage-prefixed table name, e.g. ``dev-users`` or ``prod-messages``."""

Clock: TypeAlias = Callable[[], datetime]


@dataclass(frozen=True)
class BatchPut:
    """Put ``item`` as part of ``batch_write``."""

    item: ItemInput


@dataclass(frozen=True)
class BatchDelete:
    """Delete the item at ``key`` as part of ``batch_write``. Missing keys are ignored."""

    key: KeyInput


BatchWriteOperation: TypeAlias = Union[BatchPut, BatchDelete]


@dataclass(frozen=True)
class TransactPut:
    item: ItemInput
    condition_expression: str | None = None
    expression_attribute_names: Mapping[str, str] = field(default_factory=dict)
    expression_attribute_values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactUpdate:
    key: KeyInput
    update_expression: str
    condition_expression: str | None = None
    expression_attribute_names: Mapping[str, str] = field(default_factory=dict)
    expression_attribute_values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactDelete:
    key: KeyInput
    condition_expression: str | None = None
    expression_attribute_names: Mapping[str, str] = field(default_factory=dict)
    expression_attribute_values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactConditionCheck:
    key: KeyInput
    condition_expression: str
    expression_attribute_names: Mapping[str, str] = field(default_factory=dict)
    expression_attribute_values: Mapping[str, Any] = field(default_factory=dict)


TransactWriteOperation: TypeAlias = Union[
    TransactPut, TransactUpdate, TransactDelete, TransactConditionCheck
]


@dataclass
class PreparedWrite:
    """A transaction operation after validation, key derivation and timestamping.

    Attributes:
        kind: "put", "update", "delete" or "check".
        key: The table key the operation targets.
        condition_expression: The caller's condition, if any.
        names: ``#name`` placeholders, including any merged by the update.
        values: ``:value`` placeholders in their stored form.
        item: The stored form of the item (puts only).
        update_expression: The update with ``updatedAt`` merged (updates only).

    """

    kind: Literal["put", "update", "delete", "check"]
    key: DynamoDBKey
    condition_expression: str | None
    names: dict[str, str]
    values: dict[str, Any]
    item: dict[str, Any] | None = None
    update_expression: str | None = None


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive chunks of at most ``size`` items."""
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def to_storage_value(value: Any) -> Any:
    """Convert a Python value to its stored representation.

    Floats become Decimal, containers are converted recursively, and any other
    non-native value (datetime, UUID, enum, nested model...) goes through
    pydantic's JSON-compatible conversion.
    """
    if value is None or isinstance(value, (bool, str, int, Decimal, bytes, bytearray)):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, Mapping):
        return {str(k): to_storage_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storage_value(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {to_storage_value(v) for v in value}
    return to_storage_value(to_jsonable_python(value))


def format_timestamp(moment: datetime) -> str:
    """Format a timestamp as UTC ISO 8601 with milliseconds, e.g. ``2024-01-01T00:00:00.000Z``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def model_attribute_names(model: type[BaseModel]) -> set[str]:
    """Return the field names and aliases declared by ``model``."""
    names: set[str] = set()
    for name, info in model.model_fields.items():
        names.add(name)
        if info.alias:
            names.add(info.alias)
        if isinstance(info.serialization_alias, str):
            names.add(info.serialization_alias)
    return names


class DynamoDbService(ABC, Generic[ItemT]):
    """A table-bound, type-safe data-access service.

    A service is bound to one table, one key schema and one item model. Keys
    are accepted as mappings (or model instances) in the key schema's shape and
    items are returned as validated model instances.

    Args:
        table_name: Stage-prefixed table name.
        key_schema: The table's key schema, e.g. ``[("userId", "string")]``.
        item_model: The pydantic model items are validated against.
        indexes: Secondary index key schemas by index name.
        region: Region hint. Ignored by the emulator.
        clock: Returns the current time for timestamp side effects.

    Raises:
        InvalidKeySchemaError: If a schema is malformed or the item model does
            not declare the table's key attributes.

    """

    def __init__(
        self,
        table_name: TableName,
        key_schema: KeySchemaDefinition,
        item_model: type[ItemT],
        *,
        indexes: Mapping[str, KeySchemaDefinition] | None = None,
        region: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.table_name = table_name
        self.key_schema = KeySchema.parse(key_schema)
        self.item_model = item_model
        self.indexes: dict[str, KeySchema] = {
            name: KeySchema.parse(definition) for name, definition in (indexes or {}).items()
        }
        self.region = region
        self._clock = clock or _utcnow

        self._model_attributes = model_attribute_names(item_model)
        for attribute in self.key_schema.attribute_names:
            if attribute not in self._model_attributes:
                raise InvalidKeySchemaError(
                    f"Invalid key schema: {item_model.__name__} has no attribute {attribute!r}"
                )
        self._index_attributes = {
            attribute
            for schema in self.indexes.values()
            for attribute in schema.attribute_names
        }

    # Lifecycle

    async def close(self) -> None:
        """Release backend resources. The default implementation holds none."""

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # Shared helpers

    @property
    def model_name(self) -> str:
        return self.item_model.__name__

    @property
    def tracks_updated_at(self) -> bool:
        return UPDATED_AT_ATTRIBUTE in self._model_attributes

    def now(self) -> str:
        return format_timestamp(self._clock())

    def index_schema(self, name: str) -> KeySchema:
        """Return the key schema of a declared index.

        Raises:
            IndexNotFoundError: If ``name`` is not a declared index.

        """
        try:
            return self.indexes[name]
        except KeyError:
            raise IndexNotFoundError(index_name=name) from None

    def build_key(self, key: KeyInput, *, operation: str | None = None) -> DynamoDBKey:
        """Derive and validate the table key of ``key``."""
        return self.key_schema.build_key(key, model_name=self.model_name, operation=operation)

    def validate_item(self, data: Mapping[str, Any]) -> ItemT:
        """Validate stored data against the item model.

        Raises:
            ValidationError: If the data does not match the model.

        """
        try:
            return self.item_model.model_validate(dict(data))
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"{self.model_name} validation failed: {e}",
                table_name=self.table_name,
            ) from e

    def prepare_item(self, item: ItemInput) -> dict[str, Any]:
        """Validate ``item`` and return its stored form with timestamps applied.

        ``createdAt`` is set to now only when the item declares it and it is
        unset; ``updatedAt`` is always refreshed when declared.
        """
        if isinstance(item, self.item_model):
            model: BaseModel = item
        elif isinstance(item, BaseModel):
            model = self.validate_item(item.model_dump(by_alias=True))
        else:
            model = self.validate_item(item)

        data: dict[str, Any] = to_storage_value(model.model_dump(by_alias=True))

        now = self.now()
        if CREATED_AT_ATTRIBUTE in data and not data[CREATED_AT_ATTRIBUTE]:
            data[CREATED_AT_ATTRIBUTE] = now
        if UPDATED_AT_ATTRIBUTE in data:
            data[UPDATED_AT_ATTRIBUTE] = now

        # NULL is not a valid index key value; leave unset index keys absent.
        for attribute in self._index_attributes:
            if attribute in data and data[attribute] is None:
                del data[attribute]

        self.validate_item(data)
        self.build_key(data, operation="put_item")
        return data

    def prepare_update(
        self,
        update_expression: str,
        names: Mapping[str, str] | None,
        values: Mapping[str, Any] | None,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Merge the ``updatedAt`` assignment and convert placeholder values.

        Raises:
            EmptyUpdateError: If the update expression is blank.

        """
        if not update_expression or not update_expression.strip():
            raise EmptyUpdateError()

        merged_names = dict(names or {})
        merged_values = {k: to_storage_value(v) for k, v in (values or {}).items()}
        if self.tracks_updated_at:
            return merge_updated_at(
                update_expression, merged_names, merged_values, timestamp=self.now()
            )
        return update_expression, merged_names, merged_values

    def ensure_unique_keys(self, keys: Sequence[DynamoDBKey], *, operation: str) -> None:
        """Reject requests that address the same key more than once.

        Raises:
            ValidationError: If a key appears twice.

        """
        seen: set[str] = set()
        for key in keys:
            serialized = serialize_key(key)
            if serialized in seen:
                raise ValidationError(
                    f"Provided list of item keys contains duplicates: {key}",
                    operation=operation,
                    table_name=self.table_name,
                )
            seen.add(serialized)

    def prepare_transaction(
        self, operations: Sequence[TransactWriteOperation]
    ) -> list[PreparedWrite]:
        """Validate a transaction and prepare each of its operations.

        Raises:
            ValidationError: If the transaction is empty, has more than 100
                operations, addresses a key twice, or contains an invalid item
                or key.

        """
        if not operations:
            raise ValidationError(
                "Transaction must contain at least one operation",
                operation="transact_write",
                table_name=self.table_name,
            )
        if len(operations) > TRANSACTION_MAX_ITEMS:
            raise ValidationError(
                f"Transaction supports at most {TRANSACTION_MAX_ITEMS} operations, "
                f"got {len(operations)}",
                operation="transact_write",
                table_name=self.table_name,
            )

        prepared: list[PreparedWrite] = []
        for operation in operations:
            if isinstance(operation, TransactPut):
                item = self.prepare_item(operation.item)
                prepared.append(
                    PreparedWrite(
                        kind="put",
                        key=self.build_key(item, operation="transact_write"),
                        condition_expression=operation.condition_expression,
                        names=dict(operation.expression_attribute_names),
                        values=to_storage_value(dict(operation.expression_attribute_values)),
                        item=item,
                    )
                )
            elif isinstance(operation, TransactUpdate):
                expression, names, values = self.prepare_update(
                    operation.update_expression,
                    operation.expression_attribute_names,
                    operation.expression_attribute_values,
                )
                prepared.append(
                    PreparedWrite(
                        kind="update",
                        key=self.build_key(operation.key, operation="transact_write"),
                        condition_expression=operation.condition_expression,
                        names=names,
                        values=values,
                        update_expression=expression,
                    )
                )
            elif isinstance(operation, (TransactDelete, TransactConditionCheck)):
                prepared.append(
                    PreparedWrite(
                        kind="delete" if isinstance(operation, TransactDelete) else "check",
                        key=self.build_key(operation.key, operation="transact_write"),
                        condition_expression=operation.condition_expression,
                        names=dict(operation.expression_attribute_names),
                        values=to_storage_value(dict(operation.expression_attribute_values)),
                    )
                )
            else:
                raise ValidationError(
                    f"Unsupported transaction operation: {type(operation).__name__}",
                    operation="transact_write",
                    table_name=self.table_name,
                )

        self.ensure_unique_keys([write.key for write in prepared], operation="transact_write")
        return prepared

    # Builders

    def query(self, partition_key_value: Any) -> QueryBuilder[ItemT]:
        """Start a query on one partition key value.

        When an index is selected, the value is matched against the index's
        partition key.
        """
        return QueryBuilder(self, QueryRequest(partition_key_value=partition_key_value))

    def scan(self) -> ScanBuilder[ItemT]:
        """Start a scan of the table."""
        return ScanBuilder(self, ScanRequest())

    def scan_stream(self) -> ScanBuilder[ItemT]:
        """Start a scan consumed as an async stream of non-empty item batches.

        Example:
            async for batch in users.scan_stream():
                for user in batch:
                    ...

        """
        return self.scan()

    @abstractmethod
    async def _execute_query(self, request: QueryRequest) -> PaginatedResult[ItemT]: ...

    @abstractmethod
    async def _execute_scan(self, request: ScanRequest) -> PaginatedResult[ItemT]: ...

    # Operations

    @abstractmethod
    async def get_item(self, key: KeyInput, *, consistent_read: bool = False) -> ItemT | None:
        """Get an item by key.

        Returns:
            The item, or None if it does not exist.

        """

    @abstractmethod
    async def put_item(
        self,
        item: ItemInput,
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
        return_values: ReturnValues = "NONE",
    ) -> ItemT | None:
        """Create or fully replace an item.

        Returns:
            The previous item when ``return_values="ALL_OLD"`` and one existed,
            otherwise None.

        Raises:
            ConditionCheckFailedError: If the condition is not satisfied.
            ValidationError: If the item does not match the model.

        """

    @abstractmethod
    async def update_item(
        self,
        key: KeyInput,
        *,
        update_expression: str,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
        return_values: UpdateReturnValues = "NONE",
    ) -> ItemT | None:
        """Update an existing item in place.

        ``UPDATED_OLD`` and ``UPDATED_NEW`` return the whole old or new item so
        that the result always validates against the item model.

        Raises:
            NotFoundError: If no item exists at ``key``.
            ConditionCheckFailedError: If the condition is not satisfied.

        """

    @abstractmethod
    async def delete_item(
        self,
        key: KeyInput,
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
        return_values: ReturnValues = "NONE",
    ) -> ItemT | None:
        """Delete an existing item.

        Raises:
            NotFoundError: If no item exists at ``key``.
            ConditionCheckFailedError: If the condition is not satisfied.

        """

    @abstractmethod
    async def batch_write(self, operations: Sequence[BatchWriteOperation]) -> None:
        """Put and delete items in chunks of 25.

        Chunks are applied in order; a failure leaves earlier chunks applied.
        """

    @abstractmethod
    async def batch_get(
        self, keys: Sequence[KeyInput], *, consistent_read: bool = False
    ) -> list[ItemT]:
        """Get items by key in chunks of 100.

        Returns:
            The items that exist, in no guaranteed order.

        """

    @abstractmethod
    async def transact_write(self, operations: Sequence[TransactWriteOperation]) -> None:
        """Apply up to 100 operations atomically.

        Raises:
            TransactionCancelledError: If any condition fails. Nothing is applied.

        """

    @abstractmethod
    async def get_item_count(self) -> int:
        """Return the (approximate) number of items in the table."""


__all__ = [
    "BATCH_GET_CHUNK_SIZE",
    "BATCH_WRITE_CHUNK_SIZE",
    "CREATED_AT_ATTRIBUTE",
    "TRANSACTION_MAX_ITEMS",
    "BatchDelete",
    "BatchPut",
    "BatchWriteOperation",
    "Clock",
    "DynamoDbService",
    "ItemInput",
    "KeyInput",
    "PreparedWrite",
    "ReturnValues",
    "TableName",
    "TransactConditionCheck",
    "TransactDelete",
    "TransactPut",
    "TransactUpdate",
    "TransactWriteOperation",
    "UpdateReturnValues",
    "chunked",
    "format_timestamp",
    "model_attribute_names",
    "to_storage_value",
]
