"""In-memory emulator of the service contract.

``MemoryDynamoDbService`` keeps items in a ``MemoryStore`` instead of calling
DynamoDB, and reproduces the observable behavior of ``AwsDynamoDbService`` for
every supported operation: conditional writes, update expressions, query and
scan pagination, batch chunking and all-or-nothing transactions.

The store is injected at construction. Services sharing a store and a table
name share data; the test harness or application bootstrap owns the store's
lifetime and can reset it with ``MemoryStore.clear()``.

Each operation runs as a critical section over its table: the table lock is
held while state is read and written and nothing is awaited inside it, so a
reader never observes a half-applied update and two conditional writes cannot
both succeed against the same stale state. No isolation is promised between a
transaction and a concurrent non-transactional write beyond that per-call lock.

Example:
    store = MemoryStore()
    users = MemoryDynamoDbService("dev-users", [("userId", "string")], User, store=store)
    await users.put_item(User(userId="u1", email="a@example.com"))

"""

import copy
import threading
import zlib
from collections.abc import Mapping, Sequence
from typing import Any

from pydynastore.base import (
    BATCH_GET_CHUNK_SIZE,
    BATCH_WRITE_CHUNK_SIZE,
    BatchDelete,
    BatchPut,
    BatchWriteOperation,
    Clock,
    DynamoDbService,
    ItemInput,
    ItemT,
    KeyInput,
    PreparedWrite,
    ReturnValues,
    TableName,
    TransactWriteOperation,
    UpdateReturnValues,
    chunked,
    to_storage_value,
)
from pydynastore.builders import PaginatedResult, QueryRequest, ReadRequest, ScanRequest
from pydynastore.conditions import compare_values, evaluate_condition
from pydynastore.exceptions import (
    ConditionCheckFailedError,
    NotFoundError,
    SortKeyNotSupportedError,
    TransactionCancelledError,
    ValidationError,
)
from pydynastore.expressions import apply_update, parse_update
from pydynastore.keys import DynamoDBKey, KeySchema, KeySchemaDefinition, serialize_key
from pydynastore.observability import get_logger

logger = get_logger(__name__)

StoredItem = dict[str, Any]


class MemoryTable:
    """One emulated table: canonical key -> stored item, plus its lock."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.items: dict[str, StoredItem] = {}
        self.lock = threading.RLock()

    def __len__(self) -> int:
        with self.lock:
            return len(self.items)


class MemoryStore:
    """A table-name-keyed registry of emulated tables.

    Tables are created on first use. The store never outlives the process.
    """

    def __init__(self) -> None:
        self._tables: dict[str, MemoryTable] = {}
        self._lock = threading.Lock()

    def table(self, name: str) -> MemoryTable:
        with self._lock:
            table = self._tables.get(name)
            if table is None:
                table = self._tables[name] = MemoryTable(name)
            return table

    def table_names(self) -> list[str]:
        with self._lock:
            return sorted(self._tables)

    def drop(self, name: str) -> None:
        """Remove one table and its items."""
        with self._lock:
            table = self._tables.pop(name, None)
        if table is not None:
            with table.lock:
                table.items.clear()

    def clear(self) -> None:
        """Remove every table. Use between tests for isolation."""
        with self._lock:
            tables = list(self._tables.values())
            self._tables.clear()
        for table in tables:
            with table.lock:
                table.items.clear()


def _return_old(return_values: str) -> bool:
    return return_values in ("ALL_OLD", "UPDATED_OLD")


def _return_new(return_values: str) -> bool:
    return return_values in ("ALL_NEW", "UPDATED_NEW")


def _storage_values(values: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: to_storage_value(v) for k, v in (values or {}).items()}


class MemoryDynamoDbService(DynamoDbService[ItemT]):
    """Emulated backend over a ``MemoryStore``.

    Args:
        table_name: Stage-prefixed table name.
        key_schema: The table's key schema.
        item_model: The pydantic model items are validated against.
        store: The store holding the table's items.
        indexes: Secondary index key schemas by index name.
        region: Accepted for interface parity and ignored.
        clock: Returns the current time for timestamp side effects.

    """

    def __init__(
        self,
        table_name: TableName,
        key_schema: KeySchemaDefinition,
        item_model: type[ItemT],
        *,
        store: MemoryStore,
        indexes: Mapping[str, KeySchemaDefinition] | None = None,
        region: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(
            table_name,
            key_schema,
            item_model,
            indexes=indexes,
            region=region,
            clock=clock,
        )
        self.store = store

    @property
    def _table(self) -> MemoryTable:
        return self.store.table(self.table_name)

    def _load(self, data: StoredItem) -> ItemT:
        return self.validate_item(copy.deepcopy(data))

    def _condition_failed(self, operation: str, condition: str | None) -> ConditionCheckFailedError:
        return ConditionCheckFailedError(
            condition=condition,
            operation=operation,
            table_name=self.table_name,
        )

    def _updated(
        self,
        existing: StoredItem,
        key: DynamoDBKey,
        update_expression: str,
        names: Mapping[str, str],
        values: Mapping[str, Any],
    ) -> StoredItem:
        updated = apply_update(existing, parse_update(update_expression), names=names, values=values)
        if self.build_key(updated, operation="update_item") != key:
            raise ValidationError(
                "Cannot update attribute that is part of the key",
                operation="update_item",
                table_name=self.table_name,
            )
        self.validate_item(updated)
        return updated

    async def get_item(self, key: KeyInput, *, consistent_read: bool = False) -> ItemT | None:
        dynamodb_key = self.build_key(key, operation="get_item")
        table = self._table
        with table.lock:
            stored = table.items.get(serialize_key(dynamodb_key))
            snapshot = copy.deepcopy(stored) if stored is not None else None
        return self.validate_item(snapshot) if snapshot is not None else None

    async def put_item(
        self,
        item: ItemInput,
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
        return_values: ReturnValues = "NONE",
    ) -> ItemT | None:
        data = self.prepare_item(item)
        serialized = serialize_key(self.build_key(data, operation="put_item"))
        values = _storage_values(expression_attribute_values)

        table = self._table
        with table.lock:
            existing = table.items.get(serialized)
            if not evaluate_condition(
                condition_expression, existing, names=expression_attribute_names, values=values
            ):
                raise self._condition_failed("put_item", condition_expression)
            table.items[serialized] = copy.deepcopy(data)

        if _return_old(return_values) and existing is not None:
            return self._load(existing)
        return None

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
        dynamodb_key = self.build_key(key, operation="update_item")
        serialized = serialize_key(dynamodb_key)
        expression, names, values = self.prepare_update(
            update_expression, expression_attribute_names, expression_attribute_values
        )

        table = self._table
        with table.lock:
            existing = table.items.get(serialized)
            if existing is None:
                raise NotFoundError(
                    key=dynamodb_key, operation="update_item", table_name=self.table_name
                )
            if not evaluate_condition(condition_expression, existing, names=names, values=values):
                raise self._condition_failed("update_item", condition_expression)
            updated = self._updated(existing, dynamodb_key, expression, names, values)
            table.items[serialized] = updated

        if _return_old(return_values):
            return self._load(existing)
        if _return_new(return_values):
            return self._load(updated)
        return None

    async def delete_item(
        self,
        key: KeyInput,
        *,
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
        return_values: ReturnValues = "NONE",
    ) -> ItemT | None:
        dynamodb_key = self.build_key(key, operation="delete_item")
        serialized = serialize_key(dynamodb_key)
        values = _storage_values(expression_attribute_values)

        table = self._table
        with table.lock:
            existing = table.items.get(serialized)
            if existing is None:
                raise NotFoundError(
                    key=dynamodb_key, operation="delete_item", table_name=self.table_name
                )
            if not evaluate_condition(
                condition_expression, existing, names=expression_attribute_names, values=values
            ):
                raise self._condition_failed("delete_item", condition_expression)
            del table.items[serialized]

        if _return_old(return_values):
            return self._load(existing)
        return None

    async def batch_write(self, operations: Sequence[BatchWriteOperation]) -> None:
        for chunk in chunked(operations, BATCH_WRITE_CHUNK_SIZE):
            writes: list[tuple[str, StoredItem | None]] = []
            keys: list[DynamoDBKey] = []
            for operation in chunk:
                if isinstance(operation, BatchPut):
                    data = self.prepare_item(operation.item)
                    key = self.build_key(data, operation="batch_write")
                    writes.append((serialize_key(key), data))
                elif isinstance(operation, BatchDelete):
                    key = self.build_key(operation.key, operation="batch_write")
                    writes.append((serialize_key(key), None))
                else:
                    raise ValidationError(
                        f"Unsupported batch write operation: {type(operation).__name__}"
                    )
                keys.append(key)
            self.ensure_unique_keys(keys, operation="batch_write")

            table = self._table
            with table.lock:
                for serialized, data in writes:
                    if data is None:
                        table.items.pop(serialized, None)
                    else:
                        table.items[serialized] = copy.deepcopy(data)

    async def batch_get(
        self, keys: Sequence[KeyInput], *, consistent_read: bool = False
    ) -> list[ItemT]:
        dynamodb_keys = [self.build_key(key, operation="batch_get") for key in keys]
        found: list[StoredItem] = []
        for chunk in chunked(dynamodb_keys, BATCH_GET_CHUNK_SIZE):
            self.ensure_unique_keys(chunk, operation="batch_get")
            table = self._table
            with table.lock:
                for key in chunk:
                    stored = table.items.get(serialize_key(key))
                    if stored is not None:
                        found.append(copy.deepcopy(stored))
        return [self.validate_item(data) for data in found]

    async def transact_write(self, operations: Sequence[TransactWriteOperation]) -> None:
        prepared = self.prepare_transaction(operations)

        table = self._table
        with table.lock:
            reasons: list[str] = []
            staged: list[tuple[PreparedWrite, StoredItem | None]] = []
            for write in prepared:
                existing = table.items.get(serialize_key(write.key))
                passed = evaluate_condition(
                    write.condition_expression, existing, names=write.names, values=write.values
                )
                if write.kind in ("update", "delete") and existing is None:
                    passed = False

                result: StoredItem | None = write.item
                if passed and write.kind == "update" and existing is not None:
                    result = self._updated(
                        existing,
                        write.key,
                        write.update_expression or "",
                        write.names,
                        write.values,
                    )
                staged.append((write, result))
                reasons.append("None" if passed else "ConditionalCheckFailed")

            if any(reason != "None" for reason in reasons):
                logger.debug(
                    "transaction_cancelled",
                    table_name=self.table_name,
                    reason_codes=reasons,
                )
                raise TransactionCancelledError(
                    "Transaction cancelled, please refer cancellation reasons for specific "
                    f"reasons [{', '.join(reasons)}]",
                    reason_codes=tuple(reasons),
                    operation="transact_write",
                    table_name=self.table_name,
                )

            for write, result in staged:
                serialized = serialize_key(write.key)
                if write.kind in ("put", "update"):
                    table.items[serialized] = copy.deepcopy(result)  # type: ignore[arg-type]
                elif write.kind == "delete":
                    del table.items[serialized]

    async def get_item_count(self) -> int:
        return len(self._table)

    # Query and scan

    def _read_schema(self, request: ReadRequest) -> KeySchema:
        if request.index_name is None:
            return self.key_schema
        return self.index_schema(request.index_name)

    def _continuation_key(self, item: StoredItem, schema: KeySchema) -> DynamoDBKey:
        key = self.build_key(item)
        if schema is not self.key_schema:
            key.update(schema.build_key(item))
        return key

    def _snapshot(self) -> list[StoredItem]:
        table = self._table
        with table.lock:
            return [copy.deepcopy(item) for item in table.items.values()]

    def _page(
        self,
        ordered: list[StoredItem],
        request: ReadRequest,
        schema: KeySchema,
    ) -> PaginatedResult[ItemT]:
        values = _storage_values(request.expression_attribute_values)
        matched = [
            item
            for item in ordered
            if request.filter_expression is None
            or evaluate_condition(
                request.filter_expression,
                item,
                names=request.expression_attribute_names,
                values=values,
            )
        ]
        page = matched[: request.limit] if request.limit is not None else matched
        last_evaluated_key = None
        if request.limit is not None and len(matched) > request.limit:
            last_evaluated_key = self._continuation_key(page[-1], schema)

        items = [self.validate_item(item) for item in page]
        return PaginatedResult(
            items=items,
            last_evaluated_key=last_evaluated_key,
            count=len(items),
            scanned_count=len(ordered),
        )

    async def _execute_query(self, request: QueryRequest) -> PaginatedResult[ItemT]:
        schema = self._read_schema(request)
        partition_value = schema.partition_key.coerce(request.partition_key_value)
        condition = request.sort_key_condition
        if condition is not None:
            if schema.sort_key is None:
                raise SortKeyNotSupportedError(index_name=request.index_name)
            condition.validate_for(schema.sort_key)

        partition_name = schema.partition_key.name
        sort_name = schema.sort_key.name if schema.sort_key is not None else None
        candidates = [
            item
            for item in self._snapshot()
            if schema.covers(item)
            and compare_values(item[partition_name], "=", partition_value)
            and (condition is None or condition.matches(item[sort_name]))  # type: ignore[index]
        ]

        def position(item: Mapping[str, Any]) -> tuple[Any, ...]:
            serialized = serialize_key(self.build_key(item))
            if sort_name is None:
                return (serialized,)
            return (item[sort_name], serialized)

        forward = request.scan_index_forward
        candidates.sort(key=position, reverse=not forward)

        if request.exclusive_start_key is not None:
            if sort_name is not None and sort_name not in request.exclusive_start_key:
                raise ValidationError(
                    f"Exclusive start key is missing attribute {sort_name!r}",
                    operation="query",
                    table_name=self.table_name,
                )
            start_key = dict(request.exclusive_start_key)
            if schema.sort_key is not None:
                start_key[schema.sort_key.name] = schema.sort_key.coerce(
                    start_key[schema.sort_key.name]
                )
            start = position(start_key)
            candidates = [
                item
                for item in candidates
                if (position(item) > start if forward else position(item) < start)
            ]

        return self._page(candidates, request, schema)

    async def _execute_scan(self, request: ScanRequest) -> PaginatedResult[ItemT]:
        schema = self._read_schema(request)

        def position(item: Mapping[str, Any]) -> str:
            return serialize_key(self.build_key(item))

        candidates = [item for item in self._snapshot() if schema.covers(item)]
        if request.total_segments is not None and request.segment is not None:
            candidates = [
                item
                for item in candidates
                if zlib.crc32(position(item).encode()) % request.total_segments
                == request.segment
            ]
        candidates.sort(key=position)

        if request.exclusive_start_key is not None:
            start = position(request.exclusive_start_key)
            candidates = [item for item in candidates if position(item) > start]

        return self._page(candidates, request, schema)


__all__ = [
    "MemoryDynamoDbService",
    "MemoryStore",
    "MemoryTable",
]
