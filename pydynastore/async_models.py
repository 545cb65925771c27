"""DynamoDB-backed implementation of the service contract.

``AwsDynamoDbService`` runs every operation against DynamoDB through aioboto3:

- item operations, queries and scans use the Table resource
- batch operations, transactions and ``get_item_count`` use the low-level
  client, with items converted by boto3's ``TypeSerializer``/``TypeDeserializer``

Both are opened lazily from an ``aioboto3.Session`` on first use, unless they
are injected. Use the service as an async context manager (or call ``close()``)
to release what it opened.

botocore failures are translated into PyDynastore exceptions by
``wrap_client_error``. Updates and deletes are guarded with
``attribute_exists`` on the partition key, so they never create items and a
missing item surfaces as ``NotFoundError`` rather than a condition failure.

Batch writes and batch gets retry the unprocessed part of a request with
exponential backoff (``base_delay * 2 ** attempt``), at most ``max_retries``
times, and raise ``UnknownError`` once retries are exhausted.

Example:
    async with AwsDynamoDbService(
        "prod-users",
        [("userId", "string")],
        User,
        indexes={"by-email": [("email", "string")]},
    ) as users:
        await users.put_item(User(userId="u1", email="homer@example.com"))
        page = await users.query("homer@example.com").index("by-email").execute()

"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING, Any

import aioboto3
from boto3.dynamodb.types import Binary, TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

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
from pydynastore.exceptions import (
    ConditionCheckFailedError,
    DynastoreError,
    NotFoundError,
    SortKeyNotSupportedError,
    UnknownError,
    ValidationError,
    wrap_client_error,
)
from pydynastore.expressions import free_placeholder
from pydynastore.keys import DynamoDBKey, KeySchemaDefinition
from pydynastore.observability import get_logger
from pydynastore.settings import DEFAULT_REGION

if TYPE_CHECKING:
    from types_aiobotocore_dynamodb.client import DynamoDBClient
    from types_aiobotocore_dynamodb.service_resource import Table as AsyncTable
else:
    DynamoDBClient = Any
    AsyncTable = Any

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_BACKEND_ERRORS = (ClientError, BotoCoreError)

# UPDATED_* would return a partial item that cannot be validated.
_UPDATE_RETURN_VALUES: dict[str, str] = {
    "NONE": "NONE",
    "ALL_OLD": "ALL_OLD",
    "UPDATED_OLD": "ALL_OLD",
    "ALL_NEW": "ALL_NEW",
    "UPDATED_NEW": "ALL_NEW",
}

_TRANSACT_ACTIONS: dict[str, str] = {
    "put": "Put",
    "update": "Update",
    "delete": "Delete",
    "check": "ConditionCheck",
}

RETRIES_EXHAUSTED_MESSAGE = "Some items could not be processed after retries"


def _plain(value: Any) -> Any:
    """Unwrap boto3 ``Binary`` values (recursively) into bytes."""
    if isinstance(value, Binary):
        return bytes(value.value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, set):
        return {_plain(v) for v in value}
    return value


def _storage_values(values: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: to_storage_value(v) for k, v in (values or {}).items()}


def _expression_kwargs(
    condition_expression: str | None,
    names: Mapping[str, str] | None,
    values: Mapping[str, Any] | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    if names:
        kwargs["ExpressionAttributeNames"] = dict(names)
    if values:
        kwargs["ExpressionAttributeValues"] = dict(values)
    return kwargs


class AwsDynamoDbService(DynamoDbService[ItemT]):
    """Network backend over aioboto3.

    Args:
        table_name: Stage-prefixed table name.
        key_schema: The table's key schema.
        item_model: The pydantic model items are validated against.
        indexes: Secondary index key schemas by index name.
        region: AWS region. Defaults to us-east-2.
        clock: Returns the current time for timestamp side effects.
        table: An already opened aioboto3 Table resource.
        client: An already opened aioboto3 DynamoDB client.
        session: Session used to open the table and client when not injected.
        endpoint_url: Custom endpoint, e.g. DynamoDB Local.
        max_retries: Maximum retries of unprocessed batch items.
        base_delay: Base backoff delay in seconds.
        sleep: Coroutine used to wait between retries.

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
        table: AsyncTable | None = None,
        client: DynamoDBClient | None = None,
        session: aioboto3.Session | None = None,
        endpoint_url: str | None = None,
        max_retries: int = 5,
        base_delay: float = 0.1,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(
            table_name,
            key_schema,
            item_model,
            indexes=indexes,
            region=region,
            clock=clock,
        )
        self.endpoint_url = endpoint_url
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._session = session
        self._table_resource = table
        self._client_resource = client
        self._owns_table = False
        self._owns_client = False
        self._exit_stack: AsyncExitStack | None = None
        self._open_lock = asyncio.Lock()
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    # Lifecycle

    async def _open(self) -> None:
        async with self._open_lock:
            if self._table_resource is not None and self._client_resource is not None:
                return

            session = self._session or aioboto3.Session()
            options: dict[str, Any] = {"region_name": self.region or DEFAULT_REGION}
            if self.endpoint_url:
                options["endpoint_url"] = self.endpoint_url

            stack = self._exit_stack or AsyncExitStack()
            self._exit_stack = stack
            if self._table_resource is None:
                resource = await stack.enter_async_context(session.resource("dynamodb", **options))
                self._table_resource = await resource.Table(self.table_name)
                self._owns_table = True
            if self._client_resource is None:
                self._client_resource = await stack.enter_async_context(
                    session.client("dynamodb", **options)
                )
                self._owns_client = True

    async def _table(self) -> AsyncTable:
        if self._table_resource is None:
            await self._open()
        return self._table_resource

    async def _client(self) -> DynamoDBClient:
        if self._client_resource is None:
            await self._open()
        return self._client_resource

    async def close(self) -> None:
        """Close the resource and client opened by this service, if any."""
        if self._exit_stack is None:
            return
        stack, self._exit_stack = self._exit_stack, None
        if self._owns_table:
            self._table_resource = None
            self._owns_table = False
        if self._owns_client:
            self._client_resource = None
            self._owns_client = False
        await stack.aclose()

    # Conversion helpers

    def _serialize(self, item: Mapping[str, Any]) -> dict[str, Any]:
        return {k: self._serializer.serialize(v) for k, v in item.items()}

    def _deserialize(self, item: Mapping[str, Any]) -> dict[str, Any]:
        return {k: _plain(self._deserializer.deserialize(v)) for k, v in item.items()}

    def _translate(self, error: Exception, operation: str) -> DynastoreError:
        wrapped = wrap_client_error(error, operation=operation, table_name=self.table_name)
        logger.debug(
            "dynamodb_error",
            operation=operation,
            table_name=self.table_name,
            error_type=type(wrapped).__name__,
            error=str(error),
        )
        return wrapped

    def _guard_existing(
        self,
        condition_expression: str | None,
        names: Mapping[str, str],
    ) -> tuple[str, dict[str, str]]:
        """Conjoin ``attribute_exists(<partition key>)`` with the caller's condition."""
        guarded_names = dict(names)
        placeholder = free_placeholder("#", "pkExists", guarded_names)
        guarded_names[placeholder] = self.key_schema.partition_key.name
        guard = f"attribute_exists({placeholder})"
        if condition_expression:
            return f"{guard} AND ({condition_expression})", guarded_names
        return guard, guarded_names

    async def _exists(self, key: DynamoDBKey, operation: str) -> bool:
        table = await self._table()
        try:
            response = await table.get_item(Key=key, ConsistentRead=True)
        except _BACKEND_ERRORS as e:
            raise self._translate(e, operation) from e
        return "Item" in response

    async def _guarded_write_failure(
        self,
        error: Exception,
        *,
        key: DynamoDBKey,
        operation: str,
        condition_expression: str | None,
    ) -> DynastoreError:
        """Tell a missing item apart from a failed caller condition."""
        wrapped = self._translate(error, operation)
        if not isinstance(wrapped, ConditionCheckFailedError):
            return wrapped

        response: dict[str, Any] = getattr(error, "response", None) or {}
        exists = "Item" in response or await self._exists(key, operation)
        if not exists:
            return NotFoundError(
                key=key,
                operation=operation,
                table_name=self.table_name,
                original_error=error,
            )
        wrapped.condition = condition_expression
        return wrapped

    def _load(self, data: Mapping[str, Any] | None) -> ItemT | None:
        if not data:
            return None
        return self.validate_item(_plain(dict(data)))

    # Item operations

    async def get_item(self, key: KeyInput, *, consistent_read: bool = False) -> ItemT | None:
        dynamodb_key = self.build_key(key, operation="get_item")
        table = await self._table()
        try:
            response = await table.get_item(Key=dynamodb_key, ConsistentRead=consistent_read)
        except _BACKEND_ERRORS as e:
            raise self._translate(e, "get_item") from e
        return self._load(response.get("Item"))

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
        put_kwargs: dict[str, Any] = {
            "Item": data,
            **_expression_kwargs(
                condition_expression,
                expression_attribute_names,
                _storage_values(expression_attribute_values),
            ),
        }
        if return_values == "ALL_OLD":
            put_kwargs["ReturnValues"] = "ALL_OLD"

        table = await self._table()
        try:
            response = await table.put_item(**put_kwargs)
        except _BACKEND_ERRORS as e:
            error = self._translate(e, "put_item")
            if isinstance(error, ConditionCheckFailedError):
                error.condition = condition_expression
            raise error from e
        return self._load(response.get("Attributes"))

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
        expression, names, values = self.prepare_update(
            update_expression, expression_attribute_names, expression_attribute_values
        )
        condition, names = self._guard_existing(condition_expression, names)

        update_kwargs: dict[str, Any] = {
            "Key": dynamodb_key,
            "UpdateExpression": expression,
            "ReturnValues": _UPDATE_RETURN_VALUES[return_values],
            "ReturnValuesOnConditionCheckFailure": "ALL_OLD",
            **_expression_kwargs(condition, names, values),
        }

        table = await self._table()
        try:
            response = await table.update_item(**update_kwargs)
        except _BACKEND_ERRORS as e:
            error = await self._guarded_write_failure(
                e,
                key=dynamodb_key,
                operation="update_item",
                condition_expression=condition_expression,
            )
            raise error from e
        return self._load(response.get("Attributes"))

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
        condition, names = self._guard_existing(
            condition_expression, expression_attribute_names or {}
        )

        delete_kwargs: dict[str, Any] = {
            "Key": dynamodb_key,
            "ReturnValuesOnConditionCheckFailure": "ALL_OLD",
            **_expression_kwargs(
                condition, names, _storage_values(expression_attribute_values)
            ),
        }
        if return_values == "ALL_OLD":
            delete_kwargs["ReturnValues"] = "ALL_OLD"

        table = await self._table()
        try:
            response = await table.delete_item(**delete_kwargs)
        except _BACKEND_ERRORS as e:
            error = await self._guarded_write_failure(
                e,
                key=dynamodb_key,
                operation="delete_item",
                condition_expression=condition_expression,
            )
            raise error from e
        return self._load(response.get("Attributes"))

    # Batch operations

    async def _backoff(self, operation: str, attempt: int, remaining: int) -> None:
        delay = self.base_delay * 2**attempt
        logger.warning(
            "batch_retry",
            operation=operation,
            table_name=self.table_name,
            attempt=attempt + 1,
            max_retries=self.max_retries,
            unprocessed=remaining,
            delay=delay,
        )
        await self._sleep(delay)

    def _retries_exhausted(self, operation: str, remaining: int) -> UnknownError:
        logger.error(
            "batch_retries_exhausted",
            operation=operation,
            table_name=self.table_name,
            max_retries=self.max_retries,
            unprocessed=remaining,
        )
        return UnknownError(
            RETRIES_EXHAUSTED_MESSAGE,
            operation=operation,
            table_name=self.table_name,
        )

    async def _batch_write_chunk(self, requests: list[dict[str, Any]]) -> None:
        client = await self._client()
        pending: dict[str, Any] = {self.table_name: requests}
        attempt = 0
        while True:
            try:
                response = await client.batch_write_item(RequestItems=pending)
            except _BACKEND_ERRORS as e:
                raise self._translate(e, "batch_write") from e

            unprocessed = (response.get("UnprocessedItems") or {}).get(self.table_name) or []
            if not unprocessed:
                return
            if attempt >= self.max_retries:
                raise self._retries_exhausted("batch_write", len(unprocessed))
            await self._backoff("batch_write", attempt, len(unprocessed))
            pending = {self.table_name: unprocessed}
            attempt += 1

    async def batch_write(self, operations: Sequence[BatchWriteOperation]) -> None:
        for chunk in chunked(operations, BATCH_WRITE_CHUNK_SIZE):
            requests: list[dict[str, Any]] = []
            keys: list[DynamoDBKey] = []
            for operation in chunk:
                if isinstance(operation, BatchPut):
                    data = self.prepare_item(operation.item)
                    keys.append(self.build_key(data, operation="batch_write"))
                    requests.append({"PutRequest": {"Item": self._serialize(data)}})
                elif isinstance(operation, BatchDelete):
                    key = self.build_key(operation.key, operation="batch_write")
                    keys.append(key)
                    requests.append({"DeleteRequest": {"Key": self._serialize(key)}})
                else:
                    raise ValidationError(
                        f"Unsupported batch write operation: {type(operation).__name__}"
                    )
            self.ensure_unique_keys(keys, operation="batch_write")
            await self._batch_write_chunk(requests)

    async def _batch_get_chunk(
        self, keys: list[DynamoDBKey], consistent_read: bool
    ) -> list[dict[str, Any]]:
        client = await self._client()
        pending: dict[str, Any] = {
            self.table_name: {
                "Keys": [self._serialize(key) for key in keys],
                "ConsistentRead": consistent_read,
            }
        }
        found: list[dict[str, Any]] = []
        attempt = 0
        while True:
            try:
                response = await client.batch_get_item(RequestItems=pending)
            except _BACKEND_ERRORS as e:
                raise self._translate(e, "batch_get") from e

            found.extend(response.get("Responses", {}).get(self.table_name, []))
            unprocessed = (response.get("UnprocessedKeys") or {}).get(self.table_name) or {}
            remaining = len(unprocessed.get("Keys") or [])
            if not remaining:
                return found
            if attempt >= self.max_retries:
                raise self._retries_exhausted("batch_get", remaining)
            await self._backoff("batch_get", attempt, remaining)
            pending = {self.table_name: unprocessed}
            attempt += 1

    async def batch_get(
        self, keys: Sequence[KeyInput], *, consistent_read: bool = False
    ) -> list[ItemT]:
        dynamodb_keys = [self.build_key(key, operation="batch_get") for key in keys]
        items: list[ItemT] = []
        for chunk in chunked(dynamodb_keys, BATCH_GET_CHUNK_SIZE):
            self.ensure_unique_keys(chunk, operation="batch_get")
            for raw in await self._batch_get_chunk(chunk, consistent_read):
                items.append(self.validate_item(self._deserialize(raw)))
        return items

    # Transactions

    def _transact_item(self, write: PreparedWrite) -> dict[str, Any]:
        condition = write.condition_expression
        names = write.names
        if write.kind in ("update", "delete"):
            condition, names = self._guard_existing(condition, names)

        body: dict[str, Any] = {"TableName": self.table_name}
        if write.kind == "put":
            body["Item"] = self._serialize(write.item or {})
        else:
            body["Key"] = self._serialize(write.key)
        if write.kind == "update":
            body["UpdateExpression"] = write.update_expression
        if condition:
            body["ConditionExpression"] = condition
        if names:
            body["ExpressionAttributeNames"] = dict(names)
        if write.values:
            body["ExpressionAttributeValues"] = self._serialize(write.values)
        return {_TRANSACT_ACTIONS[write.kind]: body}

    async def transact_write(self, operations: Sequence[TransactWriteOperation]) -> None:
        prepared = self.prepare_transaction(operations)
        transact_items = [self._transact_item(write) for write in prepared]

        client = await self._client()
        try:
            await client.transact_write_items(TransactItems=transact_items)
        except _BACKEND_ERRORS as e:
            raise self._translate(e, "transact_write") from e

    async def get_item_count(self) -> int:
        client = await self._client()
        try:
            response = await client.describe_table(TableName=self.table_name)
        except _BACKEND_ERRORS as e:
            raise self._translate(e, "get_item_count") from e
        return int(response["Table"].get("ItemCount", 0))

    # Query and scan

    def _read_kwargs(
        self,
        request: ReadRequest,
        names: dict[str, str],
        values: dict[str, Any],
    ) -> dict[str, Any]:
        read_kwargs: dict[str, Any] = {"ConsistentRead": request.consistent_read}
        if request.filter_expression:
            read_kwargs["FilterExpression"] = request.filter_expression
        if names:
            read_kwargs["ExpressionAttributeNames"] = names
        if values:
            read_kwargs["ExpressionAttributeValues"] = values
        if request.limit is not None:
            read_kwargs["Limit"] = request.limit
        if request.exclusive_start_key is not None:
            read_kwargs["ExclusiveStartKey"] = to_storage_value(request.exclusive_start_key)
        if request.index_name is not None:
            read_kwargs["IndexName"] = request.index_name
        return read_kwargs

    def _page(self, response: Mapping[str, Any]) -> PaginatedResult[ItemT]:
        items = [self.validate_item(_plain(item)) for item in response.get("Items", [])]
        last_evaluated_key = response.get("LastEvaluatedKey")
        return PaginatedResult(
            items=items,
            last_evaluated_key=_plain(last_evaluated_key) if last_evaluated_key else None,
            count=len(items),
            scanned_count=int(response.get("ScannedCount", len(items))),
        )

    async def _execute_query(self, request: QueryRequest) -> PaginatedResult[ItemT]:
        schema = (
            self.key_schema
            if request.index_name is None
            else self.index_schema(request.index_name)
        )
        partition_value = schema.partition_key.coerce(request.partition_key_value)

        names = dict(request.expression_attribute_names)
        values = _storage_values(request.expression_attribute_values)

        pk_name = free_placeholder("#", "pkName", names)
        pk_value = free_placeholder(":", "pkValue", values)
        names[pk_name] = schema.partition_key.name
        values[pk_value] = partition_value
        key_condition = f"{pk_name} = {pk_value}"

        condition = request.sort_key_condition
        if condition is not None:
            if schema.sort_key is None:
                raise SortKeyNotSupportedError(index_name=request.index_name)
            condition.validate_for(schema.sort_key)
            sk_name = free_placeholder("#", "skName", names)
            names[sk_name] = schema.sort_key.name
            fragment, sk_values = condition.to_expression(
                sk_name, free_placeholder(":", "skValue", values)
            )
            key_condition = f"{key_condition} AND {fragment}"
            values.update(_storage_values(sk_values))

        query_kwargs = self._read_kwargs(request, names, values)
        query_kwargs["KeyConditionExpression"] = key_condition
        query_kwargs["ScanIndexForward"] = request.scan_index_forward

        table = await self._table()
        try:
            response = await table.query(**query_kwargs)
        except _BACKEND_ERRORS as e:
            raise self._translate(e, "query") from e
        return self._page(response)

    async def _execute_scan(self, request: ScanRequest) -> PaginatedResult[ItemT]:
        if request.index_name is not None:
            self.index_schema(request.index_name)

        scan_kwargs = self._read_kwargs(
            request,
            dict(request.expression_attribute_names),
            _storage_values(request.expression_attribute_values),
        )
        if request.total_segments is not None and request.segment is not None:
            scan_kwargs["TotalSegments"] = request.total_segments
            scan_kwargs["Segment"] = request.segment

        table = await self._table()
        try:
            response = await table.scan(**scan_kwargs)
        except _BACKEND_ERRORS as e:
            raise self._translate(e, "scan") from e
        return self._page(response)


__all__ = [
    "RETRIES_EXHAUSTED_MESSAGE",
    "AwsDynamoDbService",
    "Sleep",
]
