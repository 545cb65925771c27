"""PyDynastore exceptions.

This module defines the exception hierarchy for the PyDynastore library.
All custom exceptions inherit from DynastoreError, allowing users to catch
all library-specific errors with a single except clause.

Every error carries a human-readable message, a machine-stable ``code`` and a
suggested HTTP ``status_code``:

- NotFoundError (NOT_FOUND, 404): the operation required an existing item
- ConditionCheckFailedError (CONDITIONAL_CHECK_FAILED, 400): a condition
  expression evaluated false
- ValidationError (VALIDATION_ERROR, 422): an item or key failed validation.
  Key and schema problems raise one of its subclasses.
- TableNotFoundError (TABLE_NOT_FOUND, 404): the table does not exist
- TransactionCancelledError (TRANSACTION_CANCELLED, 400): a transaction was
  cancelled and none of its operations were applied
- UnknownError (UNKNOWN_ERROR, 500): any other backend failure, carrying the
  original message

Backend failures are translated with ``wrap_client_error``; the original
botocore exception is kept on ``original_error`` and chained with ``from``.
"""

from typing import Any, ClassVar

from botocore.exceptions import BotoCoreError, ParamValidationError


class DynastoreError(Exception):
    """Base exception for all PyDynastore errors.

    Attributes:
        message: Human-readable description.
        operation: The service operation that failed, when known.
        table_name: The table the operation targeted, when known.
        original_error: The backend exception this error was translated from.

    Example:
        try:
            await users.put_item(user)
        except DynastoreError as e:
            return {"error": e.code}, e.status_code

    """

    code: ClassVar[str] = "UNKNOWN_ERROR"
    status_code: ClassVar[int] = 500
    default_message: ClassVar[str] = "An unknown error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        operation: str | None = None,
        table_name: str | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.operation = operation
        self.table_name = table_name
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "status_code": self.status_code}


class NotFoundError(DynastoreError):
    """Raised when an operation requires an existing item and none was found.

    Reads never raise this; ``get_item`` returns None for a missing item.

    Example:
        await users.delete_item({"userId": "missing"})
        Raises NotFoundError.

    """

    code = "NOT_FOUND"
    status_code = 404
    default_message = "The requested item was not found"

    def __init__(
        self,
        message: str | None = None,
        *,
        key: dict[str, Any] | None = None,
        operation: str | None = None,
        table_name: str | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        self.key = key
        super().__init__(
            message,
            operation=operation,
            table_name=table_name,
            original_error=original_error,
        )


class ConditionCheckFailedError(DynastoreError):
    """Raised when a conditional write's condition expression evaluates false.

    Attributes:
        condition: The condition expression that failed, if known.

    Example:
        await users.put_item(user, condition_expression="attribute_not_exists(userId)")
        Raises ConditionCheckFailedError if the user already exists.

    """

    code = "CONDITIONAL_CHECK_FAILED"
    status_code = 400
    default_message = "Conditional check failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        condition: str | None = None,
        operation: str | None = None,
        table_name: str | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        self.condition = condition
        if message is None and operation:
            message = f"Conditional check failed in {operation} operation"
            if table_name:
                message = f"{message} on {table_name}"
        super().__init__(
            message,
            operation=operation,
            table_name=table_name,
            original_error=original_error,
        )


class ValidationError(DynastoreError):
    """Raised when an item or key does not match the declared schema.

    Pydantic validation failures of items are wrapped in this error, with the
    pydantic exception chained as ``__cause__``.
    """

    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Item validation failed"


class InvalidKeySchemaError(ValidationError):
    """Raised when a key schema definition is invalid.

    This occurs when the schema has no partition key, more than two key parts,
    an unknown key type, or when the item model lacks a key attribute.
    """

    def __init__(self, message: str = "Invalid key schema: no partition key found") -> None:
        super().__init__(message)


class MissingPartitionKeyValueError(ValidationError):
    """Raised when a key or item does not carry the partition key."""

    def __init__(
        self,
        *,
        attribute: str,
        operation: str | None = None,
        model_name: str | None = None,
    ) -> None:
        self.attribute = attribute
        self.model_name = model_name
        message = f"Partition key value {attribute!r} must be provided"
        if model_name:
            message = f"{message} for {model_name}"
        if operation:
            message = f"{message} in {operation} operation"
        super().__init__(message, operation=operation)


class MissingSortKeyValueError(ValidationError):
    """Raised when a sort key value is required but not provided.

    For schemas with a composite key (partition + sort), the sort key
    value must be provided for operations that require a complete key.

    Example:
        For a messages table keyed on chatId and messageId:

        await messages.get_item({"chatId": "c-1"})
        Raises MissingSortKeyValueError.

    """

    def __init__(
        self,
        *,
        operation: str | None = None,
        model_name: str | None = None,
    ) -> None:
        self.model_name = model_name
        message = "Sort key value must be provided for models with a sort key"
        if model_name and operation:
            message = (
                f"Sort key value must be provided for {model_name} in {operation} operation"
            )
        elif model_name:
            message = f"Sort key value must be provided for {model_name}"
        elif operation:
            message = f"Sort key value must be provided in {operation} operation"
        super().__init__(message, operation=operation)


class InvalidKeyValueError(ValidationError):
    """Raised when a key attribute carries a value of the wrong scalar type.

    Attributes:
        attribute: The key attribute name.
        expected: The declared key type ("string" or "number").
        value: The offending value.

    """

    def __init__(self, *, attribute: str, expected: str, value: Any) -> None:
        self.attribute = attribute
        self.expected = expected
        self.value = value
        super().__init__(
            f"Key attribute {attribute!r} must be a {expected}, got {type(value).__name__}"
        )


class SortKeyNotSupportedError(ValidationError):
    """Raised when a sort key condition targets a schema without a sort key."""

    def __init__(self, *, index_name: str | None = None) -> None:
        self.index_name = index_name
        target = f"index '{index_name}'" if index_name else "table"
        super().__init__(f"Cannot add sort key condition: {target} has no sort key")


class IndexNotFoundError(ValidationError):
    """Raised when a specified index is not declared for the service.

    Attributes:
        index_name: Name of the index that was not found.

    Example:
        users.query("x").index("nonexistent-index")
        Raises IndexNotFoundError: Index 'nonexistent-index' not found on table

    """

    def __init__(
        self,
        *,
        index_name: str,
    ) -> None:
        self.index_name = index_name
        super().__init__(
            f"Index '{index_name}' not found on table",
        )


class InsufficientConditionsError(ValidationError):
    """Raised when a logical condition has insufficient operands.

    The And and Or conditions require at least 2 conditions to combine.

    Attributes:
        operator: The logical operator (And/Or) that failed.
        count: The number of conditions provided.

    """

    def __init__(
        self,
        *,
        operator: str,
        count: int,
    ) -> None:
        self.operator = operator
        self.count = count
        super().__init__(f"{operator} requires at least 2 conditions, got {count}")


class EmptyUpdateError(ValidationError):
    """Raised when an update operation has an empty update expression.

    Example:
        await users.update_item(key, update_expression="")

    """

    def __init__(self) -> None:
        super().__init__("No updates provided")


class TableNotFoundError(DynastoreError):
    """Raised when the target table does not exist in the backend."""

    code = "TABLE_NOT_FOUND"
    status_code = 404
    default_message = "Table not found"

    def __init__(
        self,
        message: str | None = None,
        *,
        table_name: str | None = None,
        operation: str | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        if message is None and table_name:
            message = f"Table '{table_name}' not found"
        super().__init__(
            message,
            operation=operation,
            table_name=table_name,
            original_error=original_error,
        )


class TransactionCancelledError(DynastoreError):
    """Raised when a transaction is cancelled; none of its operations were applied.

    Attributes:
        reason_codes: One cancellation reason per transaction operation, in
            request order. "None" marks operations that did not cause the
            cancellation.

    """

    code = "TRANSACTION_CANCELLED"
    status_code = 400
    default_message = "Transaction was cancelled"

    def __init__(
        self,
        message: str | None = None,
        *,
        reason_codes: tuple[str, ...] = (),
        operation: str | None = None,
        table_name: str | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        self.reason_codes = reason_codes
        super().__init__(
            message,
            operation=operation,
            table_name=table_name,
            original_error=original_error,
        )


class UnknownError(DynastoreError):
    """Catch-all for unrecognized backend failures.

    Attributes:
        error_code: The backend error code, if the failure carried one.

    """

    code = "UNKNOWN_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        operation: str | None = None,
        table_name: str | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        self.error_code = error_code
        if message and error_code:
            message = f"{error_code}: {message}"
        super().__init__(
            message,
            operation=operation,
            table_name=table_name,
            original_error=original_error,
        )


def _reason_codes(response: dict[str, Any]) -> tuple[str, ...]:
    reasons = response.get("CancellationReasons") or []
    return tuple(
        str(reason.get("Code") or "None") for reason in reasons if isinstance(reason, dict)
    )


def wrap_client_error(
    error: Exception,
    *,
    operation: str | None = None,
    table_name: str | None = None,
) -> DynastoreError:
    """Translate a botocore exception into a PyDynastore exception.

    Args:
        error: A ``botocore.exceptions.ClientError``, ``BotoCoreError`` or any
            exception exposing a ClientError-style ``response`` mapping.
        operation: The service operation that failed.
        table_name: The table the operation targeted.

    Returns:
        The translated exception. Callers raise it ``from`` the original.

    Example:
        try:
            await table.put_item(**kwargs)
        except ClientError as e:
            raise wrap_client_error(e, operation="put_item", table_name=name) from e

    """
    if isinstance(error, ParamValidationError):
        return ValidationError(
            str(error),
            operation=operation,
            table_name=table_name,
            original_error=error,
        )

    response: dict[str, Any] = getattr(error, "response", None) or {}
    if not response:
        message = str(error) if isinstance(error, BotoCoreError) else repr(error)
        return UnknownError(
            message,
            operation=operation,
            table_name=table_name,
            original_error=error,
        )

    error_info = response.get("Error", {})
    code = str(error_info.get("Code", ""))
    message = str(error_info.get("Message", "")) or str(error)

    if code == "ConditionalCheckFailedException":
        return ConditionCheckFailedError(
            operation=operation,
            table_name=table_name,
            original_error=error,
        )
    if code == "ResourceNotFoundException":
        return TableNotFoundError(
            table_name=table_name,
            operation=operation,
            original_error=error,
        )
    if code == "ValidationException":
        return ValidationError(
            message,
            operation=operation,
            table_name=table_name,
            original_error=error,
        )
    if code == "TransactionCanceledException":
        return TransactionCancelledError(
            reason_codes=_reason_codes(response),
            operation=operation,
            table_name=table_name,
            original_error=error,
        )

    return UnknownError(
        message,
        error_code=code or None,
        operation=operation,
        table_name=table_name,
        original_error=error,
    )


__all__ = [
    "ConditionCheckFailedError",
    "DynastoreError",
    "EmptyUpdateError",
    "IndexNotFoundError",
    "InsufficientConditionsError",
    "InvalidKeySchemaError",
    "InvalidKeyValueError",
    "MissingPartitionKeyValueError",
    "MissingSortKeyValueError",
    "NotFoundError",
    "SortKeyNotSupportedError",
    "TableNotFoundError",
    "TransactionCancelledError",
    "UnknownError",
    "ValidationError",
    "wrap_client_error",
]
