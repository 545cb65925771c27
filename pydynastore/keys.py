"""Key schema definitions and key derivation.

This module describes how a table (or one of its secondary indexes) is keyed and
how a logical key is derived from either an explicit key mapping or a full item.

Type aliases:
    KeyType: The scalar type of a key part, either "string" or "number".

    KeyValue: The types allowed as partition key or sort key values.
        Includes str, int and Decimal. Floats are accepted on input and
        converted to Decimal.

    DynamoDBKey: A dictionary mapping key attribute names to key values.
        Example: {"chatId": "c-1", "messageId": "m-1"}

    LastEvaluatedKey: The continuation token returned by query and scan.
        Pass it to ``start_from()`` to resume a traversal.

Keys are validated at runtime: a key or item missing a required key attribute,
or carrying a value of the wrong scalar type, is rejected before any backend
call is made.
"""

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal, TypeAlias, Union

from pydantic import BaseModel
from typing_extensions import TypeAliasType

from pydynastore.exceptions import (
    InvalidKeySchemaError,
    InvalidKeyValueError,
    MissingPartitionKeyValueError,
    MissingSortKeyValueError,
)

KeyType: TypeAlias = Literal["string", "number"]
KeyValue: TypeAlias = str | int | Decimal
DynamoDBKey: TypeAlias = dict[str, KeyValue]
LastEvaluatedKey = TypeAliasType("LastEvaluatedKey", DynamoDBKey)

_KEY_TYPES: frozenset[str] = frozenset({"string", "number"})


def is_number(value: Any) -> bool:
    """Return True for numeric values, treating booleans as non-numeric."""
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def normalize_number(value: int | float | Decimal) -> int | Decimal:
    """Normalize a number to the representation stored in keys and items.

    Floats become Decimal (DynamoDB rejects floats) and integral Decimals become
    int so that ``1`` and ``Decimal("1")`` produce the same key.
    """
    if isinstance(value, float):
        value = Decimal(str(value))
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return int(value)
    return value


@dataclass(frozen=True)
class KeyPart:
    """A single key attribute definition.

    Attributes:
        name: The attribute name.
        type: The scalar type of the attribute, "string" or "number".

    """

    name: str
    type: KeyType = "string"

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidKeySchemaError("Invalid key schema: key attribute name is empty")
        if self.type not in _KEY_TYPES:
            raise InvalidKeySchemaError(
                f"Invalid key schema: unsupported key type {self.type!r} for {self.name!r}"
            )

    def coerce(self, value: Any) -> KeyValue:
        """Validate ``value`` against this key part and return its normalized form.

        Raises:
            InvalidKeyValueError: If the value does not match the declared type.

        """
        if self.type == "string":
            if not isinstance(value, str):
                raise InvalidKeyValueError(attribute=self.name, expected=self.type, value=value)
            return value
        if not is_number(value):
            raise InvalidKeyValueError(attribute=self.name, expected=self.type, value=value)
        return normalize_number(value)

    def matches_type(self, value: Any) -> bool:
        if self.type == "string":
            return isinstance(value, str)
        return is_number(value)


KeyPartDefinition: TypeAlias = Union[KeyPart, tuple[str, KeyType], Sequence[str]]


@dataclass(frozen=True)
class KeySchema:
    """A table or index key schema: a partition key and an optional sort key.

    Example:
        KeySchema.parse([("chatId", "string"), ("messageId", "string")])
        KeySchema(partition_key=KeyPart("userId"))

    """

    partition_key: KeyPart
    sort_key: KeyPart | None = None

    @classmethod
    def parse(cls, definition: "KeySchemaDefinition") -> "KeySchema":
        """Build a key schema from its tuple form.

        Args:
            definition: An existing KeySchema, or a sequence of one or two
                ``(name, type)`` pairs (or KeyPart instances), partition key first.

        Returns:
            The parsed key schema.

        Raises:
            InvalidKeySchemaError: If the definition has zero or more than two parts,
                or a part is malformed.

        """
        if isinstance(definition, KeySchema):
            return definition

        parts = [cls._parse_part(part) for part in definition]
        if not parts:
            raise InvalidKeySchemaError()
        if len(parts) > 2:
            raise InvalidKeySchemaError(
                f"Invalid key schema: expected at most 2 key parts, got {len(parts)}"
            )
        if len(parts) == 2 and parts[0].name == parts[1].name:
            raise InvalidKeySchemaError(
                "Invalid key schema: partition and sort key must be different attributes"
            )

        return cls(partition_key=parts[0], sort_key=parts[1] if len(parts) == 2 else None)

    @staticmethod
    def _parse_part(part: KeyPartDefinition) -> KeyPart:
        if isinstance(part, KeyPart):
            return part
        if isinstance(part, str):
            return KeyPart(name=part)
        values = tuple(part)
        if len(values) == 1:
            return KeyPart(name=values[0])
        if len(values) == 2:
            return KeyPart(name=values[0], type=values[1])  # type: ignore[arg-type]
        raise InvalidKeySchemaError(f"Invalid key schema: malformed key part {part!r}")

    @property
    def has_sort_key(self) -> bool:
        return self.sort_key is not None

    @property
    def attribute_names(self) -> tuple[str, ...]:
        if self.sort_key is None:
            return (self.partition_key.name,)
        return (self.partition_key.name, self.sort_key.name)

    def build_key(
        self,
        source: Mapping[str, Any] | BaseModel,
        *,
        model_name: str | None = None,
        operation: str | None = None,
    ) -> DynamoDBKey:
        """Derive the key of ``source``.

        Args:
            source: A key mapping, a full item mapping or a model instance.
                Attributes other than the key attributes are ignored.
            model_name: Item model name used in error messages.
            operation: Operation name used in error messages.

        Returns:
            A dictionary holding exactly the key attributes.

        Raises:
            MissingPartitionKeyValueError: If the partition key is missing.
            MissingSortKeyValueError: If the schema has a sort key and it is missing.
            InvalidKeyValueError: If a key value has the wrong scalar type.

        """
        if isinstance(source, BaseModel):
            source = source.model_dump(by_alias=True)

        partition_key = self.partition_key
        if source.get(partition_key.name) is None:
            raise MissingPartitionKeyValueError(
                attribute=partition_key.name, operation=operation, model_name=model_name
            )
        key: DynamoDBKey = {partition_key.name: partition_key.coerce(source[partition_key.name])}

        if self.sort_key is not None:
            if source.get(self.sort_key.name) is None:
                raise MissingSortKeyValueError(operation=operation, model_name=model_name)
            key[self.sort_key.name] = self.sort_key.coerce(source[self.sort_key.name])

        return key

    def covers(self, item: Mapping[str, Any]) -> bool:
        """Return True if ``item`` carries well-typed values for every key attribute.

        Items that do not are invisible to an index keyed by this schema.
        """
        if not self.partition_key.matches_type(item.get(self.partition_key.name)):
            return False
        if self.sort_key is not None:
            return self.sort_key.matches_type(item.get(self.sort_key.name))
        return True


KeySchemaDefinition: TypeAlias = Union[KeySchema, Sequence[KeyPartDefinition]]


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        normalized = normalize_number(value)
        if isinstance(normalized, int):
            return normalized
        # Exact digits, tagged so that 1.5 and "1.5" stay distinct.
        return {"N": format(normalized.normalize(), "f")}
    raise TypeError(f"Object of type {type(value).__name__} is not a valid key value")


def serialize_key(key: Mapping[str, Any]) -> str:
    """Serialize a key to its canonical string form.

    Attribute names are sorted so that equal keys always serialize identically,
    regardless of insertion order.

    Example:
        serialize_key({"b": 1, "a": "x"}) == '{"a": "x", "b": 1}'

    """
    return json.dumps(dict(key), sort_keys=True, default=_json_default)


__all__ = [
    "DynamoDBKey",
    "KeyPart",
    "KeySchema",
    "KeySchemaDefinition",
    "KeyType",
    "KeyValue",
    "LastEvaluatedKey",
    "is_number",
    "normalize_number",
    "serialize_key",
]
