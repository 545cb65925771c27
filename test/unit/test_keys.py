"""Tests for key schemas and key derivation."""

from decimal import Decimal

import pytest
from sample_models import Message, User

from pydynastore.exceptions import (
    InvalidKeySchemaError,
    InvalidKeyValueError,
    MissingPartitionKeyValueError,
    MissingSortKeyValueError,
)
from pydynastore.keys import KeyPart, KeySchema, normalize_number, serialize_key


class TestKeySchemaParse:
    """Test building key schemas from their tuple form."""

    def test_partition_key_only(self) -> None:
        schema = KeySchema.parse([("userId", "string")])

        assert schema.partition_key == KeyPart("userId", "string")
        assert schema.sort_key is None
        assert not schema.has_sort_key
        assert schema.attribute_names == ("userId",)

    def test_partition_and_sort_key(self) -> None:
        schema = KeySchema.parse([("chatId", "string"), ("timestamp", "number")])

        assert schema.partition_key == KeyPart("chatId", "string")
        assert schema.sort_key == KeyPart("timestamp", "number")
        assert schema.attribute_names == ("chatId", "timestamp")

    def test_bare_names_default_to_string(self) -> None:
        schema = KeySchema.parse(["chatId", "messageId"])

        assert schema.sort_key == KeyPart("messageId", "string")

    def test_existing_schema_is_returned_as_is(self) -> None:
        schema = KeySchema(partition_key=KeyPart("userId"))

        assert KeySchema.parse(schema) is schema

    def test_empty_definition_raises(self) -> None:
        with pytest.raises(InvalidKeySchemaError, match="no partition key found"):
            KeySchema.parse([])

    def test_three_parts_raise(self) -> None:
        with pytest.raises(InvalidKeySchemaError, match="at most 2"):
            KeySchema.parse([("a", "string"), ("b", "string"), ("c", "string")])

    def test_duplicate_attribute_raises(self) -> None:
        with pytest.raises(InvalidKeySchemaError):
            KeySchema.parse([("id", "string"), ("id", "number")])

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(InvalidKeySchemaError, match="unsupported key type"):
            KeySchema.parse([("id", "binary")])


class TestBuildKey:
    """Test deriving keys from key mappings, items and models."""

    def test_from_key_mapping(self) -> None:
        schema = KeySchema.parse([("userId", "string")])

        assert schema.build_key({"userId": "u1"}) == {"userId": "u1"}

    def test_from_full_item_drops_other_attributes(self) -> None:
        schema = KeySchema.parse([("chatId", "string"), ("timestamp", "number")])

        key = schema.build_key({"chatId": "c1", "timestamp": 1000, "content": "hi"})

        assert key == {"chatId": "c1", "timestamp": 1000}

    def test_from_model_instance(self) -> None:
        schema = KeySchema.parse([("chatId", "string"), ("timestamp", "number")])
        message = Message(chatId="c1", timestamp=2000, userId="u1")

        assert schema.build_key(message) == {"chatId": "c1", "timestamp": 2000}

    def test_missing_partition_key_raises(self) -> None:
        schema = KeySchema.parse([("userId", "string")])

        with pytest.raises(MissingPartitionKeyValueError) as exc_info:
            schema.build_key({"email": "a@example.com"}, model_name="User", operation="get_item")

        assert exc_info.value.attribute == "userId"
        assert "User" in str(exc_info.value)
        assert "get_item" in str(exc_info.value)

    def test_missing_sort_key_raises(self) -> None:
        schema = KeySchema.parse([("chatId", "string"), ("timestamp", "number")])

        with pytest.raises(MissingSortKeyValueError, match="Sort key value must be provided"):
            schema.build_key({"chatId": "c1"})

    def test_wrong_scalar_type_raises(self) -> None:
        schema = KeySchema.parse([("chatId", "string"), ("timestamp", "number")])

        with pytest.raises(InvalidKeyValueError) as exc_info:
            schema.build_key({"chatId": "c1", "timestamp": "1000"})

        assert exc_info.value.attribute == "timestamp"
        assert exc_info.value.expected == "number"

    def test_bool_is_not_a_number(self) -> None:
        schema = KeySchema.parse([("n", "number")])

        with pytest.raises(InvalidKeyValueError):
            schema.build_key({"n": True})

    def test_numbers_are_normalized(self) -> None:
        schema = KeySchema.parse([("n", "number")])

        assert schema.build_key({"n": Decimal("5")}) == {"n": 5}
        assert schema.build_key({"n": 1.5}) == {"n": Decimal("1.5")}


class TestCovers:
    """Test sparse index membership."""

    def test_item_with_index_attributes_is_covered(self) -> None:
        schema = KeySchema.parse([("email", "string")])

        assert schema.covers(User(userId="u1", email="a@example.com").model_dump())

    def test_item_without_index_attribute_is_not_covered(self) -> None:
        schema = KeySchema.parse([("name", "string")])

        assert not schema.covers(User(userId="u1", email="a@example.com").model_dump())

    def test_item_with_wrongly_typed_attribute_is_not_covered(self) -> None:
        schema = KeySchema.parse([("userId", "string"), ("visits", "string")])

        assert not schema.covers({"userId": "u1", "visits": 3})


class TestSerializeKey:
    """Test canonical key serialization."""

    def test_attribute_order_does_not_matter(self) -> None:
        assert serialize_key({"a": "x", "b": 1}) == serialize_key({"b": 1, "a": "x"})

    def test_integral_decimal_equals_int(self) -> None:
        assert serialize_key({"n": Decimal("1")}) == serialize_key({"n": 1})

    def test_distinct_keys_differ(self) -> None:
        assert serialize_key({"n": 1}) != serialize_key({"n": "1"})

    def test_fractional_decimals_keep_every_digit(self) -> None:
        assert serialize_key({"n": Decimal("1.00000000000000001")}) != serialize_key(
            {"n": Decimal("1.00000000000000002")}
        )

    def test_equal_fractional_decimals_serialize_identically(self) -> None:
        assert serialize_key({"n": Decimal("1.50")}) == serialize_key({"n": Decimal("1.5")})

    def test_fractional_number_differs_from_string(self) -> None:
        assert serialize_key({"n": Decimal("1.5")}) != serialize_key({"n": "1.5"})

    def test_normalize_number(self) -> None:
        assert normalize_number(Decimal("2.0")) == 2
        assert isinstance(normalize_number(Decimal("2.0")), int)
        assert normalize_number(0.25) == Decimal("0.25")
