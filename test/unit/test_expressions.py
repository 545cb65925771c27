"""Tests for update expression parsing, application and the updatedAt merge."""

from decimal import Decimal

from pydynastore.expressions import (
    AddAction,
    SetAction,
    UpdateExpression,
    apply_update,
    free_placeholder,
    merge_updated_at,
    parse_update,
    sets_attribute,
    split_clauses,
)

TIMESTAMP = "2024-01-01T12:00:00.000Z"


class TestParseUpdate:
    """Test parsing update expressions."""

    def test_set_and_add_clauses(self) -> None:
        update = parse_update("SET #n = :n, email = :e ADD visits :one")

        assert update == UpdateExpression(
            set_actions=(SetAction("#n", ":n"), SetAction("email", ":e")),
            add_actions=(AddAction("visits", ":one"),),
        )

    def test_clause_order_does_not_matter(self) -> None:
        update = parse_update("ADD visits :one SET #n = :n")

        assert update.set_actions == (SetAction("#n", ":n"),)
        assert update.add_actions == (AddAction("visits", ":one"),)

    def test_keywords_are_case_insensitive(self) -> None:
        assert parse_update("set a = :a").set_actions == (SetAction("a", ":a"),)

    def test_keyword_inside_attribute_name_is_not_a_clause(self) -> None:
        clauses = split_clauses("SET settings = :s, #ADD = :a")

        assert clauses == {"SET": "settings = :s, #ADD = :a"}

    def test_only_first_occurrence_of_a_clause_is_kept(self) -> None:
        update = parse_update("SET a = :a REMOVE b SET c = :c")

        assert update.set_actions == (SetAction("a", ":a"),)

    def test_unrecognized_actions_are_dropped(self) -> None:
        update = parse_update("SET a = if_not_exists(a, :zero), b = :b, c = c + :one")

        assert update.set_actions == (SetAction("b", ":b"),)


class TestApplyUpdate:
    """Test applying updates to items."""

    def test_set_overwrites(self) -> None:
        item = {"userId": "u1", "name": "Homer"}

        result = apply_update(
            item, parse_update("SET #n = :n"), names={"#n": "name"}, values={":n": "Marge"}
        )

        assert result == {"userId": "u1", "name": "Marge"}

    def test_input_item_is_not_modified(self) -> None:
        item = {"userId": "u1", "tags": ["a"]}

        result = apply_update(item, parse_update("SET tags = :t"), values={":t": ["b"]})

        assert item == {"userId": "u1", "tags": ["a"]}
        assert result["tags"] == ["b"]

    def test_add_increments_existing_number(self) -> None:
        result = apply_update({"visits": 2}, parse_update("ADD visits :n"), values={":n": 3})

        assert result == {"visits": 5}

    def test_add_defaults_missing_attribute_to_zero(self) -> None:
        result = apply_update({}, parse_update("ADD visits :n"), values={":n": 1})

        assert result == {"visits": 1}

    def test_add_keeps_decimal_precision(self) -> None:
        result = apply_update(
            {"balance": Decimal("0.1")}, parse_update("ADD balance :n"), values={":n": 0.2}
        )

        assert result == {"balance": Decimal("0.3")}

    def test_add_to_non_number_is_noop(self) -> None:
        result = apply_update({"name": "Homer"}, parse_update("ADD name :n"), values={":n": 1})

        assert result == {"name": "Homer"}

    def test_add_non_number_is_noop(self) -> None:
        result = apply_update({"visits": 1}, parse_update("ADD visits :n"), values={":n": "1"})

        assert result == {"visits": 1}

    def test_unmapped_placeholders_are_noops(self) -> None:
        update = parse_update("SET #missing = :a, b = :missing")

        result = apply_update({"b": 1}, update, values={":a": 1})

        assert result == {"b": 1}

    def test_nested_set(self) -> None:
        result = apply_update(
            {"address": {"city": "Springfield"}},
            parse_update("SET address.city = :c"),
            values={":c": "Shelbyville"},
        )

        assert result == {"address": {"city": "Shelbyville"}}

    def test_remove_clause_is_ignored(self) -> None:
        result = apply_update(
            {"a": 1, "b": 2}, parse_update("SET a = :a REMOVE b"), values={":a": 3}
        )

        assert result == {"a": 3, "b": 2}


class TestMergeUpdatedAt:
    """Test merging the updatedAt assignment into updates."""

    def test_joins_existing_set_clause(self) -> None:
        expression, names, values = merge_updated_at(
            "SET #n = :n", {"#n": "name"}, {":n": "Marge"}, timestamp=TIMESTAMP
        )

        assert expression == "SET #updatedAt = :updatedAt, #n = :n"
        assert names == {"#n": "name", "#updatedAt": "updatedAt"}
        assert values == {":n": "Marge", ":updatedAt": TIMESTAMP}

    def test_prepends_set_clause_when_missing(self) -> None:
        expression, _, values = merge_updated_at(
            "ADD visits :one", None, {":one": 1}, timestamp=TIMESTAMP
        )

        assert expression == "SET #updatedAt = :updatedAt ADD visits :one"
        assert values[":updatedAt"] == TIMESTAMP

    def test_merged_update_applies_both_actions(self) -> None:
        expression, names, values = merge_updated_at(
            "ADD visits :one", None, {":one": 1}, timestamp=TIMESTAMP
        )

        result = apply_update({"visits": 1}, parse_update(expression), names=names, values=values)

        assert result == {"visits": 2, "updatedAt": TIMESTAMP}

    def test_caller_assignment_is_kept(self) -> None:
        expression, names, values = merge_updated_at(
            "SET #u = :u", {"#u": "updatedAt"}, {":u": "custom"}, timestamp=TIMESTAMP
        )

        assert expression == "SET #u = :u"
        assert values == {":u": "custom"}
        assert names == {"#u": "updatedAt"}

    def test_placeholders_do_not_collide(self) -> None:
        expression, names, values = merge_updated_at(
            "SET #updatedAt = :updatedAt",
            {"#updatedAt": "name"},
            {":updatedAt": "Marge"},
            timestamp=TIMESTAMP,
        )

        assert expression == "SET #updatedAt1 = :updatedAt1, #updatedAt = :updatedAt"
        assert names["#updatedAt1"] == "updatedAt"
        assert values[":updatedAt1"] == TIMESTAMP
        assert values[":updatedAt"] == "Marge"

    def test_caller_maps_are_not_modified(self) -> None:
        names = {"#n": "name"}
        values = {":n": "Marge"}

        merge_updated_at("SET #n = :n", names, values, timestamp=TIMESTAMP)

        assert names == {"#n": "name"}
        assert values == {":n": "Marge"}


def test_sets_attribute() -> None:
    assert sets_attribute("SET #u = :u", "updatedAt", {"#u": "updatedAt"})
    assert sets_attribute("SET updatedAt = :u", "updatedAt")
    assert not sets_attribute("ADD updatedAt :u", "updatedAt")


def test_free_placeholder() -> None:
    assert free_placeholder("#", "pk", {}) == "#pk"
    assert free_placeholder("#", "pk", {"#pk": "a", "#pk1": "b"}) == "#pk2"
