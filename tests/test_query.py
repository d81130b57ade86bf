"""
Unit tests for argument encoding.

Placeholder rewriting, positional substitution and wire serialization.
"""

from __future__ import annotations

import pytest

from n1qldb.query import (
    build_positional_arg_list,
    encode_arg,
    encode_statement,
    prepare_positional_args,
    prepare_query,
)
from n1qldb.types import ArgumentCountMismatch


class TestPrepareQuery:
    """Tests for prepare_query()."""

    def test_rewrites_placeholders_in_order(self) -> None:
        text, count = prepare_query("SELECT * FROM b WHERE style = ? AND abv > ?")

        assert text == "SELECT * FROM b WHERE style = $1 AND abv > $2"
        assert count == 2

    def test_no_placeholders(self) -> None:
        text, count = prepare_query("SELECT RAW 1;")

        assert text == "SELECT RAW 1;"
        assert count == 0

    def test_many_placeholders(self) -> None:
        text, count = prepare_query(", ".join("?" * 11))

        assert count == 11
        assert text.endswith("$10, $11")


class TestEncodeArg:
    """Tests for encode_arg()."""

    def test_string_is_quoted_not_escaped(self) -> None:
        assert encode_arg("Porter") == '"Porter"'
        assert encode_arg('say "hi"') == '"say "hi""'

    def test_bytes_pass_through(self) -> None:
        assert encode_arg(b'{"a": 1}') == '{"a": 1}'
        assert encode_arg(bytearray(b"[1,2]")) == "[1,2]"

    def test_bool_and_none(self) -> None:
        assert encode_arg(True) == "true"
        assert encode_arg(False) == "false"
        assert encode_arg(None) == "null"

    def test_numbers(self) -> None:
        assert encode_arg(975) == "975"
        assert encode_arg(5.5) == "5.5"

    def test_composites_are_compact_json(self) -> None:
        assert encode_arg([1, 2, 3]) == "[1,2,3]"
        assert encode_arg({"a": "b"}) == '{"a":"b"}'


class TestBuildPositionalArgList:
    """Tests for build_positional_arg_list()."""

    def test_empty(self) -> None:
        assert build_positional_arg_list([]) == ""

    def test_mixed(self) -> None:
        assert build_positional_arg_list(["124", 975, "bar", False]) == '["124",975,"bar",false]'


class TestPreparePositionalArgs:
    """Tests for prepare_positional_args()."""

    def test_inlines_arguments(self) -> None:
        text, extra = prepare_positional_args("WHERE style = $1 AND abv > $2", 2, ["Porter", 6.0])

        assert text == 'WHERE style = "Porter" AND abv > 6.0'
        assert extra == []

    def test_extra_arguments_keep_order(self) -> None:
        text, extra = prepare_positional_args("WHERE a = $1", 1, [1, "x", 2, "y"])

        assert text == "WHERE a = 1"
        assert extra == ["x", 2, "y"]

    def test_marker_ten_is_not_clobbered_by_marker_one(self) -> None:
        args = list(range(1, 11))
        query, count = prepare_query(" ".join("?" * 10))

        text, _ = prepare_positional_args(query, count, args)

        assert text == "1 2 3 4 5 6 7 8 9 10"

    def test_inlined_text_is_not_substituted_again(self) -> None:
        text, _ = prepare_positional_args("$1 $2", 2, ["$2", "b"])

        assert text == '"$2" "b"'


class TestEncodeStatement:
    """Tests for encode_statement()."""

    def test_without_args_leaves_text_alone(self) -> None:
        assert encode_statement("SELECT ? FROM x", ()) == ("SELECT ? FROM x", [])

    def test_fewer_args_than_placeholders(self) -> None:
        with pytest.raises(ArgumentCountMismatch, match="2 != 1"):
            encode_statement("SELECT ? + ?", (1,))

    def test_more_args_than_placeholders(self) -> None:
        text, extra = encode_statement("SELECT ?", (1, 2, 3))

        assert text == "SELECT 1"
        assert extra == [2, 3]
