"""Tests for almanac.coordinates: the replaceable-record coordinate codec."""

from __future__ import annotations

import pytest

from almanac.coordinates import (
    Coordinate,
    is_coordinate_reference,
    is_replaceable_type_code,
    make_coordinate,
    parse_coordinate,
)
from almanac.errors import ErrorKind, InvalidCoordinateError

pytestmark = pytest.mark.unit


class TestMakeCoordinate:
    def test_serializes_triple(self):
        assert make_coordinate(31924, "abc", "my-cal") == "31924:abc:my-cal"

    def test_empty_slug_rejected(self):
        with pytest.raises(ValueError, match="slug"):
            make_coordinate(31924, "abc", "")

    def test_str_of_parsed_coordinate_round_trips(self):
        value = "31923:npub1xyz:weekly-sync"
        assert str(parse_coordinate(value)) == value


class TestParseCoordinate:
    def test_parses_valid_coordinate(self):
        assert parse_coordinate("31924:abc:my-cal") == Coordinate(31924, "abc", "my-cal")

    @pytest.mark.parametrize(
        "value",
        [
            "31924:abc",
            "31924:abc:my:cal",
            "",
            "abc",
            "31924::slug",
            ":abc:slug",
            "31924:abc:",
            "x:abc:slug",
            "31.5:abc:slug",
        ],
    )
    def test_rejects_malformed(self, value):
        with pytest.raises(InvalidCoordinateError) as excinfo:
            parse_coordinate(value)
        assert excinfo.value.kind is ErrorKind.invalid_format
        assert excinfo.value.value == value

    def test_negative_type_code_is_an_integer(self):
        coordinate = parse_coordinate("-1:abc:slug")
        assert coordinate.type_code == -1
        assert str(coordinate) == "-1:abc:slug"

    def test_invalid_coordinate_is_value_error(self):
        with pytest.raises(ValueError):
            parse_coordinate("nope")

    def test_slug_containing_colon_does_not_round_trip(self):
        """Slugs are opaque on write, but a colon breaks parsing."""
        serialized = make_coordinate(31924, "abc", "a:b")
        with pytest.raises(InvalidCoordinateError):
            parse_coordinate(serialized)

    def test_parse_then_make_reproduces_input(self):
        value = "30000:author:slug-with-dashes_and.dots"
        coordinate = parse_coordinate(value)
        assert (
            make_coordinate(coordinate.type_code, coordinate.author_id, coordinate.slug) == value
        )


class TestReplaceableTypeCode:
    @pytest.mark.parametrize(
        ("type_code", "expected"),
        [
            (29999, False),
            (30000, True),
            (31922, True),
            (31924, True),
            (39999, True),
            (40000, False),
            (1, False),
            (1111, False),
        ],
    )
    def test_half_open_range(self, type_code, expected):
        assert is_replaceable_type_code(type_code) is expected


class TestIsCoordinateReference:
    def test_coordinate_shape(self):
        assert is_coordinate_reference("31923:bob:standup")

    def test_raw_id(self):
        assert not is_coordinate_reference("f" * 64)

    def test_too_many_separators(self):
        assert not is_coordinate_reference("a:b:c:d")
