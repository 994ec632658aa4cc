"""Coordinate codec for replaceable records.

A coordinate addresses every version of a replaceable record at once:
``"{type_code}:{author_id}:{slug}"``.  A reference string is either a raw
record id or a serialized coordinate; the two are told apart by the presence
of exactly two ``:`` separators.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from almanac.errors import InvalidCoordinateError

REPLACEABLE_TYPE_CODE_MIN = 30000
REPLACEABLE_TYPE_CODE_MAX = 40000  # exclusive
COORDINATE_SEPARATOR = ":"

_TYPE_CODE_PATTERN = re.compile(r"^-?[0-9]+$")


@dataclass(frozen=True)
class Coordinate:
    """Parsed ``(type_code, author_id, slug)`` triple."""

    type_code: int
    author_id: str
    slug: str

    def __str__(self) -> str:
        return make_coordinate(self.type_code, self.author_id, self.slug)


def make_coordinate(type_code: int, author_id: str, slug: str) -> str:
    """Serialize a coordinate triple.

    The slug is opaque; only emptiness is rejected.
    """
    if not slug:
        raise ValueError("slug must be a non-empty string")
    return f"{type_code}{COORDINATE_SEPARATOR}{author_id}{COORDINATE_SEPARATOR}{slug}"


def parse_coordinate(value: str) -> Coordinate:
    """Parse ``type:author:slug`` into a :class:`Coordinate`.

    Raises
    ------
    InvalidCoordinateError
        Unless *value* splits into exactly three non-empty segments and the
        first one is an integer.
    """
    if not isinstance(value, str):
        raise InvalidCoordinateError(str(value), "coordinate must be a string")

    segments = value.split(COORDINATE_SEPARATOR)
    if len(segments) != 3:
        raise InvalidCoordinateError(value, "expected exactly 3 colon-delimited segments")

    raw_type, author_id, slug = segments
    if not raw_type or not author_id or not slug:
        raise InvalidCoordinateError(value, "segments must be non-empty")
    if not _TYPE_CODE_PATTERN.match(raw_type):
        raise InvalidCoordinateError(value, f"type code {raw_type!r} is not an integer")

    return Coordinate(type_code=int(raw_type), author_id=author_id, slug=slug)


def is_replaceable_type_code(type_code: int) -> bool:
    return REPLACEABLE_TYPE_CODE_MIN <= type_code < REPLACEABLE_TYPE_CODE_MAX


def is_coordinate_reference(reference: str) -> bool:
    """True when *reference* is coordinate-shaped rather than a raw record id."""
    return reference.count(COORDINATE_SEPARATOR) == 2
