"""Record models and the attribute encode/decode boundary.

Records travel as flat ``list[list[str]]`` attribute arrays whose first
element names the attribute.  Inside the core those arrays are decoded into
small tagged variants (:class:`SlugAttribute`, :class:`CoordinateReference`,
:class:`RecordReference`, :class:`TextAttribute`, :class:`RawAttribute`) so
lookups do not scatter first-element matching across call sites.  Decoding
is lossless: ``encode_attribute(decode_attribute(raw)) == list(raw)``.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

SLUG_ATTRIBUTE = "d"
COORDINATE_REFERENCE_ATTRIBUTE = "a"
RECORD_REFERENCE_ATTRIBUTE = "e"
MEMBERSHIP_ATTRIBUTES = frozenset({COORDINATE_REFERENCE_ATTRIBUTE, RECORD_REFERENCE_ATTRIBUTE})
TEXT_ATTRIBUTES = frozenset(
    {
        "title",
        "image",
        "description",
        "summary",
        "client",
        "start",
        "end",
        "start_tzid",
        "end_tzid",
        "location",
        "k",
        "p",
    }
)


def _copy_attributes(value: Any) -> list[list[str]]:
    if value is None:
        return []
    return [list(attribute) for attribute in value]


class UnsignedRecord(BaseModel):
    """A record body awaiting signature."""

    model_config = ConfigDict(extra="forbid")

    type_code: int = Field(ge=0)
    created_at: int = Field(ge=0)
    content: str = ""
    attributes: list[list[str]] = Field(default_factory=list)

    @field_validator("attributes", mode="before")
    @classmethod
    def _copy(cls, value: Any) -> list[list[str]]:
        return _copy_attributes(value)


class SignedRecord(BaseModel):
    """An immutable, signed record as returned by the network."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    author_id: str = Field(min_length=1)
    type_code: int = Field(ge=0)
    created_at: int = Field(ge=0)
    content: str = ""
    attributes: list[list[str]] = Field(default_factory=list)
    signature: str

    @field_validator("attributes", mode="before")
    @classmethod
    def _copy(cls, value: Any) -> list[list[str]]:
        return _copy_attributes(value)

    @property
    def slug(self) -> str | None:
        return first_attribute_value(self.attributes, SLUG_ATTRIBUTE)


class RecordFilter(BaseModel):
    """One network query filter; all populated fields must match."""

    model_config = ConfigDict(extra="forbid")

    type_codes: list[int] | None = None
    authors: list[str] | None = None
    ids: list[str] | None = None
    attribute_values: dict[str, list[str]] = Field(default_factory=dict)
    limit: int | None = Field(default=None, ge=1)

    def matches(self, record: SignedRecord) -> bool:
        if self.type_codes is not None and record.type_code not in self.type_codes:
            return False
        if self.authors is not None and record.author_id not in self.authors:
            return False
        if self.ids is not None and record.id not in self.ids:
            return False
        for name, wanted in self.attribute_values.items():
            present = {
                attribute[1]
                for attribute in record.attributes
                if len(attribute) >= 2 and attribute[0] == name
            }
            if not present.intersection(wanted):
                return False
        return True


def compute_record_id(author_id: str, record: UnsignedRecord) -> str:
    """Content hash over the canonical serialization of a record body."""
    canonical = json.dumps(
        [0, author_id, record.created_at, record.type_code, record.attributes, record.content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Attribute variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SlugAttribute:
    value: str
    extra: tuple[str, ...] = ()

    name = SLUG_ATTRIBUTE


@dataclass(frozen=True)
class CoordinateReference:
    """Membership reference to a replaceable record (``a``)."""

    coordinate: str
    extra: tuple[str, ...] = ()

    name = COORDINATE_REFERENCE_ATTRIBUTE

    @property
    def reference(self) -> str:
        return self.coordinate


@dataclass(frozen=True)
class RecordReference:
    """Membership reference to a record by id (``e``)."""

    record_id: str
    extra: tuple[str, ...] = ()

    name = RECORD_REFERENCE_ATTRIBUTE

    @property
    def reference(self) -> str:
        return self.record_id


@dataclass(frozen=True)
class TextAttribute:
    name: str
    value: str
    extra: tuple[str, ...] = ()


@dataclass(frozen=True)
class RawAttribute:
    values: tuple[str, ...]


Attribute = SlugAttribute | CoordinateReference | RecordReference | TextAttribute | RawAttribute


def decode_attribute(raw: Sequence[str]) -> Attribute:
    """Decode one wire attribute array into its variant."""
    values = tuple(raw)
    if len(values) < 2:
        return RawAttribute(values)
    name, value, *rest = values
    extra = tuple(rest)
    if name == SLUG_ATTRIBUTE:
        return SlugAttribute(value, extra)
    if name == COORDINATE_REFERENCE_ATTRIBUTE:
        return CoordinateReference(value, extra)
    if name == RECORD_REFERENCE_ATTRIBUTE:
        return RecordReference(value, extra)
    if name in TEXT_ATTRIBUTES:
        return TextAttribute(name, value, extra)
    return RawAttribute(values)


def encode_attribute(attribute: Attribute) -> list[str]:
    """Encode a variant back to its wire array."""
    match attribute:
        case SlugAttribute(value=value, extra=extra):
            return [SLUG_ATTRIBUTE, value, *extra]
        case CoordinateReference(coordinate=coordinate, extra=extra):
            return [COORDINATE_REFERENCE_ATTRIBUTE, coordinate, *extra]
        case RecordReference(record_id=record_id, extra=extra):
            return [RECORD_REFERENCE_ATTRIBUTE, record_id, *extra]
        case TextAttribute(name=name, value=value, extra=extra):
            return [name, value, *extra]
        case RawAttribute(values=values):
            return list(values)
    raise TypeError(f"Unsupported attribute variant: {type(attribute).__name__}")


def decode_attributes(raw: Iterable[Sequence[str]]) -> list[Attribute]:
    return [decode_attribute(attribute) for attribute in raw]


def encode_attributes(attributes: Iterable[Attribute]) -> list[list[str]]:
    return [encode_attribute(attribute) for attribute in attributes]


def first_attribute_value(raw: Iterable[Sequence[str]], name: str) -> str | None:
    """Value of the first attribute named *name*, or ``None``."""
    for attribute in raw:
        if len(attribute) >= 2 and attribute[0] == name:
            return attribute[1]
    return None


def reference_values(raw: Iterable[Sequence[str]]) -> list[str]:
    """Membership reference values (``a`` and ``e``) in attribute order."""
    references: list[str] = []
    for attribute in decode_attributes(raw):
        if isinstance(attribute, CoordinateReference | RecordReference):
            references.append(attribute.reference)
    return references
