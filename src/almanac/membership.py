"""Set-membership mutation of container attribute lists.

Both operations are pure: they never modify the attribute list they are
given and always return a freshly built list of fresh attribute arrays.

References are compared as raw strings.  An id-form reference and a
coordinate-form reference to the same underlying record are distinct members.
"""

from __future__ import annotations

from collections.abc import Sequence

from almanac.coordinates import is_coordinate_reference
from almanac.errors import ReferenceAlreadyPresentError, ReferenceNotPresentError
from almanac.records import (
    COORDINATE_REFERENCE_ATTRIBUTE,
    RECORD_REFERENCE_ATTRIBUTE,
    CoordinateReference,
    RecordReference,
    decode_attribute,
)


def reference_attribute_name(reference: str) -> str:
    """``a`` for coordinate-form references, ``e`` for raw ids."""
    if is_coordinate_reference(reference):
        return COORDINATE_REFERENCE_ATTRIBUTE
    return RECORD_REFERENCE_ATTRIBUTE


def _is_membership_of(raw: Sequence[str], reference: str) -> bool:
    attribute = decode_attribute(raw)
    return (
        isinstance(attribute, CoordinateReference | RecordReference)
        and attribute.reference == reference
    )


def contains_reference(attributes: Sequence[Sequence[str]], reference: str) -> bool:
    return any(_is_membership_of(raw, reference) for raw in attributes)


def compute_addition(
    attributes: Sequence[Sequence[str]],
    reference: str,
) -> list[list[str]]:
    """Append a membership attribute for *reference*.

    Raises
    ------
    ReferenceAlreadyPresentError
        If any ``a`` or ``e`` attribute already carries *reference*.
    """
    if not reference:
        raise ValueError("reference must be a non-empty string")
    if contains_reference(attributes, reference):
        raise ReferenceAlreadyPresentError(reference)

    updated = [list(raw) for raw in attributes]
    updated.append([reference_attribute_name(reference), reference])
    return updated


def compute_removal(
    attributes: Sequence[Sequence[str]],
    reference: str,
) -> list[list[str]]:
    """Drop every ``a``/``e`` attribute carrying *reference*.

    Raises
    ------
    ReferenceNotPresentError
        If nothing was removed.
    """
    updated = [list(raw) for raw in attributes if not _is_membership_of(raw, reference)]
    if len(updated) == len(attributes):
        raise ReferenceNotPresentError(reference)
    return updated
