"""Test support utilities for the almanac package.

In-memory stand-ins for the externally supplied network and signing
capabilities.  They have no dependency on pytest so they can also back demos
and scripts.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence

from almanac.errors import NotAuthenticatedError
from almanac.network import RecordNetwork, RecordSigner
from almanac.records import RecordFilter, SignedRecord, UnsignedRecord, compute_record_id

__all__ = ["InMemoryRecordNetwork", "StaticSigner", "make_record"]


class InMemoryRecordNetwork(RecordNetwork):
    """A single in-process store that answers queries like a relay would.

    Every accepted publish is appended to :attr:`published` and becomes
    visible to later queries.  Set :attr:`accept` to ``False`` to reject
    broadcasts, assign exceptions to :attr:`query_error` /
    :attr:`publish_error` to make calls raise, and use the delay attributes
    to exercise timeouts and cancellation.
    """

    def __init__(self, records: Iterable[SignedRecord] = ()) -> None:
        self.records: list[SignedRecord] = list(records)
        self.published: list[SignedRecord] = []
        self.queries: list[list[RecordFilter]] = []
        self.accept = True
        self.query_delay = 0.0
        self.publish_delay = 0.0
        self.query_error: Exception | None = None
        self.publish_error: Exception | None = None

    def add(self, *records: SignedRecord) -> None:
        self.records.extend(records)

    async def query(
        self,
        filters: Sequence[RecordFilter],
        *,
        timeout: float,
    ) -> list[SignedRecord]:
        self.queries.append(list(filters))
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if self.query_error is not None:
            raise self.query_error

        seen: set[str] = set()
        results: list[SignedRecord] = []
        for record_filter in filters:
            matching = sorted(
                (record for record in self.records if record_filter.matches(record)),
                key=lambda record: record.created_at,
                reverse=True,
            )
            if record_filter.limit is not None:
                matching = matching[: record_filter.limit]
            for record in matching:
                if record.id not in seen:
                    seen.add(record.id)
                    results.append(record)
        return results

    async def publish(self, record: SignedRecord, *, timeout: float) -> bool:
        if self.publish_delay:
            await asyncio.sleep(self.publish_delay)
        if self.publish_error is not None:
            raise self.publish_error
        if not self.accept:
            return False
        self.records.append(record)
        self.published.append(record)
        return True


class StaticSigner(RecordSigner):
    """Signs as a fixed identity; ``author_id=None`` simulates a logged-out user."""

    signature = "sig"

    def __init__(self, author_id: str | None = "alice") -> None:
        self._author_id = author_id
        self.signed: list[SignedRecord] = []

    @property
    def author_id(self) -> str | None:
        return self._author_id

    async def sign(self, record: UnsignedRecord) -> SignedRecord:
        if self._author_id is None:
            raise NotAuthenticatedError()
        signed = SignedRecord(
            id=compute_record_id(self._author_id, record),
            author_id=self._author_id,
            type_code=record.type_code,
            created_at=record.created_at,
            content=record.content,
            attributes=record.attributes,
            signature=self.signature,
        )
        self.signed.append(signed)
        return signed


def make_record(
    *,
    author_id: str = "alice",
    type_code: int,
    created_at: int,
    content: str = "",
    attributes: Sequence[Sequence[str]] = (),
) -> SignedRecord:
    """Build a signed record directly, with a content-derived id."""
    unsigned = UnsignedRecord(
        type_code=type_code,
        created_at=created_at,
        content=content,
        attributes=attributes,
    )
    return SignedRecord(
        id=compute_record_id(author_id, unsigned),
        author_id=author_id,
        type_code=type_code,
        created_at=created_at,
        content=content,
        attributes=unsigned.attributes,
        signature=StaticSigner.signature,
    )
