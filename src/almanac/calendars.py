"""Calendar containers: parsing, listing, membership, and series fan-out.

A calendar is a replaceable record (type 31924) whose ``a``/``e`` attributes
list the events it features.  Events themselves are date-based (31922) or
time-based (31923) replaceable records.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from almanac.cache import QueryCache
from almanac.coordinates import make_coordinate
from almanac.errors import QueryFailedError
from almanac.network import DEFAULT_QUERY_TIMEOUT_SECONDS, RecordNetwork, query_records
from almanac.records import (
    SLUG_ATTRIBUTE,
    RecordFilter,
    SignedRecord,
    UnsignedRecord,
    first_attribute_value,
    reference_values,
)
from almanac.recurrence import Occurrence
from almanac.republish import ContainerRepublisher, select_latest

logger = logging.getLogger(__name__)

CALENDAR_TYPE_CODE = 31924
DATE_EVENT_TYPE_CODE = 31922
TIME_EVENT_TYPE_CODE = 31923
USER_CALENDARS_LIMIT = 100

CALENDARS_CACHE_KEY = ("calendars",)
CALENDAR_EVENTS_CACHE_PREFIX = "calendarEvents"


@dataclass(frozen=True)
class CalendarData:
    """Parsed view of one calendar version."""

    id: str
    author_id: str
    created_at: int
    type_code: int
    slug: str
    title: str
    description: str = ""
    image: str | None = None
    events: list[str] = field(default_factory=list)

    @property
    def coordinate(self) -> str:
        return make_coordinate(self.type_code, self.author_id, self.slug)


def parse_calendar(
    record: SignedRecord,
    *,
    type_code: int = CALENDAR_TYPE_CODE,
) -> CalendarData | None:
    """Parse *record* as a calendar, or ``None`` when it is not a usable one."""
    if record.type_code != type_code:
        return None

    slug = first_attribute_value(record.attributes, SLUG_ATTRIBUTE)
    title = first_attribute_value(record.attributes, "title")
    if not slug or not title:
        return None

    return CalendarData(
        id=record.id,
        author_id=record.author_id,
        created_at=record.created_at,
        type_code=record.type_code,
        slug=slug,
        title=title,
        description=record.content or "",
        image=first_attribute_value(record.attributes, "image") or None,
        events=reference_values(record.attributes),
    )


def latest_versions(records: Sequence[SignedRecord]) -> list[SignedRecord]:
    """Collapse records to the latest version per coordinate."""
    grouped: dict[tuple[int, str, str | None], list[SignedRecord]] = {}
    for record in records:
        grouped.setdefault((record.type_code, record.author_id, record.slug), []).append(record)
    return [select_latest(versions) for versions in grouped.values()]  # type: ignore[misc]


async def list_user_calendars(
    network: RecordNetwork,
    author_id: str,
    *,
    type_code: int = CALENDAR_TYPE_CODE,
    timeout_s: float = DEFAULT_QUERY_TIMEOUT_SECONDS,
    cancel: asyncio.Event | None = None,
) -> list[CalendarData]:
    """Return *author_id*'s calendars, newest first.

    Raises ``QueryFailedError`` when the query fails or times out.
    """
    try:
        records = await query_records(
            network,
            [RecordFilter(type_codes=[type_code], authors=[author_id], limit=USER_CALENDARS_LIMIT)],
            timeout=timeout_s,
            cancel=cancel,
            stage="list calendars",
        )
    except TimeoutError as exc:
        raise QueryFailedError(str(exc)) from exc
    parsed = [
        calendar
        for record in latest_versions(records)
        if (calendar := parse_calendar(record, type_code=type_code)) is not None
    ]
    return sorted(parsed, key=lambda calendar: calendar.created_at, reverse=True)


def calendar_events_cache_key(calendar_coordinate: str) -> tuple[str, str]:
    return (CALENDAR_EVENTS_CACHE_PREFIX, calendar_coordinate)


class CalendarMembershipService:
    """Add or remove events from calendars and refresh the affected cache keys."""

    def __init__(self, republisher: ContainerRepublisher, cache: QueryCache) -> None:
        self._republisher = republisher
        self._cache = cache

    async def add_event(
        self,
        calendar_coordinate: str,
        event_reference: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SignedRecord:
        record = await self._republisher.add_reference(
            calendar_coordinate, event_reference, cancel=cancel
        )
        self._invalidate(calendar_coordinate)
        logger.info("Added %s to calendar %s", event_reference, calendar_coordinate)
        return record

    async def remove_event(
        self,
        calendar_coordinate: str,
        event_reference: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SignedRecord:
        record = await self._republisher.remove_reference(
            calendar_coordinate, event_reference, cancel=cancel
        )
        self._invalidate(calendar_coordinate)
        logger.info("Removed %s from calendar %s", event_reference, calendar_coordinate)
        return record

    async def toggle_event(
        self,
        calendar_coordinate: str,
        event_reference: str,
        *,
        currently_added: bool,
        cancel: asyncio.Event | None = None,
    ) -> SignedRecord:
        if currently_added:
            return await self.remove_event(calendar_coordinate, event_reference, cancel=cancel)
        return await self.add_event(calendar_coordinate, event_reference, cancel=cancel)

    def _invalidate(self, calendar_coordinate: str) -> None:
        self._cache.invalidate(calendar_events_cache_key(calendar_coordinate))
        self._cache.invalidate(CALENDARS_CACHE_KEY, prefix=True)


# ---------------------------------------------------------------------------
# Recurring series fan-out
# ---------------------------------------------------------------------------


def _to_unix_seconds(day: str, clock: str, zone: ZoneInfo) -> int:
    moment = datetime.combine(date.fromisoformat(day), time.fromisoformat(clock), tzinfo=zone)
    return int(moment.timestamp())


def build_occurrence_records(
    occurrences: Sequence[Occurrence],
    *,
    series_slug: str,
    title: str,
    content: str = "",
    timezone: str = "UTC",
    created_at: int,
    extra_attributes: Sequence[Sequence[str]] = (),
) -> list[UnsignedRecord]:
    """Build one unsigned event record per occurrence.

    Occurrences with both times become time-based records whose ``start`` and
    ``end`` are unix seconds in *timezone*; the rest are date-based records
    with ISO dates.  Slugs are ``{series_slug}-{index}``.
    """
    if not series_slug:
        raise ValueError("series_slug must be a non-empty string")
    try:
        zone = ZoneInfo(timezone)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"timezone must be a valid IANA timezone: {timezone}") from exc

    records: list[UnsignedRecord] = []
    for index, occurrence in enumerate(occurrences):
        attributes = [[SLUG_ATTRIBUTE, f"{series_slug}-{index}"], ["title", title]]
        if occurrence.start_time and occurrence.end_time:
            type_code = TIME_EVENT_TYPE_CODE
            attributes.append(
                ["start", str(_to_unix_seconds(occurrence.start_date, occurrence.start_time, zone))]
            )
            attributes.append(
                ["end", str(_to_unix_seconds(occurrence.end_date, occurrence.end_time, zone))]
            )
            attributes.append(["start_tzid", timezone])
        else:
            type_code = DATE_EVENT_TYPE_CODE
            attributes.append(["start", occurrence.start_date])
            attributes.append(["end", occurrence.end_date])
        attributes.extend(list(attribute) for attribute in extra_attributes)
        records.append(
            UnsignedRecord(
                type_code=type_code,
                created_at=created_at,
                content=content,
                attributes=attributes,
            )
        )
    return records
