"""Constants and record builders shared by the almanac tests."""

from __future__ import annotations

from almanac.calendars import CALENDAR_TYPE_CODE
from almanac.records import SignedRecord
from almanac.testing import make_record

NOW = 1_700_000_000
ALICE = "alice"
BOB = "bob"
CALENDAR_SLUG = "team"
CALENDAR_COORDINATE = f"{CALENDAR_TYPE_CODE}:{ALICE}:{CALENDAR_SLUG}"
EVENT_COORDINATE = f"31923:{BOB}:standup"

# Short enough to keep timeout tests fast, long enough for in-memory calls.
FAST_TIMEOUT = 0.05


class FixedClock:
    """Deterministic ``time.time`` replacement."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def calendar_record(
    *,
    created_at: int = NOW - 100,
    author_id: str = ALICE,
    slug: str = CALENDAR_SLUG,
    title: str = "Team",
    events: list[str] | None = None,
    extra: list[list[str]] | None = None,
) -> SignedRecord:
    attributes = [["d", slug], ["title", title]]
    for reference in events or []:
        attributes.append(["a" if reference.count(":") == 2 else "e", reference])
    attributes.extend(extra or [])
    return make_record(
        author_id=author_id,
        type_code=CALENDAR_TYPE_CODE,
        created_at=created_at,
        content="Our shared calendar",
        attributes=attributes,
    )
