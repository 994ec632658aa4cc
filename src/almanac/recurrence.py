"""Recurring event configuration, validation, and occurrence expansion.

Weekday indices follow the calendar form convention: 0=Sunday .. 6=Saturday.
Weeks therefore run Sunday through Saturday when deciding whether the next
matching weekday falls in the current week or a later one.

Occurrence dates are ISO ``YYYY-MM-DD`` strings, matching the ``start`` and
``end`` attributes of date-based calendar records.
"""

from __future__ import annotations

import calendar
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from almanac.errors import InvalidDateError, InvalidRecurrenceError

MAX_OCCURRENCES = 6
LAST_WEEK_OF_MONTH = -1
VALID_WEEKS_OF_MONTH = (1, 2, 3, 4, LAST_WEEK_OF_MONTH)

ERROR_INTERVAL = "Interval must be at least 1"
ERROR_MAX_OCCURRENCES = f"Number of events must be between 1 and {MAX_OCCURRENCES}"
ERROR_WEEKLY_DAYS = "Please select at least one day of the week"
ERROR_MONTHLY_PATTERN = "Please specify a monthly pattern"
ERROR_MONTHLY_DAY = "Day of month must be between 1 and 31"
ERROR_MONTHLY_WEEK = "Week of month must be 1, 2, 3, 4 or -1 (last)"
ERROR_WEEKDAY_RANGE = "Days of the week must be between 0 (Sunday) and 6 (Saturday)"
ERROR_UNTIL = "Series end date must be a valid date"


class RecurrencePattern(StrEnum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class TimeMode(StrEnum):
    """Whether every occurrence shares one time slot or carries its own."""

    single = "single"
    per_occurrence = "per_occurrence"


class WeeklySeedPolicy(StrEnum):
    """What a weekly series does when the seed date is not a selected weekday.

    ``keep``: the seed stays occurrence 0; later occurrences land on selected weekdays.
    ``snap``: occurrence 0 moves forward to the first selected weekday.
    ``drop``: the seed slot is consumed without emitting an occurrence.
    """

    keep = "keep"
    snap = "snap"
    drop = "drop"


class MonthlyDayOfMonth(BaseModel):
    """Same numbered day every month, clipped to short months."""

    model_config = ConfigDict(extra="forbid")

    mode: Literal["day"] = "day"
    day: int


class MonthlyWeekdayOfMonth(BaseModel):
    """Nth weekday of every month (``week=-1`` for the last one)."""

    model_config = ConfigDict(extra="forbid")

    mode: Literal["weekday"] = "weekday"
    week: int
    weekday: int


MonthlyPattern = Annotated[MonthlyDayOfMonth | MonthlyWeekdayOfMonth, Field(discriminator="mode")]


class TimeSlot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_time: str | None = None
    end_time: str | None = None


class RecurrenceConfig(BaseModel):
    """Recurrence settings as entered in the event form.

    Numeric ranges are deliberately unconstrained here so that
    :func:`validate_recurring_config` can report every problem at once.
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    pattern: RecurrencePattern = RecurrencePattern.daily
    interval: int = 1
    max_occurrences: int = 1
    weekly_days: list[int] | None = None
    monthly: MonthlyPattern | None = None
    until: str | None = None
    time_mode: TimeMode = TimeMode.single
    time_slots: list[TimeSlot] = Field(default_factory=list)

    @field_validator("until")
    @classmethod
    def _normalize_until(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class Occurrence(BaseModel):
    """One concrete calendar instance of a (possibly recurring) event."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    start_date: str
    end_date: str
    start_time: str | None = None
    end_time: str | None = None


def _coerce_config(config: RecurrenceConfig | Mapping[str, Any]) -> RecurrenceConfig:
    if isinstance(config, RecurrenceConfig):
        return config
    return RecurrenceConfig.model_validate(dict(config))


def _try_parse_date(value: date | str) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def _parse_date(value: date | str, label: str) -> date:
    parsed = _try_parse_date(value)
    if parsed is None:
        raise InvalidDateError(label, value)
    return parsed


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_recurring_config(config: RecurrenceConfig | Mapping[str, Any]) -> list[str]:
    """Return every validation error for *config* (empty when valid).

    Seed dates are not inspected; they are checked at expansion time.
    """
    config = _coerce_config(config)
    errors: list[str] = []
    if not config.enabled:
        return errors

    if config.interval < 1:
        errors.append(ERROR_INTERVAL)

    if not 1 <= config.max_occurrences <= MAX_OCCURRENCES:
        errors.append(ERROR_MAX_OCCURRENCES)

    if config.pattern is RecurrencePattern.weekly and not config.weekly_days:
        errors.append(ERROR_WEEKLY_DAYS)

    if config.pattern is RecurrencePattern.monthly and config.monthly is None:
        errors.append(ERROR_MONTHLY_PATTERN)

    weekday_out_of_range = False
    if config.pattern is RecurrencePattern.weekly and config.weekly_days:
        weekday_out_of_range = any(not 0 <= day <= 6 for day in config.weekly_days)

    if config.pattern is RecurrencePattern.monthly:
        match config.monthly:
            case MonthlyDayOfMonth(day=day) if not 1 <= day <= 31:
                errors.append(ERROR_MONTHLY_DAY)
            case MonthlyWeekdayOfMonth(week=week, weekday=weekday):
                if week not in VALID_WEEKS_OF_MONTH:
                    errors.append(ERROR_MONTHLY_WEEK)
                weekday_out_of_range = not 0 <= weekday <= 6

    if weekday_out_of_range:
        errors.append(ERROR_WEEKDAY_RANGE)

    if config.until is not None and _try_parse_date(config.until) is None:
        errors.append(ERROR_UNTIL)

    return errors


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------


def _weekday_index(value: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return (value.weekday() + 1) % 7


def _next_weekly_date(current: date, days: list[int], interval: int) -> date:
    """Next selected weekday after *current*; *interval* stretches week-to-week gaps only."""
    today = _weekday_index(current)
    later_this_week = [day for day in days if day > today]
    if later_this_week:
        return current + timedelta(days=later_this_week[0] - today)
    gap = 7 - today + days[0] + (interval - 1) * 7
    return current + timedelta(days=gap)


def _add_months(value: date, months: int) -> tuple[int, int]:
    index = value.year * 12 + (value.month - 1) + months
    return index // 12, index % 12 + 1


def _nth_weekday_of_month(year: int, month: int, week: int, weekday: int) -> date:
    days_in_month = calendar.monthrange(year, month)[1]
    if week == LAST_WEEK_OF_MONTH:
        last = date(year, month, days_in_month)
        return last - timedelta(days=(_weekday_index(last) - weekday) % 7)
    first = date(year, month, 1)
    offset = (weekday - _weekday_index(first)) % 7
    return first + timedelta(days=offset + (week - 1) * 7)


def _monthly_date(seed: date, months: int, monthly: MonthlyPattern) -> date:
    year, month = _add_months(seed, months)
    if isinstance(monthly, MonthlyWeekdayOfMonth):
        return _nth_weekday_of_month(year, month, monthly.week, monthly.weekday)
    return date(year, month, min(monthly.day, calendar.monthrange(year, month)[1]))


def _candidate_starts(
    seed: date,
    config: RecurrenceConfig,
    seed_policy: WeeklySeedPolicy,
) -> list[date]:
    count = min(config.max_occurrences, MAX_OCCURRENCES)

    if config.pattern is RecurrencePattern.daily:
        return [seed + timedelta(days=i * config.interval) for i in range(count)]

    if config.pattern is RecurrencePattern.monthly:
        # Occurrence 0 is always the seed itself.
        return [
            seed if i == 0 else _monthly_date(seed, i * config.interval, config.monthly)
            for i in range(count)
        ]

    days = sorted(set(config.weekly_days or ()))
    current = seed
    starts: list[date] = []
    if _weekday_index(seed) not in days:
        if seed_policy is WeeklySeedPolicy.keep:
            starts.append(seed)
            current = _next_weekly_date(seed, days, config.interval)
        else:
            current = _next_weekly_date(seed, days, interval=1)
            if seed_policy is WeeklySeedPolicy.drop:
                count -= 1
    while len(starts) < count:
        starts.append(current)
        current = _next_weekly_date(current, days, config.interval)
    return starts


def _times_for(
    config: RecurrenceConfig,
    index: int,
    start_time: str | None,
    end_time: str | None,
) -> tuple[str | None, str | None]:
    if config.time_mode is TimeMode.per_occurrence and index < len(config.time_slots):
        slot = config.time_slots[index]
        return slot.start_time, slot.end_time
    return start_time, end_time


def generate_occurrences(
    start_date: date | str,
    end_date: date | str,
    config: RecurrenceConfig | Mapping[str, Any],
    *,
    start_time: str | None = None,
    end_time: str | None = None,
    seed_policy: WeeklySeedPolicy = WeeklySeedPolicy.keep,
) -> list[Occurrence]:
    """Expand a seed event into its ordered occurrences.

    A disabled configuration yields exactly the seed span.  Otherwise every
    occurrence keeps the seed's start-to-end span in days and the list is
    strictly increasing by start date.

    Raises
    ------
    InvalidDateError
        When either seed date does not parse; the message names the value.
    InvalidRecurrenceError
        When the configuration fails :func:`validate_recurring_config`.
    """
    config = _coerce_config(config)

    if not config.enabled:
        first_start, first_end = _times_for(config, 0, start_time, end_time)
        return [
            Occurrence(
                start_date=start_date if isinstance(start_date, str) else start_date.isoformat(),
                end_date=end_date if isinstance(end_date, str) else end_date.isoformat(),
                start_time=first_start,
                end_time=first_end,
            )
        ]

    seed_start = _parse_date(start_date, "start date")
    seed_end = _parse_date(end_date, "end date")

    errors = validate_recurring_config(config)
    if errors:
        raise InvalidRecurrenceError(errors)

    span = seed_end - seed_start
    until = _try_parse_date(config.until) if config.until is not None else None

    occurrences: list[Occurrence] = []
    for index, start in enumerate(_candidate_starts(seed_start, config, seed_policy)):
        if until is not None and start > until:
            break
        occurrence_start, occurrence_end = _times_for(config, index, start_time, end_time)
        occurrences.append(
            Occurrence(
                start_date=start.isoformat(),
                end_date=(start + span).isoformat(),
                start_time=occurrence_start,
                end_time=occurrence_end,
            )
        )
    return occurrences
