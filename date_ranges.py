"""Canonical calendar ranges shared by the API, analytics, reports and scheduler.

Every window is a half-open interval ``[start_date, end_date)`` in UTC made of
whole calendar months. Rolling windows count backwards from the last complete
month of the reference instant, "this year" always starts in January and
"last year" is always January to December of the previous year.

Nothing in this module reads the wall clock: the reference instant is always
passed in by the caller.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional, Union

InstantLike = Union[datetime, date, str]

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

_ISO_DAY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class DateRangeError(ValueError):
    pass


class InvalidPresetError(DateRangeError):
    pass


class InvalidRangeError(DateRangeError):
    pass


class InvalidReferenceError(DateRangeError):
    pass


class RangePreset(str, Enum):
    last_month = "last-month"
    last_quarter = "last-quarter"
    last_6_months = "last-6-months"
    last_12_months = "last-12-months"
    this_year = "this-year"
    last_year = "last-year"
    current_month = "current-month"
    year_to_date = "year-to-date"
    custom = "custom"


PRESET_ALIASES = {
    "last-3-months": RangePreset.last_quarter,
    "ytd": RangePreset.year_to_date,
}

ROLLING_WINDOWS = {
    RangePreset.last_month: 1,
    RangePreset.last_quarter: 3,
    RangePreset.last_6_months: 6,
    RangePreset.last_12_months: 12,
}

PRESET_OPTIONS = [
    {"value": RangePreset.last_month.value, "label": "Last Month"},
    {"value": RangePreset.last_quarter.value, "label": "Last Quarter"},
    {"value": RangePreset.last_6_months.value, "label": "Last 6 Months"},
    {"value": RangePreset.last_12_months.value, "label": "Last 12 Months"},
    {"value": RangePreset.this_year.value, "label": "This Year"},
    {"value": RangePreset.last_year.value, "label": "Last Year"},
]


def month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def next_month_start(year: int, month: int) -> datetime:
    if month == 12:
        return month_start(year + 1, 1)
    return month_start(year, month + 1)


@dataclass(frozen=True, order=True)
class MonthBucket:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {self.month}")

    @classmethod
    def of(cls, value: date) -> "MonthBucket":
        # callers pass UTC datetimes or plain dates
        return cls(value.year, value.month)

    @property
    def start(self) -> datetime:
        return month_start(self.year, self.month)

    @property
    def end(self) -> datetime:
        return next_month_start(self.year, self.month)

    @property
    def index(self) -> int:
        return self.year * 12 + (self.month - 1)

    def shift(self, months: int) -> "MonthBucket":
        year, month_zero = divmod(self.index + months, 12)
        return MonthBucket(year, month_zero + 1)

    def as_dict(self) -> dict[str, int]:
        return {"year": self.year, "month": self.month}


def add_months(bucket: MonthBucket, months: int) -> MonthBucket:
    return bucket.shift(months)


def month_buckets(first: MonthBucket, count: int) -> tuple[MonthBucket, ...]:
    return tuple(first.shift(i) for i in range(count))


def last_complete_month(reference: datetime) -> MonthBucket:
    """The month before the reference month (December of the prior year in January)."""
    return MonthBucket.of(reference).shift(-1)


def month_label(bucket: MonthBucket) -> str:
    return f"{MONTH_NAMES[bucket.month - 1]} {bucket.year}"


def short_month_label(bucket: MonthBucket, include_year: bool = True) -> str:
    short = MONTH_NAMES[bucket.month - 1][:3]
    if include_year:
        return f"{short} {bucket.year}"
    return short


def parse_utc_date(value: str) -> datetime:
    """Parse ``YYYY-MM-DD`` as UTC midnight."""
    text = (value or "").strip()
    if not _ISO_DAY.match(text):
        raise InvalidRangeError(f"Invalid date '{value}', expected YYYY-MM-DD")
    try:
        day = datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError as exc:
        raise InvalidRangeError(f"Invalid date '{value}'") from exc
    return datetime.combine(day, time(), tzinfo=timezone.utc)


def format_date_for_sql(instant: datetime) -> str:
    return instant.astimezone(timezone.utc).date().isoformat()


def ceil_to_day(instant: datetime) -> date:
    """Earliest calendar date whose UTC midnight is not before ``instant``."""
    instant = instant.astimezone(timezone.utc)
    day = instant.date()
    if instant.time() != time():
        day += timedelta(days=1)
    return day


def to_utc(value: InstantLike, error_cls: type = InvalidReferenceError) -> datetime:
    if isinstance(value, bool) or value is None:
        raise error_cls(f"Invalid date value: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time(), tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise error_cls("Date value is empty")
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise error_cls(f"Invalid date value: {value!r}") from exc
        return to_utc(parsed, error_cls)
    raise error_cls(f"Invalid date value: {value!r}")


def parse_preset(value: Union[RangePreset, str, None]) -> RangePreset:
    if isinstance(value, RangePreset):
        return value
    key = (value or "").strip().lower()
    if key in PRESET_ALIASES:
        return PRESET_ALIASES[key]
    try:
        return RangePreset(key)
    except ValueError as exc:
        raise InvalidPresetError(f"Unknown date range preset: {value!r}") from exc


@dataclass(frozen=True)
class DateRangeResult:
    preset: RangePreset
    start_date: datetime
    end_date: datetime
    buckets: tuple[MonthBucket, ...]
    label: str

    @property
    def months_count(self) -> int:
        return len(self.buckets)

    @property
    def is_single_month(self) -> bool:
        return len(self.buckets) == 1

    @property
    def start_day(self) -> date:
        return self.start_date.date()

    @property
    def end_day(self) -> date:
        # exclusive, date-granular
        return ceil_to_day(self.end_date)

    def contains(self, value: InstantLike) -> bool:
        instant = to_utc(value)
        return self.start_date <= instant < self.end_date

    def to_query_params(self) -> dict[str, str]:
        return {
            "startDate": format_date_for_sql(self.start_date),
            "endDate": self.end_day.isoformat(),
            "preset": self.preset.value,
        }

    def as_dict(self) -> dict[str, object]:
        return {
            **self.to_query_params(),
            "label": self.label,
            "months": [bucket.as_dict() for bucket in self.buckets],
            "monthsCount": self.months_count,
            "isSingleMonth": self.is_single_month,
        }


def build_label(buckets: tuple[MonthBucket, ...], suffix: str) -> str:
    first = month_label(buckets[0])
    if len(buckets) == 1:
        return f"{first} {suffix}"
    return f"{first} – {month_label(buckets[-1])} {suffix}"


def _buckets_between(start: datetime, end: datetime) -> tuple[MonthBucket, ...]:
    first = MonthBucket.of(start)
    if end <= start:
        return (first,)
    last = MonthBucket.of(end - timedelta(microseconds=1))
    return month_buckets(first, last.index - first.index + 1)


def _custom_range(
    start: Optional[InstantLike], end: Optional[InstantLike]
) -> DateRangeResult:
    if start is None or end is None:
        raise InvalidRangeError("Custom range requires start and end dates")
    start_at = to_utc(start, InvalidRangeError)
    end_at = to_utc(end, InvalidRangeError)
    if start_at > end_at:
        raise InvalidRangeError("Start date must be before or equal to end date")
    buckets = _buckets_between(start_at, end_at)
    return DateRangeResult(
        preset=RangePreset.custom,
        start_date=start_at,
        end_date=end_at,
        buckets=buckets,
        label=build_label(buckets, "(Custom range)"),
    )


def resolve(
    preset: Union[RangePreset, str],
    reference: InstantLike,
    *,
    start: Optional[InstantLike] = None,
    end: Optional[InstantLike] = None,
) -> DateRangeResult:
    """Resolve a named preset against an explicit reference instant.

    ``start``/``end`` are only accepted for ``custom``; they are returned
    unchanged as the range boundaries once validated.
    """
    key = parse_preset(preset)
    ref = to_utc(reference, InvalidReferenceError)

    if key == RangePreset.custom:
        return _custom_range(start, end)
    if start is not None or end is not None:
        raise InvalidRangeError(
            f"Explicit start/end dates are only valid for the custom preset, not {key.value}"
        )

    anchor = last_complete_month(ref)
    end_date: Optional[datetime] = None

    if key in ROLLING_WINDOWS:
        count = ROLLING_WINDOWS[key]
        buckets = month_buckets(anchor.shift(-(count - 1)), count)
        if count == 1:
            suffix = "(Last complete month)"
        else:
            suffix = f"(Last {count} complete months)"
    elif key == RangePreset.this_year:
        january = MonthBucket(ref.year, 1)
        count = anchor.index - january.index + 1
        if count < 1:
            # in January no month of the year is complete yet
            buckets = (january,)
            suffix = "(Year to date – current month)"
        else:
            buckets = month_buckets(january, count)
            suffix = "(Year to date – last complete month)"
    elif key == RangePreset.last_year:
        buckets = month_buckets(MonthBucket(ref.year - 1, 1), 12)
        suffix = f"(Full year {ref.year - 1})"
    elif key == RangePreset.current_month:
        buckets = (MonthBucket.of(ref),)
        end_date = ref
        suffix = "(Month to date)"
    else:
        buckets = month_buckets(MonthBucket(ref.year, 1), ref.month)
        end_date = ref
        suffix = "(Year to date)"

    return DateRangeResult(
        preset=key,
        start_date=buckets[0].start,
        end_date=end_date if end_date is not None else buckets[-1].end,
        buckets=buckets,
        label=build_label(buckets, suffix),
    )


def previous_range(window: DateRangeResult) -> DateRangeResult:
    """The period immediately before ``window``.

    Presets and whole-month custom windows step back by the same number of
    whole months. Any other custom window steps back by its own span.
    """
    whole_months = (
        window.start_date == window.buckets[0].start
        and window.end_date == window.buckets[-1].end
    )
    if window.preset != RangePreset.custom or whole_months:
        count = window.months_count
        buckets = month_buckets(window.buckets[0].shift(-count), count)
        start_date = buckets[0].start
    else:
        start_date = window.start_date - (window.end_date - window.start_date)
        buckets = _buckets_between(start_date, window.start_date)
    return DateRangeResult(
        preset=RangePreset.custom,
        start_date=start_date,
        end_date=window.start_date,
        buckets=buckets,
        label=build_label(buckets, "(Previous period)"),
    )


def single_month_range(year: int, month: int) -> DateRangeResult:
    bucket = MonthBucket(year, month)
    return DateRangeResult(
        preset=RangePreset.custom,
        start_date=bucket.start,
        end_date=bucket.end,
        buckets=(bucket,),
        label=build_label((bucket,), "(Single month)"),
    )


def range_from_params(
    preset: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
    *,
    now: datetime,
    default_preset: Union[RangePreset, str] = RangePreset.last_month,
) -> DateRangeResult:
    """Resolve the ``preset``/``startDate``/``endDate`` query parameters.

    Explicit dates resolve as ``custom``; a half-specified pair is an error.
    A named preset sent alongside explicit dates is kept only when the dates
    are the ones that preset resolves to.
    """
    if start_date or end_date:
        if not (start_date and end_date):
            raise InvalidRangeError("Both startDate and endDate are required")
        window = resolve(
            RangePreset.custom,
            now,
            start=parse_utc_date(start_date),
            end=parse_utc_date(end_date),
        )
        if not preset or parse_preset(preset) == RangePreset.custom:
            return window
        named = resolve(preset, now)
        if (named.start_day, named.end_day) != (window.start_day, window.end_day):
            raise InvalidRangeError(
                f"startDate/endDate do not match the {named.preset.value} preset"
            )
        return named
    return resolve(preset or default_preset, now)
