"""Time window resolution shared by every analytics metric."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any

from peelog.core.errors import InvalidInputError

_END_OF_DAY = time(23, 59, 59, 999999)


class RangeKind(str, Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_3_DAYS = "last_3_days"
    LAST_7_DAYS = "last_7_days"
    LAST_30_DAYS = "last_30_days"
    LAST_90_DAYS = "last_90_days"
    ALL_TIME = "all_time"
    CUSTOM = "custom"


_LAST_N_DAYS = {
    RangeKind.LAST_3_DAYS: 3,
    RangeKind.LAST_7_DAYS: 7,
    RangeKind.LAST_30_DAYS: 30,
    RangeKind.LAST_90_DAYS: 90,
}

# Period names understood by the remote analytics service
_REMOTE_PERIOD = {
    RangeKind.LAST_7_DAYS: "week",
    RangeKind.LAST_30_DAYS: "month",
    RangeKind.LAST_90_DAYS: "quarter",
    RangeKind.ALL_TIME: "allTime",
}

_LABELS = {
    RangeKind.TODAY: "Today",
    RangeKind.YESTERDAY: "Yesterday",
    RangeKind.LAST_3_DAYS: "Last 3 Days",
    RangeKind.LAST_7_DAYS: "Last 7 Days",
    RangeKind.LAST_30_DAYS: "Last 30 Days",
    RangeKind.LAST_90_DAYS: "Last 90 Days",
    RangeKind.ALL_TIME: "All Time",
    RangeKind.CUSTOM: "Custom Range",
}

_SHORTHANDS = {
    "1d": RangeKind.TODAY,
    "3d": RangeKind.LAST_3_DAYS,
    "7d": RangeKind.LAST_7_DAYS,
    "week": RangeKind.LAST_7_DAYS,
    "30d": RangeKind.LAST_30_DAYS,
    "month": RangeKind.LAST_30_DAYS,
    "90d": RangeKind.LAST_90_DAYS,
    "quarter": RangeKind.LAST_90_DAYS,
    "all": RangeKind.ALL_TIME,
}


def start_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def end_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, _END_OF_DAY, tzinfo=tz)


@dataclass(frozen=True)
class ResolvedRange:
    """Concrete closed window; ``start`` is None for an unbounded range."""

    start: datetime | None
    end: datetime

    def contains(self, instant: datetime) -> bool:
        if self.start is not None and instant < self.start:
            return False
        return instant <= self.end


@dataclass(frozen=True)
class AnalyticsRange:
    """A selectable time window for statistics."""

    kind: RangeKind
    custom_start: date | None = None
    custom_end: date | None = None

    def __post_init__(self) -> None:
        if self.kind is RangeKind.CUSTOM and (self.custom_start is None or self.custom_end is None):
            raise InvalidInputError("Custom range needs both a start and an end date")

    @classmethod
    def custom(cls, start: date, end: date) -> AnalyticsRange:
        return cls(RangeKind.CUSTOM, start, end)

    @classmethod
    def parse(cls, value: str) -> AnalyticsRange:
        """Parse ``today``, ``7d``, ``last_30_days``, ``all`` or ``YYYY-MM-DD..YYYY-MM-DD``."""
        text = value.strip().lower()
        if ".." in text:
            first, _, last = text.partition("..")
            try:
                return cls.custom(date.fromisoformat(first), date.fromisoformat(last))
            except ValueError as e:
                raise InvalidInputError(f"Invalid custom range: {value!r}") from e
        if text in _SHORTHANDS:
            return cls(_SHORTHANDS[text])
        try:
            kind = RangeKind(text)
        except ValueError as e:
            raise InvalidInputError(f"Unknown range: {value!r}") from e
        return cls(kind)

    @property
    def label(self) -> str:
        if self.kind is RangeKind.CUSTOM:
            return f"{self.custom_start.isoformat()} to {self.custom_end.isoformat()}"
        return _LABELS[self.kind]

    @property
    def cache_key(self) -> str:
        """Stable key; relative ranges are keyed by kind so they survive date changes."""
        if self.kind is RangeKind.CUSTOM:
            return f"custom:{self.custom_start.isoformat()}:{self.custom_end.isoformat()}"
        return self.kind.value

    def resolve(self, now: datetime, tz: tzinfo) -> ResolvedRange:
        """Turn the window into concrete instants in ``tz``.

        Relative windows start at local midnight N days before ``now`` and end
        at ``now``. Custom windows run from local midnight of the start date to
        local 23:59:59 of the end date, with the end clamped to ``now`` and the
        start clamped to the end.
        """
        local_now = now.astimezone(tz)
        today = local_now.date()

        if self.kind is RangeKind.TODAY:
            return ResolvedRange(start_of_day(today, tz), local_now)
        if self.kind is RangeKind.YESTERDAY:
            yesterday = today - timedelta(days=1)
            return ResolvedRange(start_of_day(yesterday, tz), end_of_day(yesterday, tz))
        if self.kind in _LAST_N_DAYS:
            start_day = today - timedelta(days=_LAST_N_DAYS[self.kind])
            return ResolvedRange(start_of_day(start_day, tz), local_now)
        if self.kind is RangeKind.ALL_TIME:
            return ResolvedRange(None, local_now)

        end = min(end_of_day(self.custom_end, tz), local_now)
        start = min(start_of_day(self.custom_start, tz), end)
        return ResolvedRange(start, end)

    def remote_body(self, now: datetime, tz: tzinfo) -> dict[str, Any]:
        """Request body for the remote analytics endpoints."""
        resolved = self.resolve(now, tz)
        return {
            "period": _REMOTE_PERIOD.get(self.kind, "custom"),
            "startDate": resolved.start.isoformat() if resolved.start else None,
            "endDate": resolved.end.isoformat(),
            "timeZone": getattr(tz, "key", None) or str(tz),
        }


TODAY = AnalyticsRange(RangeKind.TODAY)
LAST_7_DAYS = AnalyticsRange(RangeKind.LAST_7_DAYS)
LAST_30_DAYS = AnalyticsRange(RangeKind.LAST_30_DAYS)
ALL_TIME = AnalyticsRange(RangeKind.ALL_TIME)
