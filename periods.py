from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional, Union

from errors import ValidationError


class PeriodKind(str, Enum):
    week = "week"
    month = "month"
    year = "year"


@dataclass(frozen=True)
class Period:
    kind: PeriodKind
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


def _coerce_kind(kind: Union[PeriodKind, str, None]) -> PeriodKind:
    if isinstance(kind, PeriodKind):
        return kind
    try:
        return PeriodKind(str(kind).strip().lower())
    except ValueError:
        return PeriodKind.month


def resolve_period(
    kind: Union[PeriodKind, str, None],
    reference: Union[date, datetime],
) -> Period:
    """Map a period kind and a reference instant onto an inclusive window.

    The window spans whole days: ``start`` is midnight of the first day and
    ``end`` is the last microsecond of the last day. Weeks start on Monday.
    Anything that is not ``week``, ``month`` or ``year`` resolves as a month.
    A timezone on ``reference`` is carried onto both bounds.
    """
    resolved = _coerce_kind(kind)
    tzinfo = reference.tzinfo if isinstance(reference, datetime) else None
    day = reference.date() if isinstance(reference, datetime) else reference

    if resolved == PeriodKind.week:
        first = day - timedelta(days=day.weekday())
        last = first + timedelta(days=6)
    elif resolved == PeriodKind.year:
        first = date(day.year, 1, 1)
        last = date(day.year, 12, 31)
    else:
        first = day.replace(day=1)
        if first.month == 12:
            next_month = first.replace(year=first.year + 1, month=1)
        else:
            next_month = first.replace(month=first.month + 1)
        last = next_month - date.resolution

    return Period(
        resolved,
        datetime.combine(first, time.min, tzinfo=tzinfo),
        datetime.combine(last, time.max, tzinfo=tzinfo),
    )


def parse_reference(
    value: Optional[str],
    *,
    today: Optional[date] = None,
    field: str = "date",
    end_of_day: bool = False,
) -> datetime:
    """Parse an ISO 8601 instant; a bare date means midnight, or its last
    microsecond when ``end_of_day`` is set."""
    if not value:
        return datetime.combine(today or date.today(), time.min)
    raw = value.strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError.for_field(field, "Invalid ISO 8601 date") from exc
    if end_of_day and len(raw) == 10:
        return datetime.combine(parsed.date(), time.max)
    return parsed
