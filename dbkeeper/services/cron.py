"""Five-field cron expressions (minute hour day-of-month month day-of-week).

Supports ``*``, lists, ranges, ``*/n`` and ``a-b/n`` steps, month and weekday
names, and the ``@hourly``/``@daily``/``@weekly``/``@monthly``/``@yearly``
aliases. Day-of-month and day-of-week follow the classic cron rule: when both
are restricted a day matches if either does.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from dbkeeper.core.errors import ConfigurationError


_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
_MONTH_NAMES = {name: index for index, name in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], start=1
)}
_DAY_NAMES = {name: index for index, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}
# Searching this far ahead without a match means the expression can never fire (e.g. Feb 30).
_SEARCH_LIMIT = timedelta(days=366 * 5)


def _parse_value(token: str, names: dict[str, int], expression: str) -> int:
    lowered = token.lower()
    if lowered in names:
        return names[lowered]
    if not token.isdigit():
        raise ConfigurationError(f"invalid cron value {token!r} in {expression!r}")
    return int(token)


def _parse_field(text: str, low: int, high: int, names: dict[str, int], expression: str) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ConfigurationError(f"invalid cron step {step_text!r} in {expression!r}")
            step = int(step_text)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start = _parse_value(start_text, names, expression)
            end = _parse_value(end_text, names, expression)
        else:
            start = _parse_value(part, names, expression)
            end = high if step != 1 else start
        if start < low or end > high or start > end:
            raise ConfigurationError(f"cron field {text!r} out of range {low}-{high} in {expression!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    days_restricted: bool
    weekdays_restricted: bool

    def _day_matches(self, moment: datetime) -> bool:
        cron_weekday = (moment.weekday() + 1) % 7
        day_ok = moment.day in self.days
        weekday_ok = cron_weekday in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment: datetime) -> datetime:
        """Return the first fire time strictly after ``moment`` (UTC when naive)."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = moment + _SEARCH_LIMIT
        while candidate <= limit:
            if candidate.month not in self.months:
                year = candidate.year + (1 if candidate.month == 12 else 0)
                month = 1 if candidate.month == 12 else candidate.month + 1
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise ConfigurationError(f"cron expression {self.expression!r} never fires")

    def fires_between(self, start: datetime, end: datetime, *, limit: int = 1000) -> int:
        # Count fire times in (start, end]; used to account for ticks swallowed by a long run.
        count = 0
        current = start
        while count < limit:
            current = self.next_after(current)
            if current > end:
                break
            count += 1
        return count


def parse_cron(expression: str) -> CronSchedule:
    text = _ALIASES.get(expression.strip().lower(), expression.strip())
    fields = text.split()
    if len(fields) != 5:
        raise ConfigurationError(f"cron expression {expression!r} must have 5 fields")
    minute, hour, day, month, weekday = fields
    weekdays = _parse_field(weekday, 0, 7, _DAY_NAMES, expression)
    if 7 in weekdays:
        weekdays = frozenset((weekdays - {7}) | {0})
    return CronSchedule(
        expression=expression,
        minutes=_parse_field(minute, 0, 59, {}, expression),
        hours=_parse_field(hour, 0, 23, {}, expression),
        days=_parse_field(day, 1, 31, {}, expression),
        months=_parse_field(month, 1, 12, _MONTH_NAMES, expression),
        weekdays=weekdays,
        days_restricted=not day.startswith("*"),
        weekdays_restricted=not weekday.startswith("*"),
    )
