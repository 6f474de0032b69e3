from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dbkeeper.core.errors import ConfigurationError
from dbkeeper.services.cron import parse_cron


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_next_after_is_strictly_after() -> None:
    cron = parse_cron("15 2 * * *")
    assert cron.next_after(_utc(2026, 1, 1, 0, 0)) == _utc(2026, 1, 1, 2, 15)
    assert cron.next_after(_utc(2026, 1, 1, 2, 15)) == _utc(2026, 1, 2, 2, 15)


def test_steps_lists_and_ranges() -> None:
    cron = parse_cron("*/20 9-10 * * 1,3")
    assert cron.minutes == frozenset({0, 20, 40})
    assert cron.hours == frozenset({9, 10})
    # 2026-01-05 is a Monday.
    assert cron.next_after(_utc(2026, 1, 4, 23, 0)) == _utc(2026, 1, 5, 9, 0)
    assert cron.next_after(_utc(2026, 1, 5, 10, 40)) == _utc(2026, 1, 7, 9, 0)


def test_names_and_sunday_as_seven() -> None:
    by_name = parse_cron("0 3 * jan sun")
    by_number = parse_cron("0 3 * 1 7")
    assert by_name.weekdays == by_number.weekdays == frozenset({0})
    assert by_name.months == frozenset({1})
    # 2026-01-04 is a Sunday.
    assert by_name.next_after(_utc(2026, 1, 1)) == _utc(2026, 1, 4, 3, 0)


def test_aliases() -> None:
    assert parse_cron("@daily").next_after(_utc(2026, 5, 5, 13, 30)) == _utc(2026, 5, 6, 0, 0)
    assert parse_cron("@hourly").next_after(_utc(2026, 5, 5, 13, 30)) == _utc(2026, 5, 5, 14, 0)
    assert parse_cron("@monthly").next_after(_utc(2026, 12, 15)) == _utc(2027, 1, 1, 0, 0)


def test_restricted_day_and_weekday_match_either() -> None:
    cron = parse_cron("0 0 13 * fri")
    # 2026-02-06 is a Friday, before the 13th.
    assert cron.next_after(_utc(2026, 2, 1)) == _utc(2026, 2, 6, 0, 0)
    assert cron.next_after(_utc(2026, 2, 12, 1, 0)) == _utc(2026, 2, 13, 0, 0)


def test_star_step_day_field_counts_as_unrestricted() -> None:
    cron = parse_cron("0 0 */2 * mon")
    assert cron.days_restricted is False
    # Both must match: odd day-of-month on a Monday. 2026-01-05 is a Monday.
    assert cron.next_after(_utc(2026, 1, 1)) == _utc(2026, 1, 5, 0, 0)


def test_naive_moments_are_treated_as_utc() -> None:
    cron = parse_cron("30 * * * *")
    assert cron.next_after(datetime(2026, 1, 1, 0, 0)) == _utc(2026, 1, 1, 0, 30)


def test_fires_between_counts_missed_ticks() -> None:
    cron = parse_cron("*/5 * * * *")
    assert cron.fires_between(_utc(2026, 1, 1, 0, 0), _utc(2026, 1, 1, 0, 17)) == 3
    assert cron.fires_between(_utc(2026, 1, 1, 0, 0), _utc(2026, 1, 1, 0, 4)) == 0


@pytest.mark.parametrize(
    "expression",
    ["* * * *", "60 * * * *", "* 24 * * *", "*/0 * * * *", "5-1 * * * *", "* * * foo *", "0 0 0 * *"],
)
def test_invalid_expressions_raise(expression: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_cron(expression)


def test_impossible_date_never_fires() -> None:
    cron = parse_cron("0 0 30 2 *")
    with pytest.raises(ConfigurationError):
        cron.next_after(_utc(2026, 1, 1))
