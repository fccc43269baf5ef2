"""Tests for utils/money.py, utils/periods.py and utils/clock.py."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from billing_lifecycle.core.constants import BillingInterval
from billing_lifecycle.utils.clock import utc_now
from billing_lifecycle.utils.money import percentage_of, round_minor
from billing_lifecycle.utils.periods import add_interval, add_months, elapsed_fraction


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.5, 1), (1.49, 1), (2.5, 3), (-0.5, -1), (100.0, 100), (0.3 + 0.2, 1)],
)
def test_round_minor_half_up(value: float, expected: int) -> None:
    assert round_minor(value) == expected


@pytest.mark.parametrize(
    ("amount", "percentage", "expected"),
    [(1100, 7.25, 80), (1100, 1, 11), (1000, 0, 0), (150, 10, 15), (5, 10, 1)],
)
def test_percentage_of(amount: int, percentage: float, expected: int) -> None:
    assert percentage_of(amount, percentage) == expected


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("start", "months", "expected"),
    [
        (_utc(2024, 1, 31), 1, _utc(2024, 2, 29)),
        (_utc(2023, 1, 31), 1, _utc(2023, 2, 28)),
        (_utc(2024, 11, 15), 3, _utc(2025, 2, 15)),
        (_utc(2024, 3, 31), -1, _utc(2024, 2, 29)),
    ],
)
def test_add_months_clamps(start: datetime, months: int, expected: datetime) -> None:
    assert add_months(start, months) == expected


@pytest.mark.parametrize(
    ("interval", "count", "expected"),
    [
        (BillingInterval.DAY, 3, _utc(2024, 1, 4)),
        (BillingInterval.WEEK, 2, _utc(2024, 1, 15)),
        (BillingInterval.MONTH, 1, _utc(2024, 2, 1)),
        (BillingInterval.YEAR, 1, _utc(2025, 1, 1)),
    ],
)
def test_add_interval(interval: BillingInterval, count: int, expected: datetime) -> None:
    assert add_interval(_utc(2024, 1, 1), interval, count) == expected


def test_elapsed_fraction() -> None:
    start = _utc(2024, 1, 1)
    assert elapsed_fraction(start, _utc(2024, 1, 16, 12), _utc(2024, 2, 1)) == 0.5
    assert elapsed_fraction(start, start, start) == 1.0


def test_utc_now_is_aware() -> None:
    assert utc_now().tzinfo is not None
