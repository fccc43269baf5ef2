from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from billing_lifecycle.core.constants import BillingInterval


def add_months(moment: datetime, months: int) -> datetime:
    """Shift *moment* by calendar months, clamping to the end of short months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_interval(start: datetime, interval: BillingInterval, count: int = 1) -> datetime:
    """Return the end of one standard billing interval beginning at *start*."""
    if interval is BillingInterval.DAY:
        return start + timedelta(days=count)
    if interval is BillingInterval.WEEK:
        return start + timedelta(weeks=count)
    if interval is BillingInterval.MONTH:
        return add_months(start, count)
    return add_months(start, 12 * count)


def elapsed_fraction(start: datetime, end: datetime, standard_end: datetime) -> float:
    """Length of ``[start, end)`` as a fraction of ``[start, standard_end)``."""
    standard = (standard_end - start).total_seconds()
    if standard <= 0:
        return 1.0
    return (end - start).total_seconds() / standard
