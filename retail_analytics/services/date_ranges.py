"""Named date windows and the year-over-year comparison built on them."""

from datetime import datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from retail_analytics.utils.normalize import to_datetime, to_decimal

DATE_RANGES = ('all', '7d', '30d', '90d', '1y', 'current_year', 'previous_year', 'custom')

ROLLING_DAYS = {
    '7d': 7,
    '30d': 30,
    '90d': 90,
}


def _shift_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # 29 February in a non-leap year
        return value.replace(year=value.year + years, day=28)


def _end_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.max)


def date_window(
    date_range: str,
    start=None,
    end=None,
    now: Optional[datetime] = None,
) -> Optional[Tuple[datetime, datetime]]:
    """Resolve a window name to ``(start, end)``, or None when nothing is filtered."""
    now = now or datetime.now()

    if date_range in ROLLING_DAYS:
        return now - timedelta(days=ROLLING_DAYS[date_range]), now
    if date_range == '1y':
        return _shift_years(now, -1), now
    if date_range == 'current_year':
        return datetime(now.year, 1, 1), now
    if date_range == 'previous_year':
        return datetime(now.year - 1, 1, 1), datetime(now.year - 1, 12, 31, 23, 59, 59, 999999)
    if date_range == 'custom':
        start_dt, end_dt = to_datetime(start), to_datetime(end)
        if start_dt is None or end_dt is None:
            return None
        return start_dt, _end_of_day(end_dt)
    return None


def in_window(record: dict, window: Optional[Tuple[datetime, datetime]]) -> bool:
    if window is None:
        return True
    record_date = to_datetime(record.get('date'))
    if record_date is None:
        return False
    return window[0] <= record_date <= window[1]


def filter_by_date_range(
    records: Iterable[dict],
    date_range: str = 'all',
    start=None,
    end=None,
    now: Optional[datetime] = None,
) -> List[dict]:
    window = date_window(date_range, start, end, now)
    if window is None:
        return list(records)
    return [record for record in records if in_window(record, window)]


def previous_year_window(window: Tuple[datetime, datetime]) -> Tuple[datetime, datetime]:
    return _shift_years(window[0], -1), _shift_years(window[1], -1)


def total_amount(records: Iterable[dict]) -> Decimal:
    return sum((to_decimal(record.get('amount')) for record in records), Decimal('0'))


def calculate_yoy_change(
    data: Iterable[dict],
    date_range: str = 'all',
    start=None,
    end=None,
    metric_fn: Callable[[List[dict]], object] = total_amount,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Compare ``metric_fn`` over the selected window with the same window one
    year earlier. ``all`` compares the last twelve months with the twelve
    before them.

    A previous value of zero gives 100% when the current one is positive,
    -100% when negative and a neutral 0% when both are zero.
    """
    data = list(data)
    now = now or datetime.now()
    window = date_window(date_range, start, end, now)
    if window is None:
        window = (_shift_years(now, -1), now)
    previous_window = previous_year_window(window)

    current = to_decimal(metric_fn([r for r in data if in_window(r, window)]))
    previous = to_decimal(metric_fn([r for r in data if in_window(r, previous_window)]))

    if previous == 0:
        if current > 0:
            change = Decimal('100')
        elif current < 0:
            change = Decimal('-100')
        else:
            change = Decimal('0')
    else:
        change = (current - previous) / abs(previous) * 100
    change = change.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP)

    if change > 0:
        change_type = 'increase'
    elif change < 0:
        change_type = 'decrease'
    else:
        change_type = 'neutral'

    return {
        'change': float(change),
        'change_type': change_type,
        'current': float(current.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)),
        'previous': float(previous.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)),
    }
