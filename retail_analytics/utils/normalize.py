"""
Normalization of the heterogeneous values found in store, e-commerce and
inventory exports: SKUs, euro amounts and dates.

None of the parsers raise. A malformed value becomes a safe default
(0, None or an empty string) so a single bad row never aborts a batch.
"""

import math
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

CENT = Decimal('0.01')

# Excel serial day 0 (the 1900 leap-year bug is absorbed by the 30th)
EXCEL_EPOCH = datetime(1899, 12, 30)

_SEPARATORS_RE = re.compile(r'[-_./\s]')
_NON_ALNUM_RE = re.compile(r'[^A-Z0-9]')
_CURRENCY_RE = re.compile(r'(EUR|€|\$|£|\s)', re.IGNORECASE)
_DMY_RE = re.compile(
    r'^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})'
    r'(?:[\sT]+(\d{1,2}):(\d{2})(?::(\d{2}))?)?$'
)


def normalize_sku(value: Any) -> str:
    """Display form of a SKU: trimmed and uppercased."""
    if value is None:
        return ''
    return str(value).strip().upper()


def matching_key(value: Any) -> str:
    """Strict catalog lookup key: letters and digits only."""
    stripped = _SEPARATORS_RE.sub('', normalize_sku(value))
    return _NON_ALNUM_RE.sub('', stripped)


def loose_key(value: Any) -> str:
    """Lookup key without the usual separators, other punctuation kept."""
    return _SEPARATORS_RE.sub('', normalize_sku(value))


def simple_key(value: Any) -> str:
    return normalize_sku(value)


def normalize_user(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip().lower()


def parse_euro_number(value: Any) -> float:
    """
    Parse amounts written in either European or English notation.

    Examples:
        "1.234,56" -> 1234.56
        "1,234.56" -> 1234.56
        "€ 12,50" -> 12.5
        "invalid" -> 0.0
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    cleaned = _CURRENCY_RE.sub('', str(value)).replace(' ', '')
    if not cleaned:
        return 0.0

    if ',' in cleaned and '.' in cleaned:
        # The separator that comes last is the decimal one
        if cleaned.rfind(',') > cleaned.rfind('.'):
            cleaned = cleaned.replace('.', '').replace(',', '.')
        else:
            cleaned = cleaned.replace(',', '')
    elif ',' in cleaned:
        cleaned = cleaned.replace(',', '.')
    elif cleaned.count('.') > 1:
        cleaned = cleaned.replace('.', '')

    try:
        number = float(cleaned)
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def to_decimal(value: Any) -> Decimal:
    """Money coercion used by every aggregation."""
    if value is None or isinstance(value, bool):
        return Decimal('0')
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal('0')
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if math.isfinite(value) else Decimal('0')
    try:
        return Decimal(str(parse_euro_number(value)))
    except InvalidOperation:
        return Decimal('0')


def quantize_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money(value: Any) -> float:
    """Round to cents and hand back a float for JSON payloads."""
    return float(quantize_money(value))


def percent(numerator: Any, denominator: Any, places: str = '0.01') -> float:
    """``numerator / denominator * 100`` or 0 when the denominator is zero."""
    denominator = to_decimal(denominator)
    if denominator == 0:
        return 0.0
    value = to_decimal(numerator) / denominator * 100
    return float(value.quantize(Decimal(places), rounding=ROUND_HALF_UP))


def _from_excel_serial(serial: float) -> Optional[datetime]:
    if not math.isfinite(serial) or serial <= 0:
        return None
    try:
        return EXCEL_EPOCH + timedelta(days=serial)
    except OverflowError:
        return None


def _from_iso(text: str) -> Optional[datetime]:
    candidate = text.strip()
    if candidate.endswith('Z'):
        candidate = candidate[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        # Timestamps with milliseconds and a zone, e.g. 2024-07-10T00:00:00.000+00:00
        try:
            parsed = datetime.fromisoformat(candidate[:19])
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _from_day_month_year(text: str) -> Optional[datetime]:
    match = _DMY_RE.match(text.strip())
    if not match:
        return None
    day, month, year = int(match.group(1)), int(match.group(2)), match.group(3)
    year_number = int(year)
    if len(year) == 2:
        year_number += 2000 if year_number <= 30 else 1900
    hour = int(match.group(4) or 0)
    minute = int(match.group(5) or 0)
    second = int(match.group(6) or 0)
    try:
        # datetime() rejects 31/02 and friends, so no round-trip check is needed
        return datetime(year_number, month, day, hour, minute, second)
    except ValueError:
        return None


def to_datetime(value: Any) -> Optional[datetime]:
    """Coerce a record date (datetime, date, serial or string) to a naive datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return _from_excel_serial(float(value))
    text = str(value).strip()
    if not text:
        return None
    return _from_day_month_year(text) or _from_iso(text)


def parse_date_flexible(value: Any) -> Optional[str]:
    """
    Parse dates coming from spreadsheets.

    Accepts date objects, Excel serial numbers, ``D/M/Y[ H:M[:S]]`` strings
    (two-digit years up to 30 belong to the 2000s) and ISO strings. Returns
    an ISO-8601 string, or None when the value is not a real calendar date.
    """
    parsed = to_datetime(value)
    if parsed is None:
        return None
    return parsed.isoformat(timespec='seconds')
