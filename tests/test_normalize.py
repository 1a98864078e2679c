from datetime import date, datetime
from decimal import Decimal

import pytest

from retail_analytics.utils.formatting import brand_label, format_currency_eur, format_percent
from retail_analytics.utils.normalize import (
    loose_key,
    matching_key,
    money,
    normalize_sku,
    parse_date_flexible,
    parse_euro_number,
    percent,
    to_datetime,
    to_decimal,
)


def test_normalize_sku_is_case_and_whitespace_insensitive():
    assert normalize_sku(' abc ') == normalize_sku('ABC') == 'ABC'
    assert normalize_sku(normalize_sku(' abc-1 ')) == normalize_sku(' abc-1 ')
    assert normalize_sku(None) == ''


def test_matching_keys_strip_separators():
    assert matching_key('abc-123') == 'ABC123'
    assert matching_key('ABC 123') == 'ABC123'
    assert matching_key('A.B_C/1') == 'ABC1'
    assert loose_key('ab-c#1') == 'ABC#1'


@pytest.mark.parametrize('raw, expected', [
    ('1.234,56', 1234.56),
    ('1,234.56', 1234.56),
    ('12,50', 12.5),
    ('€ 1.000,00', 1000.0),
    ('1.000.000', 1000000.0),
    ('EUR 99.90', 99.9),
    (42, 42.0),
])
def test_parse_euro_number(raw, expected):
    assert parse_euro_number(raw) == pytest.approx(expected)


@pytest.mark.parametrize('raw', ['invalid', '', None, float('nan'), True])
def test_parse_euro_number_defaults_to_zero(raw):
    assert parse_euro_number(raw) == 0


def test_parse_date_flexible_rejects_impossible_dates():
    assert parse_date_flexible('31/02/2024') is None
    assert parse_date_flexible('not a date') is None
    assert parse_date_flexible('') is None


def test_parse_date_flexible_two_digit_year():
    assert parse_date_flexible('15/12/24') == '2024-12-15T00:00:00'
    assert parse_date_flexible('01/03/95').startswith('1995-03-01')


def test_parse_date_flexible_other_inputs():
    assert parse_date_flexible('10/07/2024 14:30') == '2024-07-10T14:30:00'
    assert parse_date_flexible('2024-07-10') == '2024-07-10T00:00:00'
    assert parse_date_flexible('2024-07-10T12:00:00Z') == '2024-07-10T12:00:00'
    assert parse_date_flexible(45483) == '2024-07-10T00:00:00'
    assert parse_date_flexible(date(2024, 1, 2)) == '2024-01-02T00:00:00'
    assert to_datetime(datetime(2024, 1, 2, 3, 4)) == datetime(2024, 1, 2, 3, 4)


def test_money_helpers():
    assert to_decimal('1.234,56') == Decimal('1234.56')
    assert money(Decimal('2.005')) == 2.01
    assert percent(50, 200) == 25.0
    assert percent(1, 0) == 0.0


def test_display_formatting():
    assert format_currency_eur(1234.56) == '€ 1.234,56'
    assert format_currency_eur(-5) == '-€ 5,00'
    assert format_percent(None) == 'N/D'
    assert format_percent(12.34) == '12,3%'
    assert format_percent(-0.05, decimals=2) == '-0,05%'
    assert format_percent(1234.5, decimals=0) == '1.235%'
    assert format_currency_eur('200') == '€ 200,00'
    assert format_currency_eur(None) == '€ 0,00'
    assert brand_label(None) == 'Unknown'
    assert brand_label(' Nike ') == 'Nike'
