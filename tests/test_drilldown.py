from decimal import Decimal

import pytest

from retail_analytics.services.drilldown import (
    calculate_brand_analytics,
    calculate_channel_analytics,
    calculate_country_analytics,
    calculate_document_type_analytics,
    country_name,
    unique_brands,
)
from retail_analytics.services.inventory_matcher import InventoryIndex


@pytest.fixture()
def online_sales():
    return [
        {'id': 1, 'date': '2024-07-10', 'amount': 121.10, 'country': 'de', 'channel': 'ecommerce',
         'documento': 'RICEVUTA', 'numero': '10', 'brand': 'Nike'},
        {'id': 2, 'date': '2024-07-11', 'amount': 80, 'country': 'FR', 'channel': 'marketplace',
         'payment_method': 'Zalando', 'brand': 'Nike'},
        {'id': 3, 'date': '2024-07-12', 'amount': 45.45, 'country': 'DE', 'channel': 'marketplace',
         'marketplace': 'Cettire', 'documento': 'FATTURA', 'numero': '11', 'sku': 'XYZ9'},
        {'id': 4, 'date': '2024-07-12', 'amount': 500, 'country': None, 'channel': 'negozio_donna'},
        {'id': 5, 'date': '2024-07-13', 'amount': 10, 'channel': 'ecommerce'},
    ]


@pytest.fixture()
def online_returns():
    return [
        {'id': 1, 'date': '2024-07-14', 'amount': -50, 'country': 'DE', 'channel': 'ecommerce', 'reason': 'RESO'},
        {'id': 2, 'date': '2024-07-15', 'amount': -20, 'country': 'FR', 'channel': 'marketplace',
         'marketplace': 'Zalando'},
    ]


def _assert_consistent(rows, expected_sales):
    for row in rows:
        assert Decimal(str(row['net_amount'])) == Decimal(str(row['sales_amount'])) - Decimal(str(row['returns_amount']))
    total = sum((Decimal(str(row['sales_amount'])) for row in rows), Decimal('0'))
    assert total == Decimal(str(expected_sales))


def test_country_analytics(online_sales, online_returns):
    rows = calculate_country_analytics(online_sales, online_returns)

    assert [row['country'] for row in rows] == ['DE', 'FR', 'UNKNOWN']
    germany = rows[0]
    assert germany['country_name'] == 'Germania'
    assert germany['sales_amount'] == 166.55
    assert germany['returns_amount'] == 50.0
    assert germany['transaction_count'] == 3
    assert germany['transactions'][0]['type'] == 'return'
    assert germany['transactions'][0]['amount'] == -50.0
    # Store sales stay out of the online drill-downs
    _assert_consistent(rows, '256.55')


def test_channel_analytics(online_sales, online_returns):
    rows = calculate_channel_analytics(online_sales, online_returns)
    by_key = {row['channel']: row for row in rows}

    assert set(by_key) == {'ecommerce', 'Zalando', 'Cettire'}
    assert by_key['ecommerce']['channel_name'] == 'Sito Web'
    assert by_key['ecommerce']['macro_channel'] == 'Sito'
    assert by_key['Zalando']['macro_channel'] == 'Marketplace'
    assert by_key['Zalando']['returns_amount'] == 20.0
    assert rows[0]['channel'] == 'ecommerce'
    _assert_consistent(rows, '256.55')


def test_document_type_analytics_includes_every_channel(online_sales, online_returns):
    rows = calculate_document_type_analytics(online_sales, online_returns)
    by_type = {row['document_type']: row for row in rows}

    assert by_type['VENDITA']['sales_count'] == 3
    assert by_type['RESO']['returns_count'] == 2
    assert by_type['RICEVUTA']['sales_amount'] == 121.1
    assert rows[0]['document_type'] == 'VENDITA'
    _assert_consistent(rows, '756.55')


def test_brand_analytics_uses_catalog_for_missing_brands(online_sales):
    index = InventoryIndex.build([{'sku': 'XYZ-9', 'brand': 'Gucci', 'purchase_price': 10}])

    nike = calculate_brand_analytics(online_sales, 'Nike', index)
    assert nike['total_amount'] == 201.1
    assert nike['transaction_count'] == 2
    assert {row['country'] for row in nike['by_country']} == {'DE', 'FR'}
    assert {row['macro_channel'] for row in nike['by_macro_channel']} == {'Sito', 'Marketplace'}

    gucci = calculate_brand_analytics(online_sales, 'Gucci', index)
    assert gucci['by_channel'][0]['channel'] == 'Cettire'
    assert gucci['by_channel'][0]['percentage'] == 100.0

    assert unique_brands(online_sales, index) == ['Gucci', 'Nike']


def test_brand_shares_add_up_to_one_hundred():
    sales = [
        {'amount': 10, 'country': code, 'channel': 'ecommerce', 'brand': 'Nike'}
        for code in ('DE', 'FR', 'ES')
    ]

    by_country = calculate_brand_analytics(sales, 'Nike')['by_country']

    assert [row['percentage'] for row in by_country] == [33.34, 33.33, 33.33]
    assert round(sum(row['percentage'] for row in by_country), 2) == 100.0


def test_country_name():
    assert country_name('it') == 'Italia'
    assert country_name(None) == 'Sconosciuto'
    assert country_name('ZZ') == 'ZZ'
