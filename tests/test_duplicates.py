from datetime import datetime

from retail_analytics.services.duplicates import (
    duplicate_ids_to_remove,
    find_duplicate_groups,
    return_signature,
    sale_signature,
)


def test_sale_signature_normalizes_each_part():
    uploaded = {'date': '10/07/2024', 'sku': ' abc-1 ', 'quantity': '2', 'amount': '10,5'}
    stored = {'date': datetime(2024, 7, 10), 'sku': 'ABC-1', 'quantity': 2, 'amount': 10.50}

    assert sale_signature(uploaded) == sale_signature(stored) == '2024-07-10T00:00:00|ABC-1|2|10.50'


def test_sale_signature_uses_product_id_when_sku_missing():
    assert sale_signature({'date': '2024-07-10', 'product_id': 'p1', 'quantity': 1, 'amount': 5}).split('|')[1] == 'P1'


def test_return_signature_prefers_order_reference():
    ret = {'date': '2024-07-10', 'order_reference': 'ord-9', 'sku': 'ABC', 'quantity': 1, 'amount': -20}
    assert return_signature(ret) == '2024-07-10T00:00:00|ORD-9|1|-20.00'


def test_find_duplicate_groups_largest_first():
    base = {'date': '2024-07-10', 'sku': 'A', 'quantity': 1, 'amount': 10}
    records = [
        dict(base, id=1),
        dict(base, id=2, sku='B'),
        dict(base, id=3),
        dict(base, id=4, sku='B'),
        dict(base, id=5, sku='a'),
        dict(base, id=6, sku='C'),
    ]

    groups = find_duplicate_groups(records)

    assert [group['ids'] for group in groups] == [[1, 3, 5], [2, 4]]
    assert groups[0]['count'] == 3


def test_duplicate_ids_to_remove_keeps_oldest():
    base = {'date': '2024-07-10', 'sku': 'A', 'quantity': 1, 'amount': 10}
    records = [
        dict(base, id=7, created_at='2024-07-12T10:00:00'),
        dict(base, id=3, created_at='2024-07-11T10:00:00'),
        dict(base, id=9, created_at='2024-07-11T10:00:00'),
        dict(base, id=11, sku='UNIQUE', created_at='2024-07-01T10:00:00'),
    ]

    assert sorted(duplicate_ids_to_remove(records)) == [7, 9]
    assert duplicate_ids_to_remove([]) == []
