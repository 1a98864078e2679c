"""
Duplicate detection for re-uploaded rows.

A signature is date + SKU + quantity + amount. Two genuinely different
transactions with the same four values collide; uploads accept that
approximation instead of requiring a document number every source lacks.
"""

from collections import OrderedDict
from typing import Callable, Dict, Iterable, List

from retail_analytics.services.inventory_matcher import resolve_sku
from retail_analytics.utils.normalize import normalize_sku, quantize_money, to_datetime


def _date_part(value) -> str:
    parsed = to_datetime(value)
    return parsed.isoformat(timespec='seconds') if parsed else ''


def _quantity_part(value) -> str:
    try:
        return str(int(value))
    except (TypeError, ValueError):
        return '0'


def sale_signature(sale: dict) -> str:
    return '|'.join([
        _date_part(sale.get('date')),
        normalize_sku(resolve_sku(sale)),
        _quantity_part(sale.get('quantity')),
        str(quantize_money(sale.get('amount'))),
    ])


def return_signature(ret: dict) -> str:
    reference = str(ret.get('order_reference') or '').strip() or resolve_sku(ret)
    return '|'.join([
        _date_part(ret.get('date')),
        normalize_sku(reference),
        _quantity_part(ret.get('quantity')),
        str(quantize_money(ret.get('amount'))),
    ])


def find_duplicate_groups(records: Iterable[dict], signature_fn: Callable[[dict], str] = sale_signature) -> List[Dict]:
    """Groups of records sharing a signature, largest first."""
    groups: 'OrderedDict[str, List[dict]]' = OrderedDict()
    for record in records:
        groups.setdefault(signature_fn(record), []).append(record)

    duplicates = [
        {'signature': signature, 'count': len(members), 'ids': [m.get('id') for m in members]}
        for signature, members in groups.items()
        if len(members) > 1
    ]
    duplicates.sort(key=lambda group: group['count'], reverse=True)
    return duplicates


def _age_key(record: dict):
    created = to_datetime(record.get('created_at'))
    return (created.timestamp() if created else float('inf'), record.get('id') or 0)


def duplicate_ids_to_remove(records: Iterable[dict], signature_fn: Callable[[dict], str] = sale_signature) -> List:
    """Ids of every duplicate except the oldest record of each group."""
    groups: Dict[str, List[dict]] = {}
    for record in records:
        groups.setdefault(signature_fn(record), []).append(record)

    to_remove = []
    for members in groups.values():
        if len(members) < 2:
            continue
        for record in sorted(members, key=_age_key)[1:]:
            to_remove.append(record.get('id'))
    return to_remove
