"""
Drill-down aggregations by country, channel, document type and brand.

Every bucket carries the transaction rows that built it so a dashboard can
expand it. Country and channel views leave out the physical stores, which
have neither a destination country nor a payment channel.
"""

from collections import OrderedDict
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Dict, Iterable, List, Optional

from retail_analytics.services.channels import (
    CHANNEL_NAMES,
    DEFAULT_MACRO_CHANNEL,
    MACRO_CHANNELS,
    is_store_channel,
)
from retail_analytics.services.inventory_matcher import InventoryIndex
from retail_analytics.services.metrics import MARKETPLACE_FALLBACK, sale_brand
from retail_analytics.utils.normalize import money, to_datetime, to_decimal

UNKNOWN_COUNTRY = 'UNKNOWN'

COUNTRY_NAMES = {
    'IT': 'Italia',
    'DE': 'Germania',
    'FR': 'Francia',
    'ES': 'Spagna',
    'GB': 'Regno Unito',
    'UK': 'Regno Unito',
    'AT': 'Austria',
    'BE': 'Belgio',
    'NL': 'Paesi Bassi',
    'CH': 'Svizzera',
    'PT': 'Portogallo',
    'PL': 'Polonia',
    'CZ': 'Repubblica Ceca',
    'SE': 'Svezia',
    'DK': 'Danimarca',
    'FI': 'Finlandia',
    'NO': 'Norvegia',
    'IE': 'Irlanda',
    'GR': 'Grecia',
    'HU': 'Ungheria',
    'RO': 'Romania',
    'BG': 'Bulgaria',
    'HR': 'Croazia',
    'SK': 'Slovacchia',
    'SI': 'Slovenia',
    'LT': 'Lituania',
    'LV': 'Lettonia',
    'EE': 'Estonia',
    'CY': 'Cipro',
    'MT': 'Malta',
    'LU': 'Lussemburgo',
    'US': 'Stati Uniti',
}


def country_name(code) -> str:
    if not code or str(code).upper() == UNKNOWN_COUNTRY:
        return 'Sconosciuto'
    return COUNTRY_NAMES.get(str(code).upper(), str(code))


def macro_channel(channel) -> str:
    return MACRO_CHANNELS.get(channel, DEFAULT_MACRO_CHANNEL)


def country_key(record: dict) -> str:
    return str(record.get('country') or '').strip().upper() or UNKNOWN_COUNTRY


def channel_key(record: dict) -> str:
    """Marketplace records split by sub-channel; a sale and its return land in the same bucket."""
    if record.get('channel') == 'marketplace':
        return (
            str(record.get('payment_method') or '').strip()
            or str(record.get('marketplace') or '').strip()
            or MARKETPLACE_FALLBACK
        )
    return record.get('channel') or 'unknown'


def sale_document_type(sale: dict) -> str:
    return str(sale.get('documento') or 'VENDITA').strip().upper() or 'VENDITA'


def return_document_type(ret: dict) -> str:
    return str(ret.get('reason') or 'RESO').strip().upper() or 'RESO'


def sale_to_transaction(sale: dict) -> Dict:
    channel = sale.get('channel')
    document_number = sale.get('numero') or sale.get('order_reference') or sale.get('id')
    return {
        'type': 'sale',
        'document_type': sale_document_type(sale),
        'document_number': str(document_number) if document_number is not None else None,
        'date': sale.get('date'),
        'amount': money(sale.get('amount')),
        'channel': channel,
        'channel_specific': (sale.get('payment_method') or sale.get('marketplace')) if channel == 'marketplace' else None,
        'country': sale.get('country'),
        'brand': sale.get('brand'),
        'order_reference': sale.get('order_reference'),
    }


def return_to_transaction(ret: dict) -> Dict:
    channel = ret.get('channel')
    document_number = ret.get('order_reference') or ret.get('sale_id') or ret.get('id')
    return {
        'type': 'return',
        'document_type': return_document_type(ret),
        'document_number': str(document_number) if document_number is not None else None,
        'date': ret.get('date'),
        'amount': -abs(money(ret.get('amount'))),
        'channel': channel,
        'channel_specific': (ret.get('payment_method') or ret.get('marketplace')) if channel == 'marketplace' else None,
        'country': ret.get('country'),
        'brand': ret.get('brand'),
        'order_reference': ret.get('order_reference'),
    }


def _sort_transactions(transactions: List[Dict]) -> List[Dict]:
    def _key(row):
        parsed = to_datetime(row.get('date'))
        return parsed.timestamp() if parsed else float('-inf')

    return sorted(transactions, key=_key, reverse=True)


def _new_bucket() -> Dict:
    return {
        'sales_amount': Decimal('0'),
        'returns_amount': Decimal('0'),
        'sales_count': 0,
        'returns_count': 0,
        'transactions': [],
    }


def _aggregate(
    sales: Iterable[dict],
    returns: Iterable[dict],
    sale_key: Callable[[dict], str],
    return_key: Callable[[dict], str],
    include: Callable[[dict], bool] = lambda record: True,
) -> 'OrderedDict[str, Dict]':
    buckets: 'OrderedDict[str, Dict]' = OrderedDict()

    for sale in sales:
        if not include(sale):
            continue
        bucket = buckets.setdefault(sale_key(sale), _new_bucket())
        bucket['sales_amount'] += to_decimal(sale.get('amount'))
        bucket['sales_count'] += 1
        bucket['transactions'].append(sale_to_transaction(sale))

    for ret in returns:
        if not include(ret):
            continue
        bucket = buckets.setdefault(return_key(ret), _new_bucket())
        bucket['returns_amount'] += abs(to_decimal(ret.get('amount')))
        bucket['returns_count'] += 1
        bucket['transactions'].append(return_to_transaction(ret))

    return buckets


def _bucket_payload(bucket: Dict) -> Dict:
    sales_amount = money(bucket['sales_amount'])
    returns_amount = money(bucket['returns_amount'])
    return {
        'sales_amount': sales_amount,
        'returns_amount': returns_amount,
        # Both sides are already rounded, so the difference is exact in cents
        'net_amount': money(Decimal(str(sales_amount)) - Decimal(str(returns_amount))),
        'transaction_count': bucket['sales_count'] + bucket['returns_count'],
        'sales_count': bucket['sales_count'],
        'returns_count': bucket['returns_count'],
        'transactions': _sort_transactions(bucket['transactions']),
    }


def _online_only(record: dict) -> bool:
    return not is_store_channel(record.get('channel'))


def calculate_country_analytics(sales: Iterable[dict], returns: Iterable[dict]) -> List[Dict]:
    buckets = _aggregate(sales, returns, country_key, country_key, include=_online_only)
    rows = []
    for code, bucket in buckets.items():
        row = {'country': code, 'country_name': country_name(code)}
        row.update(_bucket_payload(bucket))
        rows.append(row)
    rows.sort(key=lambda row: row['sales_amount'], reverse=True)
    return rows


def calculate_channel_analytics(sales: Iterable[dict], returns: Iterable[dict]) -> List[Dict]:
    sales = list(sales)
    returns = list(returns)
    buckets = _aggregate(sales, returns, channel_key, channel_key, include=_online_only)

    # Remember which enum channel each bucket key came from
    origin = {}
    for record in sales + returns:
        origin.setdefault(channel_key(record), record.get('channel'))

    rows = []
    for key, bucket in buckets.items():
        channel = origin.get(key)
        row = {
            'channel': key,
            'channel_name': CHANNEL_NAMES.get(key, key),
            'macro_channel': 'Marketplace' if channel == 'marketplace' else macro_channel(channel),
        }
        row.update(_bucket_payload(bucket))
        rows.append(row)
    rows.sort(key=lambda row: row['sales_amount'], reverse=True)
    return rows


def calculate_document_type_analytics(sales: Iterable[dict], returns: Iterable[dict]) -> List[Dict]:
    buckets = _aggregate(sales, returns, sale_document_type, return_document_type)
    rows = []
    for document_type, bucket in buckets.items():
        row = {'document_type': document_type}
        row.update(_bucket_payload(bucket))
        rows.append(row)
    # Stable sort: ties keep first-seen order
    rows.sort(key=lambda row: row['transaction_count'], reverse=True)
    return rows


def _shares(grouped: 'OrderedDict[str, Decimal]', total: Decimal) -> Dict[str, float]:
    """Percent of ``total`` per key, rounded so the shares add up to exactly 100."""
    if total <= 0:
        return {key: 0.0 for key in grouped}
    # Work in hundredths of a percent; the leftover goes to the largest remainders
    raw = {key: amount * 10000 / total for key, amount in grouped.items()}
    floors = {key: int(value.to_integral_value(rounding=ROUND_FLOOR)) for key, value in raw.items()}
    leftover = 10000 - sum(floors.values())
    by_remainder = sorted(raw, key=lambda key: raw[key] - floors[key], reverse=True)
    for key in by_remainder[:max(leftover, 0)]:
        floors[key] += 1
    return {key: float(Decimal(hundredths) / 100) for key, hundredths in floors.items()}


def _breakdown(grouped: 'OrderedDict[str, Decimal]', total: Decimal, label: str, extra=None) -> List[Dict]:
    shares = _shares(grouped, total)
    rows = []
    for key, amount in grouped.items():
        row = {label: key, 'amount': money(amount), 'percentage': shares[key]}
        if extra:
            row.update(extra(key))
        rows.append(row)
    rows.sort(key=lambda row: row['amount'], reverse=True)
    return rows


def calculate_brand_analytics(
    sales: Iterable[dict],
    brand: str,
    index: Optional[InventoryIndex] = None,
) -> Dict:
    """Where one brand sells: by country, by macro channel and by specific channel."""
    brand_sales = [sale for sale in sales if sale_brand(sale, index) == brand]
    total = sum((to_decimal(sale.get('amount')) for sale in brand_sales), Decimal('0'))

    by_country = OrderedDict()
    by_macro = OrderedDict()
    by_channel = OrderedDict()
    channel_macro = {}

    for sale in brand_sales:
        amount = to_decimal(sale.get('amount'))
        country = country_key(sale)
        by_country[country] = by_country.get(country, Decimal('0')) + amount

        channel = sale.get('channel')
        macro = 'Marketplace' if channel == 'marketplace' else macro_channel(channel)
        by_macro[macro] = by_macro.get(macro, Decimal('0')) + amount

        key = channel_key(sale)
        channel_macro.setdefault(key, macro)
        by_channel[key] = by_channel.get(key, Decimal('0')) + amount

    return {
        'brand': brand,
        'total_amount': money(total),
        'transaction_count': len(brand_sales),
        'by_country': _breakdown(by_country, total, 'country', lambda code: {'country_name': country_name(code)}),
        'by_macro_channel': _breakdown(by_macro, total, 'macro_channel'),
        'by_channel': _breakdown(
            by_channel,
            total,
            'channel',
            lambda key: {'channel_name': CHANNEL_NAMES.get(key, key), 'macro_channel': channel_macro[key]},
        ),
    }


def unique_brands(sales: Iterable[dict], index: Optional[InventoryIndex] = None) -> List[str]:
    return sorted({brand for brand in (sale_brand(sale, index) for sale in sales) if brand})
