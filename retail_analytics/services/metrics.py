from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from retail_analytics.services.channels import VALID_CHANNELS
from retail_analytics.services.inventory_matcher import InventoryIndex
from retail_analytics.utils.formatting import UNKNOWN_BRAND_LABEL, brand_label
from retail_analytics.utils.normalize import (
    money,
    percent,
    quantize_money,
    to_datetime,
    to_decimal,
)

MARKETPLACE_FALLBACK = 'Altro Marketplace'
DEFAULT_TAX_RATE = Decimal('22')

CATEGORY_LABELS = {
    'abbigliamento': 'Abbigliamento',
    'calzature': 'Calzature',
    'accessori': 'Accessori',
    'borse': 'Borse',
}

DEFAULT_COST_SETTINGS = {
    'commission_percent': 0,
    'extra_commission_percent': 0,
    'fixed_cost': 0,
    'return_cost': 0,
    'apply_on_vat_included': True,
}

# Summed verbatim into the totals row
_SUMMED_FIELDS = (
    'total_sales',
    'order_count',
    'unique_order_count',
    'total_quantity',
    'total_returns',
    'return_count',
    'unique_return_count',
    'total_commissions',
    'total_fixed_costs',
    'total_return_costs',
    'net_from_channel',
    'matched_sales_amount',
    'matched_count',
    'total_product_cost',
)
_COUNT_FIELDS = {
    'order_count',
    'unique_order_count',
    'total_quantity',
    'return_count',
    'unique_return_count',
    'matched_count',
}


def _amount(record) -> Decimal:
    return to_decimal(record.get('amount'))


def _quantity(record) -> int:
    try:
        return int(record.get('quantity') or 0)
    except (TypeError, ValueError):
        return 0


def _sorted_amounts(grouped: Mapping[str, Decimal]) -> Dict[str, float]:
    ordered = sorted(grouped.items(), key=lambda item: (-item[1], item[0]))
    return {key: money(value) for key, value in ordered}


def _known_brand(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text == UNKNOWN_BRAND_LABEL:
        return None
    return text


def sale_brand(sale: dict, index: Optional[InventoryIndex] = None) -> Optional[str]:
    """Brand of a sale: the stored one, else the catalog's, else None."""
    brand = _known_brand(sale.get('brand'))
    if brand is None and index:
        match = index.match_record(sale)
        if match:
            brand = _known_brand(match.brand)
    return brand


def inventory_match_stats(sales: Iterable[dict], index: InventoryIndex) -> Dict:
    sales = list(sales)
    matched = sum(1 for sale in sales if index and index.match_record(sale))
    total = len(sales)
    return {
        'total_sales': total,
        'matched_sales': matched,
        'unmatched_sales': total - matched,
        'match_percentage': percent(matched, total),
        'has_inventory': bool(index),
    }


def calculate_metrics(
    sales: List[dict],
    returns: List[dict],
    inventory: Optional[List[dict]] = None,
    index: Optional[InventoryIndex] = None,
) -> Dict:
    """
    Dashboard figures for any slice of sales and returns.

    Margin only looks at sales that reconcile with a catalog item carrying a
    purchase price; it is None (shown as N/D) when no sale does.
    """
    if index is None:
        index = InventoryIndex.build(inventory or [])

    total_sales = Decimal('0')
    matched_sales_amount = Decimal('0')
    total_cost = Decimal('0')
    margin_lines = 0
    sales_by_channel = {channel: Decimal('0') for channel in VALID_CHANNELS}
    sales_by_brand = defaultdict(Decimal)
    sales_by_category = defaultdict(Decimal)

    for sale in sales:
        amount = _amount(sale)
        total_sales += amount

        channel = sale.get('channel')
        if channel in sales_by_channel:
            sales_by_channel[channel] += amount

        match = index.match_record(sale) if index else None
        if match and match.purchase_price > 0:
            matched_sales_amount += amount
            total_cost += match.purchase_price * _quantity(sale)
            margin_lines += 1

        brand = _known_brand(sale.get('brand')) or (_known_brand(match.brand) if match else None)
        sales_by_brand[brand_label(brand)] += amount
        sales_by_category[sale.get('category') or 'abbigliamento'] += amount

    # Sum first, abs after: retained return fees offset refunds
    total_returns = abs(sum((_amount(ret) for ret in returns), Decimal('0')))

    margin = None
    if margin_lines and matched_sales_amount != 0:
        margin = percent(matched_sales_amount - total_cost, matched_sales_amount)

    return {
        'total_sales': money(total_sales),
        'total_returns': money(total_returns),
        'return_rate': percent(total_returns, total_sales),
        'margin': margin,
        'matched_sales_amount': money(matched_sales_amount),
        'total_cost': money(total_cost),
        'sales_count': len(sales),
        'returns_count': len(returns),
        'sales_by_channel': {channel: money(value) for channel, value in sales_by_channel.items()},
        'sales_by_brand': _sorted_amounts(sales_by_brand),
        'sales_by_category': _sorted_amounts(sales_by_category),
        'inventory_match_stats': inventory_match_stats(sales, index),
    }


def marketplace_key(record: dict) -> str:
    """Sub-channel of a marketplace sale or return: payment method, marketplace, or the fallback bucket."""
    for field in ('payment_method', 'marketplace'):
        value = str(record.get(field) or '').strip()
        if value:
            return value
    return MARKETPLACE_FALLBACK


def _order_key(record: dict) -> str:
    for field in ('order_reference', 'numero', 'sale_id', 'id'):
        value = record.get(field)
        if value not in (None, ''):
            return str(value)
    return ''


def _cost_settings_for(name: str, cost_settings: Optional[Mapping[str, Mapping]]) -> Dict:
    settings = dict(DEFAULT_COST_SETTINGS)
    if cost_settings and name in cost_settings:
        settings.update({k: v for k, v in cost_settings[name].items() if v is not None})
    return settings


def _marketplace_summary(name: str, acc: Dict, settings: Dict) -> Dict:
    gross = quantize_money(acc['gross'])
    commission_rate = to_decimal(settings['commission_percent']) + to_decimal(settings['extra_commission_percent'])
    basis = acc['gross'] if settings.get('apply_on_vat_included', True) else acc['net_of_vat']
    unique_orders = len(acc['orders'])
    unique_returns = len(acc['return_orders'])

    total_commissions = quantize_money(basis * commission_rate / 100)
    total_fixed_costs = quantize_money(to_decimal(settings['fixed_cost']) * unique_orders)
    total_return_costs = quantize_money(to_decimal(settings['return_cost']) * unique_returns)

    return {
        'name': name,
        'commission_percent': float(to_decimal(settings['commission_percent'])),
        'extra_commission_percent': float(to_decimal(settings['extra_commission_percent'])),
        'apply_on_vat_included': bool(settings.get('apply_on_vat_included', True)),
        'total_sales': gross,
        'order_count': acc['lines'],
        'unique_order_count': unique_orders,
        'total_quantity': acc['quantity'],
        'total_returns': quantize_money(abs(acc['returns'])),
        'return_count': acc['return_lines'],
        'unique_return_count': unique_returns,
        'total_commissions': total_commissions,
        'total_fixed_costs': total_fixed_costs,
        'total_return_costs': total_return_costs,
        'net_from_channel': gross - total_commissions - total_fixed_costs - total_return_costs,
        'matched_sales_amount': quantize_money(acc['matched']),
        'matched_count': acc['matched_count'],
        'total_product_cost': quantize_money(acc['product_cost']),
    }


def _marketplace_payload(summary: Dict) -> Dict:
    gross = summary['total_sales']
    matched = summary['matched_sales_amount']
    has_cost_basis = summary['matched_count'] > 0

    gross_profit = matched - summary['total_product_cost'] if has_cost_basis else None
    net_profit = summary['net_from_channel'] - summary['total_product_cost'] if has_cost_basis else None
    unique_orders = summary['unique_order_count']

    payload = {
        'name': summary['name'],
        'commission_percent': summary.get('commission_percent'),
        'extra_commission_percent': summary.get('extra_commission_percent'),
        'apply_on_vat_included': summary.get('apply_on_vat_included'),
        'total_sales': float(gross),
        'order_count': summary['order_count'],
        'unique_order_count': unique_orders,
        'average_order_value': money(gross / unique_orders) if unique_orders else 0.0,
        'total_quantity': summary['total_quantity'],
        'total_returns': float(summary['total_returns']),
        'return_count': summary['return_count'],
        'unique_return_count': summary['unique_return_count'],
        'return_rate': percent(summary['total_returns'], gross),
        'total_commissions': float(summary['total_commissions']),
        'total_fixed_costs': float(summary['total_fixed_costs']),
        'total_return_costs': float(summary['total_return_costs']),
        'net_from_channel': float(summary['net_from_channel']),
        'net_from_channel_percent': percent(summary['net_from_channel'], gross),
        'total_product_cost': float(summary['total_product_cost']),
        'gross_profit': float(gross_profit) if gross_profit is not None else None,
        'gross_margin_percent': percent(gross_profit, matched) if gross_profit is not None and matched else None,
        'net_profit': float(net_profit) if net_profit is not None else None,
        'net_margin': percent(net_profit, gross) if net_profit is not None and gross else None,
    }
    return payload


def calculate_marketplace_metrics(
    sales: List[dict],
    returns: List[dict],
    inventory: Optional[List[dict]] = None,
    cost_settings: Optional[Mapping[str, Mapping]] = None,
    default_tax_rate=DEFAULT_TAX_RATE,
    index: Optional[InventoryIndex] = None,
) -> Dict:
    """
    Per-marketplace detail with commissions and channel costs.

    Each row is rounded to cents first; the totals row is the sum of the
    rounded rows so that it always agrees with what is displayed.
    """
    if index is None:
        index = InventoryIndex.build(inventory or [])
    default_tax_rate = to_decimal(default_tax_rate)

    def _new_acc():
        return {
            'gross': Decimal('0'),
            'net_of_vat': Decimal('0'),
            'lines': 0,
            'orders': set(),
            'quantity': 0,
            'matched': Decimal('0'),
            'matched_count': 0,
            'product_cost': Decimal('0'),
            'returns': Decimal('0'),
            'return_lines': 0,
            'return_orders': set(),
        }

    accumulators: Dict[str, Dict] = defaultdict(_new_acc)

    for sale in sales:
        if sale.get('channel') != 'marketplace':
            continue
        acc = accumulators[marketplace_key(sale)]
        amount = _amount(sale)
        tax_rate = to_decimal(sale.get('tax_rate')) if sale.get('tax_rate') not in (None, '') else default_tax_rate
        acc['gross'] += amount
        acc['net_of_vat'] += amount / (1 + tax_rate / 100)
        acc['lines'] += 1
        acc['quantity'] += _quantity(sale)
        order = _order_key(sale)
        if order:
            acc['orders'].add(order)

        match = index.match_record(sale) if index else None
        if match and match.purchase_price > 0:
            acc['matched'] += amount
            acc['matched_count'] += 1
            acc['product_cost'] += match.purchase_price * _quantity(sale)

    for ret in returns:
        if ret.get('channel') != 'marketplace':
            continue
        acc = accumulators[marketplace_key(ret)]
        acc['returns'] += _amount(ret)
        acc['return_lines'] += 1
        order = _order_key(ret)
        if order:
            acc['return_orders'].add(order)

    summaries = [
        _marketplace_summary(name, acc, _cost_settings_for(name, cost_settings))
        for name, acc in accumulators.items()
    ]
    summaries.sort(key=lambda row: (-row['total_sales'], row['name']))

    totals = {'name': 'Totale'}
    for field in _SUMMED_FIELDS:
        start = 0 if field in _COUNT_FIELDS else Decimal('0')
        totals[field] = sum((row[field] for row in summaries), start)

    return {
        'marketplaces': [_marketplace_payload(row) for row in summaries],
        'totals': _marketplace_payload(totals),
    }


def sales_by_date(sales: Iterable[dict], days: int = 7, now: Optional[datetime] = None) -> List[Dict]:
    """Daily totals for the last ``days`` days, zero-filled, oldest first."""
    today = (now or datetime.now()).date()
    first_day = today - timedelta(days=days)
    totals = defaultdict(Decimal)
    counts = defaultdict(int)
    for sale in sales:
        sale_date = to_datetime(sale.get('date'))
        if sale_date is None:
            continue
        day = sale_date.date()
        if first_day <= day <= today:
            totals[day] += _amount(sale)
            counts[day] += 1

    series = []
    day = first_day
    while day <= today:
        series.append({'date': day.isoformat(), 'sales': money(totals[day]), 'count': counts[day]})
        day += timedelta(days=1)
    return series


def marketplace_data(sales: Iterable[dict]) -> List[Dict]:
    grouped = defaultdict(Decimal)
    for sale in sales:
        if sale.get('channel') == 'marketplace':
            grouped[str(sale.get('marketplace') or '').strip() or 'Altro'] += _amount(sale)
    return [{'name': name, 'value': value} for name, value in _sorted_amounts(grouped).items()]


def category_data(sales: Iterable[dict]) -> List[Dict]:
    grouped = defaultdict(Decimal)
    for sale in sales:
        category = sale.get('category') or 'abbigliamento'
        grouped[CATEGORY_LABELS.get(category, category)] += _amount(sale)
    return [{'name': name, 'value': value} for name, value in _sorted_amounts(grouped).items()]


def brand_data(
    sales: Iterable[dict],
    inventory: Optional[List[dict]] = None,
    top: int = 8,
    index: Optional[InventoryIndex] = None,
) -> List[Dict]:
    """Top brands by revenue; sales without any brand fall under Sconosciuto."""
    if index is None and inventory:
        index = InventoryIndex.build(inventory)
    grouped = defaultdict(Decimal)
    for sale in sales:
        grouped[sale_brand(sale, index) or 'Sconosciuto'] += _amount(sale)
    ranked = [{'name': name, 'value': value} for name, value in _sorted_amounts(grouped).items()]
    return ranked[:top]


def season_code(value) -> Optional[str]:
    """Fashion season of a date: SS for January-June, FW for July-December."""
    parsed = to_datetime(value)
    if parsed is None:
        return None
    prefix = 'SS' if parsed.month <= 6 else 'FW'
    return f"{prefix}{parsed.year}"


def season_data(sales: Iterable[dict]) -> List[Dict]:
    grouped = defaultdict(Decimal)
    for sale in sales:
        code = season_code(sale.get('date'))
        if code:
            grouped[code] += _amount(sale)
    return [{'name': code, 'value': money(grouped[code])} for code in sorted(grouped)]


def _month_start(year: int, month: int) -> date:
    while month <= 0:
        month += 12
        year -= 1
    return date(year, month, 1)


def monthly_sales_with_yoy(sales: Iterable[dict], months: int = 12, now: Optional[datetime] = None) -> List[Dict]:
    """Monthly revenue for the last ``months`` months beside the same month a year earlier."""
    now = now or datetime.now()
    by_month = defaultdict(Decimal)
    for sale in sales:
        sale_date = to_datetime(sale.get('date'))
        if sale_date is not None:
            by_month[(sale_date.year, sale_date.month)] += _amount(sale)

    series = []
    for offset in range(months - 1, -1, -1):
        month_start = _month_start(now.year, now.month - offset)
        current = by_month[(month_start.year, month_start.month)]
        previous = by_month[(month_start.year - 1, month_start.month)]
        series.append({
            'month': month_start.strftime('%Y-%m'),
            'current': money(current),
            'previous': money(previous),
        })
    return series


def sales_stats(sales: Iterable[dict]) -> Dict:
    """Row counts and revenue by channel and by month, for the upload overview."""
    by_channel = defaultdict(lambda: {'count': 0, 'amount': Decimal('0')})
    by_month = defaultdict(lambda: {'count': 0, 'amount': Decimal('0')})
    total = 0
    for sale in sales:
        total += 1
        amount = _amount(sale)
        channel = by_channel[sale.get('channel') or 'unknown']
        channel['count'] += 1
        channel['amount'] += amount
        sale_date = to_datetime(sale.get('date'))
        if sale_date is not None:
            month = by_month[sale_date.strftime('%Y-%m')]
            month['count'] += 1
            month['amount'] += amount

    return {
        'total': total,
        'by_channel': {key: {'count': v['count'], 'amount': money(v['amount'])} for key, v in sorted(by_channel.items())},
        'by_month': [{'month': key, 'count': v['count'], 'amount': money(v['amount'])}
                     for key, v in sorted(by_month.items())],
    }
