"""
Channel and payment-method classification.

The channel stored on a sale is the one it was uploaded with. Payment
mappings are applied when sales are read (``resolve_channel``), so editing
a mapping immediately reclassifies historical sales without rewriting rows.
"""

from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional

from retail_analytics.utils.normalize import normalize_user

STORE_CHANNELS = ('negozio_donna', 'negozio_uomo')
ONLINE_CHANNELS = ('ecommerce', 'marketplace')
VALID_CHANNELS = STORE_CHANNELS + ONLINE_CHANNELS
UNKNOWN_CHANNEL = 'unknown'

MACRO_AREAS = ('Marketplace', 'Sito', 'Altro')
MACRO_AREA_CHANNELS = {
    'Marketplace': 'marketplace',
    'Sito': 'ecommerce',
    'Altro': 'ecommerce',
}

CHANNEL_NAMES = {
    'negozio_donna': 'Negozio Donna',
    'negozio_uomo': 'Negozio Uomo',
    'ecommerce': 'Sito Web',
    'marketplace': 'Marketplace',
}

MACRO_CHANNELS = {
    'negozio_donna': 'Negozio',
    'negozio_uomo': 'Negozio',
    'ecommerce': 'Sito',
    'marketplace': 'Marketplace',
}
DEFAULT_MACRO_CHANNEL = 'Altro'

# Clerk tags found in the store cash-register exports
USER_STORE_MAPPING = {
    'carla': 'negozio_donna',
    'alexander': 'negozio_uomo',
    'paolo': 'negozio_uomo',
    'admin': 'ecommerce',
    'online': 'ecommerce',
    'shop': 'ecommerce',
    'ecommerce': 'ecommerce',
    'amazon': 'marketplace',
    'zalando': 'marketplace',
    'farfetch': 'marketplace',
    'ebay': 'marketplace',
    'marketplace': 'marketplace',
}

KNOWN_MARKETPLACES = ('zalando', 'cettire', 'baltini', 'yoox', 'guhada', 'thelist', 'miinto', 'farfetch', 'amazon', 'ebay')


def normalize_channel(value) -> Optional[str]:
    """Lowercased channel when it is one of the four known ones, else None."""
    if value is None:
        return None
    channel = str(value).strip().lower()
    return channel if channel in VALID_CHANNELS else None


def is_store_channel(value) -> bool:
    return normalize_channel(value) in STORE_CHANNELS


def has_document_pair(record: Mapping) -> bool:
    """E-commerce exports carry a fiscal document type and number."""
    return bool(str(record.get('documento') or '').strip() and str(record.get('numero') or '').strip())


def channel_for_macro_area(macro_area) -> Optional[str]:
    return MACRO_AREA_CHANNELS.get(str(macro_area or '').strip())


def _mapping_key(payment_method) -> str:
    return str(payment_method or '').strip()


def lookup_mapping(payment_method, mappings: Mapping[str, Mapping]) -> Optional[Mapping]:
    key = _mapping_key(payment_method)
    if not key or not mappings:
        return None
    return mappings.get(key)


def classify_payment_method(payment_method, mappings: Mapping[str, Mapping]) -> Optional[Dict[str, str]]:
    """``{'macro_area', 'channel'}`` for a mapped payment method, None when unmapped."""
    entry = lookup_mapping(payment_method, mappings)
    if not entry:
        return None
    macro_area = entry.get('macro_area') or 'Altro'
    channel = normalize_channel(entry.get('channel')) or channel_for_macro_area(macro_area) or 'ecommerce'
    if channel not in ONLINE_CHANNELS:
        channel = channel_for_macro_area(macro_area) or 'ecommerce'
    return {'macro_area': macro_area, 'channel': channel}


def resolve_channel(raw_channel, payment_method, mappings: Mapping[str, Mapping], has_document: bool = False) -> str:
    """
    Effective channel of a sale.

    Store channels are never touched. Otherwise a payment mapping wins, then
    the uploaded channel, then an e-commerce default for rows that carry a
    document/number pair, and finally ``unknown``.
    """
    channel = normalize_channel(raw_channel)
    if channel in STORE_CHANNELS:
        return channel

    classified = classify_payment_method(payment_method, mappings)
    if classified:
        return classified['channel']
    if channel:
        return channel
    if has_document:
        return 'ecommerce'
    return UNKNOWN_CHANNEL


def resolve_sale_channels(sales: Iterable[dict], mappings: Mapping[str, Mapping]) -> List[dict]:
    """Copies of ``sales`` with the read-time channel applied."""
    resolved = []
    for sale in sales:
        row = dict(sale)
        row['channel'] = resolve_channel(
            sale.get('channel'), sale.get('payment_method'), mappings, has_document_pair(sale)
        )
        resolved.append(row)
    return resolved


def resolve_return_channels(returns: Iterable[dict], mappings: Mapping[str, Mapping]) -> List[dict]:
    """Copies of ``returns`` classified like their sales, so a sale and its return share a bucket."""
    resolved = []
    for ret in returns:
        row = dict(ret)
        row['channel'] = resolve_channel(
            ret.get('channel'), ret.get('payment_method') or ret.get('marketplace'), mappings
        )
        resolved.append(row)
    return resolved


def infer_ingestion_channel(raw_channel, user, learned_channels: Mapping[str, str], has_document: bool = False) -> str:
    """Channel to store for an uploaded row whose channel may be missing or invalid."""
    channel = normalize_channel(raw_channel)
    if channel:
        return channel
    learned = normalize_channel(learned_channels.get(normalize_user(user))) if learned_channels else None
    if learned:
        return learned
    if has_document:
        return 'ecommerce'
    return UNKNOWN_CHANNEL


def macro_area_for(payment_method, channel, mappings: Mapping[str, Mapping]) -> str:
    classified = classify_payment_method(payment_method, mappings)
    if classified:
        return classified['macro_area']
    if channel == 'marketplace':
        return 'Marketplace'
    if channel == 'ecommerce':
        return 'Sito'
    return 'Altro'


def suggest_macro_area(payment_method) -> str:
    """Best guess for an unmapped method: known marketplace names go to Marketplace."""
    name = str(payment_method or '').strip().lower()
    if any(marketplace in name for marketplace in KNOWN_MARKETPLACES):
        return 'Marketplace'
    return 'Sito'


def find_unmapped_methods(sales: Iterable[dict], mappings: Mapping[str, Mapping]) -> List[str]:
    """Payment methods of non-store sales that nobody has classified yet."""
    unmapped = set()
    for sale in sales:
        if is_store_channel(sale.get('channel')):
            continue
        method = _mapping_key(sale.get('payment_method'))
        if method and lookup_mapping(method, mappings) is None:
            unmapped.add(method)
    return sorted(unmapped)


def unmapped_method_summary(sales: Iterable[dict], mappings: Mapping[str, Mapping]) -> List[Dict]:
    sales = list(sales)
    methods = set(find_unmapped_methods(sales, mappings))
    counts = Counter(
        _mapping_key(sale.get('payment_method'))
        for sale in sales
        if _mapping_key(sale.get('payment_method')) in methods and not is_store_channel(sale.get('channel'))
    )
    return [
        {
            'payment_method': method,
            'sales_count': counts[method],
            'suggested_macro_area': suggest_macro_area(method),
        }
        for method in sorted(methods)
    ]


def channel_diagnostics(sales: Iterable[dict]) -> Dict:
    """Distribution of stored channels and the records whose channel is not valid."""
    distribution = Counter()
    problematic = []
    total = 0
    for sale in sales:
        total += 1
        raw = sale.get('channel')
        distribution[raw if raw else 'NULL'] += 1
        if normalize_channel(raw) is None:
            problematic.append({'id': sale.get('id'), 'user': sale.get('user'), 'channel': raw})

    return {
        'summary': {
            'total_records': total,
            'valid_records': total - len(problematic),
            'problematic_records': len(problematic),
            'problematic_percentage': round(len(problematic) / total * 100, 2) if total else 0.0,
        },
        'channel_distribution': dict(distribution),
        'problematic': problematic,
    }


def suggest_channel_fixes(sales: Iterable[dict], learned_channels: Optional[Mapping[str, str]] = None) -> List[Dict]:
    """Proposed channels for records with an invalid channel, based on the clerk tag."""
    suggestions = []
    for sale in sales:
        if normalize_channel(sale.get('channel')):
            continue
        user_key = normalize_user(sale.get('user'))
        if not user_key:
            continue
        suggested = (learned_channels or {}).get(user_key) or USER_STORE_MAPPING.get(user_key)
        if normalize_channel(suggested):
            suggestions.append({
                'record_id': sale.get('id'),
                'current_channel': sale.get('channel'),
                'suggested_channel': suggested,
                'user': sale.get('user'),
            })
    return suggestions
