"""
Sale -> catalog reconciliation.

Upload sources disagree on SKU separators (``ABC-123``, ``ABC123``,
``abc 123``), so every catalog SKU is indexed under three keys and lookups
try them strict -> loose -> simple. The order matters: changing it breaks
real matches.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from retail_analytics.utils.normalize import (
    loose_key,
    matching_key,
    normalize_sku,
    simple_key,
    to_decimal,
)

logger = logging.getLogger(__name__)

KEY_FUNCTIONS = (matching_key, loose_key, simple_key)


@dataclass(frozen=True)
class CatalogMatch:
    sku: str
    brand: Optional[str]
    purchase_price: Decimal
    category: Optional[str] = None
    collection: Optional[str] = None


def resolve_sku(record: dict) -> str:
    """Canonical SKU of a sale or return, falling back to the legacy product id."""
    return str(record.get('sku') or record.get('product_id') or record.get('productId') or '').strip()


def _catalog_field(item: dict, name: str, alias: str):
    value = item.get(name)
    if value is None:
        value = item.get(alias)
    return value


class InventoryIndex:
    """Catalog lookup built once per batch; first SKU written to a key keeps it."""

    def __init__(self):
        self._tiers: List[Dict[str, CatalogMatch]] = [{} for _ in KEY_FUNCTIONS]
        self._size = 0

    @classmethod
    def build(cls, items: Iterable[dict]) -> 'InventoryIndex':
        index = cls()
        for item in items:
            index.add(item)
        logger.debug("Inventory index built with %d catalog items", index._size)
        return index

    def add(self, item: dict) -> bool:
        sku = normalize_sku(item.get('sku'))
        if not sku:
            return False
        entry = CatalogMatch(
            sku=sku,
            brand=(item.get('brand') or None),
            purchase_price=to_decimal(_catalog_field(item, 'purchase_price', 'purchasePrice')),
            category=item.get('category') or None,
            collection=item.get('collection') or None,
        )
        for tier, key_fn in zip(self._tiers, KEY_FUNCTIONS):
            key = key_fn(sku)
            if key and key not in tier:
                tier[key] = entry
        self._size += 1
        return True

    def match(self, raw_sku) -> Optional[CatalogMatch]:
        if not raw_sku:
            return None
        for tier, key_fn in zip(self._tiers, KEY_FUNCTIONS):
            key = key_fn(raw_sku)
            if key and key in tier:
                return tier[key]
        return None

    def match_record(self, record: dict) -> Optional[CatalogMatch]:
        return self.match(resolve_sku(record))

    def partial_match(self, raw_sku, threshold: float = 0.5) -> Optional[Dict]:
        """First catalog key that contains the SKU (or is contained in it) closely enough."""
        key = matching_key(raw_sku)
        if len(key) <= 3:
            return None
        for catalog_key, entry in self._tiers[0].items():
            if len(catalog_key) <= 3 or (key not in catalog_key and catalog_key not in key):
                continue
            similarity = min(len(key), len(catalog_key)) / max(len(key), len(catalog_key))
            if similarity > threshold:
                return {'sale_sku': normalize_sku(raw_sku), 'catalog_sku': entry.sku,
                        'similarity': round(similarity * 100)}
        return None

    def sample_skus(self, limit: int = 10) -> List[str]:
        samples = []
        for entry in self._tiers[-1].values():
            if entry.sku not in samples:
                samples.append(entry.sku)
            if len(samples) >= limit:
                break
        return samples

    def __len__(self):
        return self._size

    def __bool__(self):
        return self._size > 0


def diagnose_skus(sales: List[dict], index: InventoryIndex, limit: int = 20) -> Dict:
    """Inspect the first ``limit`` sales and report which SKUs fail to reconcile."""
    limit = max(1, min(int(limit), 50))
    analyzed = sales[:limit]
    matched, unmatched = [], []

    for sale in analyzed:
        sku = resolve_sku(sale)
        if not sku:
            continue
        hit = index.match(sku)
        if hit and hit.brand:
            matched.append({'sku': normalize_sku(sku), 'brand': hit.brand, 'catalog_sku': hit.sku})
        elif not sale.get('brand'):
            unmatched.append({
                'sku': normalize_sku(sku),
                'matching_key': matching_key(sku),
                'original': sku,
                'brand': sale.get('brand'),
            })

    partial_matches = []
    for entry in unmatched:
        candidate = index.partial_match(entry['original'])
        if candidate:
            partial_matches.append(candidate)

    return {
        'total_sales': len(sales),
        'analyzed': len(analyzed),
        'matched': len(matched),
        'unmatched': len(unmatched),
        'matched_samples': matched[:10],
        'unmatched_samples': unmatched[:10],
        'partial_matches': partial_matches[:10],
        'inventory_sku_samples': index.sample_skus(10),
    }
