"""Operator corrections: mappings, channel and brand fixes, duplicate cleanup."""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from retail_analytics.errors import InvalidRequest
from retail_analytics.models import (
    BrandMapping,
    ChannelCost,
    ChannelMapping,
    PaymentMapping,
    Sale,
    SaleReturn,
)
from retail_analytics.services import repository
from retail_analytics.services.channels import (
    MACRO_AREAS,
    ONLINE_CHANNELS,
    VALID_CHANNELS,
    channel_for_macro_area,
    normalize_channel,
)
from retail_analytics.services.duplicates import (
    duplicate_ids_to_remove,
    find_duplicate_groups,
    return_signature,
    sale_signature,
)
from retail_analytics.services.inventory_matcher import InventoryIndex
from retail_analytics.utils.normalize import matching_key, normalize_user, to_decimal

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 500

DUPLICATE_TARGETS = {
    'sales': (Sale, sale_signature, repository.load_sales),
    'returns': (SaleReturn, return_signature, repository.load_returns),
}


def _as_entries(payload, key_name: str) -> List[dict]:
    """Accept either a list of entries or a dict keyed by payment method."""
    if isinstance(payload, dict):
        return [dict(value or {}, **{key_name: key}) for key, value in payload.items()]
    if isinstance(payload, list):
        return [entry for entry in payload if isinstance(entry, dict)]
    raise InvalidRequest('Expected a list or an object of entries')


def save_payment_mappings(session: Session, payload) -> List[dict]:
    saved = []
    for entry in _as_entries(payload, 'payment_method'):
        method = str(entry.get('payment_method') or entry.get('paymentMethod') or '').strip()
        macro_area = str(entry.get('macro_area') or entry.get('macroArea') or '').strip()
        if not method:
            raise InvalidRequest('payment_method is required')
        if macro_area not in MACRO_AREAS:
            raise InvalidRequest(f"Invalid macro area for {method}: {macro_area or '-'}",
                                 details=f"Must be one of: {', '.join(MACRO_AREAS)}")
        channel = normalize_channel(entry.get('channel'))
        if channel not in ONLINE_CHANNELS:
            channel = channel_for_macro_area(macro_area)

        mapping = session.get(PaymentMapping, method)
        if mapping is None:
            mapping = PaymentMapping(payment_method=method)
            session.add(mapping)
        mapping.macro_area = macro_area
        mapping.channel = channel
        saved.append(mapping)

    session.commit()
    logger.info("Saved %d payment mapping(s)", len(saved))
    return [mapping.to_dict() for mapping in saved]


def save_channel_costs(session: Session, payload) -> List[dict]:
    saved = []
    for entry in _as_entries(payload, 'payment_method'):
        method = str(entry.get('payment_method') or entry.get('paymentMethod') or '').strip()
        if not method:
            raise InvalidRequest('payment_method is required')

        cost = session.get(ChannelCost, method)
        if cost is None:
            cost = ChannelCost(payment_method=method)
            session.add(cost)
        cost.macro_area = entry.get('macro_area') or entry.get('macroArea') or cost.macro_area
        cost.commission_percent = to_decimal(entry.get('commission_percent', entry.get('commissionPercent')))
        cost.extra_commission_percent = to_decimal(
            entry.get('extra_commission_percent', entry.get('extraCommissionPercent'))
        )
        cost.fixed_cost = to_decimal(entry.get('fixed_cost', entry.get('fixedCost')))
        cost.return_cost = to_decimal(entry.get('return_cost', entry.get('returnCost')))
        apply_on_vat = entry.get('apply_on_vat_included', entry.get('applyOnVatIncluded'))
        cost.apply_on_vat_included = True if apply_on_vat is None else bool(apply_on_vat)
        saved.append(cost)

    session.commit()
    logger.info("Saved %d channel cost setting(s)", len(saved))
    return [cost.to_dict() for cost in saved]


def fix_channels(session: Session, record_ids, new_channel) -> int:
    if not isinstance(record_ids, list) or not new_channel:
        raise InvalidRequest('record_ids (array) and new_channel are required')
    channel = normalize_channel(new_channel)
    if channel is None:
        raise InvalidRequest(f"Invalid channel: {new_channel}",
                             details=f"Must be one of: {', '.join(VALID_CHANNELS)}")

    updated = 0
    for record_id in record_ids:
        sale = session.get(Sale, record_id)
        if sale is not None:
            sale.channel = channel
            updated += 1
    session.commit()
    logger.info("Channel set to %s on %d sale(s)", channel, updated)
    return updated


def bulk_update(session: Session, updates) -> Dict:
    """Apply ``{id, brand?, channel?}`` corrections; unknown ids are reported back."""
    if not isinstance(updates, list):
        raise InvalidRequest('updates must be an array')

    updated, missing = 0, []
    for update in updates:
        sale = session.get(Sale, update.get('id')) if isinstance(update, dict) else None
        if sale is None:
            missing.append(update.get('id') if isinstance(update, dict) else None)
            continue
        if update.get('brand'):
            sale.brand = str(update['brand']).strip()
        if update.get('channel'):
            channel = normalize_channel(update['channel'])
            if channel is None:
                raise InvalidRequest(f"Invalid channel: {update['channel']}")
            sale.channel = channel
        updated += 1
    session.commit()
    return {'updated': updated, 'missing': missing}


def learn_mappings(session: Session, brand_mappings=None, channel_mappings=None) -> int:
    """Remember operator fixes so later uploads apply them automatically."""
    learned = 0
    for entry in brand_mappings or []:
        if not isinstance(entry, dict) or not entry.get('sku') or not entry.get('brand'):
            continue
        key = matching_key(entry['sku'])
        mapping = session.get(BrandMapping, key) or BrandMapping(sku_key=key)
        mapping.brand = str(entry['brand']).strip()
        session.add(mapping)
        learned += 1

    for entry in channel_mappings or []:
        if not isinstance(entry, dict) or not entry.get('user'):
            continue
        channel = normalize_channel(entry.get('channel'))
        if channel is None:
            continue
        key = normalize_user(entry['user'])
        mapping = session.get(ChannelMapping, key) or ChannelMapping(user_key=key)
        mapping.channel = channel
        session.add(mapping)
        learned += 1

    session.commit()
    logger.info("Learned %d mapping(s)", learned)
    return learned


def update_brands_from_inventory(session: Session) -> Dict:
    """Fill missing sale brands from the catalog, then from learned mappings."""
    index = InventoryIndex.build(repository.load_inventory(session))
    learned = repository.load_learned_brands(session)
    checked = updated = 0

    query = session.query(Sale).filter((Sale.brand.is_(None)) | (Sale.brand == '') | (Sale.brand == 'Unknown'))
    for sale in repository.iter_rows(session, Sale, query=query):
        checked += 1
        match = index.match(sale.sku or sale.product_id)
        brand = match.brand if match and match.brand else learned.get(matching_key(sale.sku))
        if brand:
            sale.brand = brand
            updated += 1
    session.commit()
    logger.info("Brand backfill: %d of %d sales updated", updated, checked)
    return {'checked': checked, 'updated': updated}


def find_orphans(sales: Iterable[dict], limit: Optional[int] = None) -> Dict:
    """Sales missing a brand or carrying an invalid channel."""
    missing_brand, invalid_channel = [], []
    for sale in sales:
        if not sale.get('brand') or sale.get('brand') == 'Unknown':
            missing_brand.append(sale)
        if normalize_channel(sale.get('channel')) is None:
            invalid_channel.append(sale)
    return {
        'missing_brand_count': len(missing_brand),
        'invalid_channel_count': len(invalid_channel),
        'missing_brand': missing_brand[:limit] if limit else missing_brand,
        'invalid_channel': invalid_channel[:limit] if limit else invalid_channel,
    }


def _duplicate_target(kind: str):
    if kind not in DUPLICATE_TARGETS:
        raise InvalidRequest(f"Unknown record type: {kind}", details='Use sales or returns')
    return DUPLICATE_TARGETS[kind]


def list_duplicates(session: Session, kind: str = 'sales') -> Dict:
    _, signature_fn, loader = _duplicate_target(kind)
    groups = find_duplicate_groups(loader(session), signature_fn)
    return {
        'groups': groups,
        'group_count': len(groups),
        'duplicate_count': sum(group['count'] - 1 for group in groups),
    }


def remove_duplicates(session: Session, kind: str = 'sales') -> Dict:
    """Delete every duplicate but the oldest record of each signature group."""
    model, signature_fn, loader = _duplicate_target(kind)
    ids = duplicate_ids_to_remove(loader(session), signature_fn)

    for start in range(0, len(ids), DELETE_BATCH_SIZE):
        batch = ids[start:start + DELETE_BATCH_SIZE]
        session.query(model).filter(model.id.in_(batch)).delete(synchronize_session=False)
        session.commit()

    logger.info("Removed %d duplicate %s", len(ids), kind)
    return {'removed': len(ids)}


def delete_all(session: Session, model) -> int:
    deleted = session.query(model).delete(synchronize_session=False)
    session.commit()
    logger.warning("Deleted all %d rows from %s", deleted, model.__tablename__)
    return deleted
