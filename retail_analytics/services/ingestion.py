"""
Bulk ingestion of sales, returns and catalog items.

Rows are validated one by one: a bad row is reported in ``errors`` and
skipped, never aborting the batch. Valid rows are written in chunks, each
with its own commit and a bounded retry with exponential backoff. When a
chunk keeps failing the call raises ``UploadFailed`` carrying the counts
reached so far.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from retail_analytics.errors import UploadFailed
from retail_analytics.models import InventoryItem, Sale, SaleReturn
from retail_analytics.services import repository
from retail_analytics.services.channels import (
    has_document_pair,
    infer_ingestion_channel,
    normalize_channel,
)
from retail_analytics.services.duplicates import return_signature, sale_signature
from retail_analytics.services.inventory_matcher import InventoryIndex
from retail_analytics.utils.normalize import (
    CENT,
    matching_key,
    normalize_sku,
    normalize_user,
    parse_euro_number,
    to_datetime,
    to_decimal,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]

DEFAULT_CATEGORY = 'abbigliamento'
DEFAULT_SEASON = 'autunno_inverno'
DEFAULT_RETURN_REASON = 'RESO'


@dataclass
class PreparedRow:
    record: Optional[dict] = None
    error: Optional[str] = None
    brand_source: Optional[str] = None
    channel_source: Optional[str] = None


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


def _field(row: Mapping, name: str):
    """Read ``name`` from an upload row, accepting its camelCase spelling too."""
    value = row.get(name)
    if value is None:
        value = row.get(_camel(name))
    return value


def _text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _integer(value, default: int = 0) -> int:
    if value is None or value == '':
        return default
    try:
        return int(parse_euro_number(value))
    except (TypeError, ValueError, OverflowError):
        return default


def _optional_decimal(value) -> Optional[Decimal]:
    if value is None or value == '':
        return None
    return to_decimal(value)


def _known_brand(value) -> Optional[str]:
    text = _text(value)
    if text is None or text == 'Unknown':
        return None
    return text


def prepare_sale(
    row: Mapping,
    line: int,
    index: InventoryIndex,
    learned_brands: Mapping[str, str],
    learned_channels: Mapping[str, str],
) -> PreparedRow:
    sale_date = to_datetime(_field(row, 'date'))
    if sale_date is None:
        return PreparedRow(error=f"Row {line}: invalid or missing date")

    sku = normalize_sku(_field(row, 'sku') or _field(row, 'product_id'))
    if not sku:
        return PreparedRow(error=f"Row {line}: missing SKU")

    quantity = _integer(_field(row, 'quantity'), default=1)
    if quantity <= 0:
        return PreparedRow(error=f"Row {line}: quantity must be positive")

    price = to_decimal(_field(row, 'price'))
    raw_amount = _field(row, 'amount')
    amount = to_decimal(raw_amount) if raw_amount not in (None, '') else price * quantity
    if amount < 0:
        return PreparedRow(error=f"Row {line}: sale amount cannot be negative")
    if price == 0 and amount:
        price = amount / quantity

    prepared = PreparedRow()
    record = {
        'date': sale_date,
        'user': _text(_field(row, 'user')),
        'marketplace': _text(_field(row, 'marketplace')),
        'sku': sku,
        'product_id': sku,
        'quantity': quantity,
        'price': price.quantize(CENT, rounding=ROUND_HALF_UP),
        'amount': amount.quantize(CENT, rounding=ROUND_HALF_UP),
        'payment_method': _text(_field(row, 'payment_method')),
        'area': _text(_field(row, 'area')),
        'country': (_text(_field(row, 'country')) or '').upper() or None,
        'order_reference': _text(_field(row, 'order_reference')),
        'documento': _text(_field(row, 'documento')),
        'numero': _text(_field(row, 'numero')),
        'season': _text(_field(row, 'season')) or DEFAULT_SEASON,
        'shipping_cost': _optional_decimal(_field(row, 'shipping_cost')),
        'tax_rate': _optional_decimal(_field(row, 'tax_rate')),
    }

    raw_channel = _field(row, 'channel')
    channel = infer_ingestion_channel(raw_channel, record['user'], learned_channels, has_document_pair(record))
    record['channel'] = channel
    if normalize_channel(raw_channel) is None and normalize_user(record['user']) in (learned_channels or {}):
        prepared.channel_source = 'mapping'

    # An uploaded brand is kept; the catalog and learned mappings only fill gaps
    match = index.match(sku) if index else None
    brand = _known_brand(_field(row, 'brand'))
    if brand is None and match and match.brand:
        brand = match.brand
        prepared.brand_source = 'inventory'
    elif brand is None and learned_brands and matching_key(sku) in learned_brands:
        brand = learned_brands[matching_key(sku)]
        prepared.brand_source = 'mapping'
    record['brand'] = brand
    record['category'] = _text(_field(row, 'category')) or (match.category if match else None) or DEFAULT_CATEGORY

    record['signature'] = sale_signature(record)
    prepared.record = record
    return prepared


def prepare_return(row: Mapping, line: int) -> PreparedRow:
    return_date = to_datetime(_field(row, 'date'))
    if return_date is None:
        return PreparedRow(error=f"Row {line}: invalid or missing date")

    order_reference = _text(_field(row, 'order_reference'))
    sku = normalize_sku(_field(row, 'sku') or _field(row, 'product_id')) or None
    if not order_reference and not sku:
        return PreparedRow(error=f"Row {line}: order reference or SKU required")

    payment_method = _text(_field(row, 'payment_method'))
    record = {
        'date': return_date,
        'sale_id': _text(_field(row, 'sale_id')) or order_reference,
        # Signed as exported: retained return fees come in positive
        'amount': to_decimal(_field(row, 'amount')).quantize(CENT, rounding=ROUND_HALF_UP),
        'reason': _text(_field(row, 'reason')) or DEFAULT_RETURN_REASON,
        'channel': normalize_channel(_field(row, 'channel')) or 'ecommerce',
        'marketplace': _text(_field(row, 'marketplace')) or payment_method,
        'payment_method': payment_method,
        'sku': sku,
        'quantity': abs(_integer(_field(row, 'quantity'), default=1)) or 1,
        'price': _optional_decimal(_field(row, 'price')),
        'area': _text(_field(row, 'area')),
        'country': (_text(_field(row, 'country')) or '').upper() or None,
        'order_reference': order_reference,
        'return_shipping_cost': _optional_decimal(_field(row, 'return_shipping_cost')),
        'tax_rate': _optional_decimal(_field(row, 'tax_rate')),
    }
    record['signature'] = return_signature(record)
    return PreparedRow(record=record)


def prepare_inventory_item(row: Mapping, line: int) -> PreparedRow:
    sku = normalize_sku(_field(row, 'sku'))
    brand = _text(_field(row, 'brand'))
    if not sku or not brand:
        return PreparedRow(error=f"Row {line}: SKU and brand are required")

    record = {
        'sku': sku,
        'brand': brand,
        'category': _text(_field(row, 'category')),
        'purchase_price': to_decimal(_field(row, 'purchase_price')).quantize(CENT, rounding=ROUND_HALF_UP),
        'sell_price': to_decimal(_field(row, 'sell_price')).quantize(CENT, rounding=ROUND_HALF_UP),
        'collection': _text(_field(row, 'collection')),
    }
    return PreparedRow(record=record)


def _upload_settings() -> Dict:
    config = current_app.config
    return {
        'chunk_size': max(1, int(config.get('UPLOAD_CHUNK_SIZE', 2000))),
        'max_retries': max(0, int(config.get('UPLOAD_MAX_RETRIES', 3))),
        'backoff': float(config.get('UPLOAD_RETRY_BACKOFF', 0.5)),
    }


def _persist_in_chunks(
    session: Session,
    model,
    payloads: List[dict],
    report: Dict,
    progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    settings = _upload_settings()
    chunk_size = settings['chunk_size']
    chunks = [payloads[i:i + chunk_size] for i in range(0, len(payloads), chunk_size)]
    total_chunks = len(chunks)

    for chunk_index, chunk in enumerate(chunks, start=1):
        attempt = 0
        while True:
            try:
                # Fresh instances on every attempt; a rollback leaves the old ones detached
                session.add_all([model(**payload) for payload in chunk])
                session.commit()
                break
            except SQLAlchemyError as exc:
                session.rollback()
                attempt += 1
                if attempt > settings['max_retries']:
                    logger.error(
                        "%s chunk %d/%d failed after %d attempts: %s",
                        model.__tablename__, chunk_index, total_chunks, attempt, exc,
                    )
                    raise UploadFailed(
                        f"Upload interrupted at chunk {chunk_index}/{total_chunks}",
                        report,
                        details=str(exc),
                    )
                delay = settings['backoff'] * (2 ** (attempt - 1))
                logger.warning(
                    "%s chunk %d/%d failed (attempt %d/%d), retrying in %.1fs",
                    model.__tablename__, chunk_index, total_chunks, attempt, settings['max_retries'], delay,
                )
                sleep(delay)

        report['processed'] += len(chunk)
        if progress:
            progress(chunk_index, total_chunks, report['processed'])


def _new_report(total: int) -> Dict:
    return {'total': total, 'processed': 0, 'skipped_duplicates': 0, 'errors': []}


def ingest_sales(
    session: Session,
    rows: List[Mapping],
    progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict:
    """Validate, enrich and store a batch of sales, skipping known signatures."""
    report = _new_report(len(rows))
    report.update({'brands_from_inventory': 0, 'brands_from_mappings': 0, 'channels_from_mappings': 0})

    index = InventoryIndex.build(repository.load_inventory(session))
    learned_brands = repository.load_learned_brands(session)
    learned_channels = repository.load_learned_channels(session)
    seen = repository.existing_signatures(session, Sale)

    payloads = []
    for line, row in enumerate(rows, start=1):
        prepared = prepare_sale(row, line, index, learned_brands, learned_channels)
        if prepared.error:
            report['errors'].append(prepared.error)
            continue
        record = prepared.record
        if record['signature'] in seen:
            report['skipped_duplicates'] += 1
            continue
        seen.add(record['signature'])
        if prepared.brand_source == 'inventory':
            report['brands_from_inventory'] += 1
        elif prepared.brand_source == 'mapping':
            report['brands_from_mappings'] += 1
        if prepared.channel_source == 'mapping':
            report['channels_from_mappings'] += 1
        payloads.append(record)

    _persist_in_chunks(session, Sale, payloads, report, progress, sleep)
    logger.info(
        "Sales upload: %d stored, %d duplicates skipped, %d invalid",
        report['processed'], report['skipped_duplicates'], len(report['errors']),
    )
    return report


def ingest_returns(
    session: Session,
    rows: List[Mapping],
    progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict:
    report = _new_report(len(rows))
    seen = repository.existing_signatures(session, SaleReturn)

    payloads = []
    for line, row in enumerate(rows, start=1):
        prepared = prepare_return(row, line)
        if prepared.error:
            report['errors'].append(prepared.error)
            continue
        if prepared.record['signature'] in seen:
            report['skipped_duplicates'] += 1
            continue
        seen.add(prepared.record['signature'])
        payloads.append(prepared.record)

    _persist_in_chunks(session, SaleReturn, payloads, report, progress, sleep)
    logger.info(
        "Returns upload: %d stored, %d duplicates skipped, %d invalid",
        report['processed'], report['skipped_duplicates'], len(report['errors']),
    )
    return report


def ingest_inventory(
    session: Session,
    items: List[Mapping],
    progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict:
    """Store catalog items; SKUs already in the catalog are skipped, never overwritten."""
    report = _new_report(len(items))
    report.update({'skipped_existing': 0, 'invalid': 0, 'warnings': []})
    existing = repository.existing_inventory_skus(session)
    batch_skus = set()

    payloads = []
    for line, row in enumerate(items, start=1):
        prepared = prepare_inventory_item(row, line)
        if prepared.error:
            report['invalid'] += 1
            report['errors'].append(prepared.error)
            continue
        sku = prepared.record['sku']
        if sku in existing:
            report['skipped_existing'] += 1
            report['skipped_duplicates'] += 1
            continue
        if sku in batch_skus:
            report['skipped_duplicates'] += 1
            report['warnings'].append(f"Row {line}: duplicate SKU {sku} in upload")
            continue
        batch_skus.add(sku)
        payloads.append(prepared.record)

    _persist_in_chunks(session, InventoryItem, payloads, report, progress, sleep)
    logger.info(
        "Inventory upload: %d stored, %d existing, %d invalid",
        report['processed'], report['skipped_existing'], report['invalid'],
    )
    return report
