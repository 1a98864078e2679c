"""Read helpers that page through tables until exhaustion."""

import logging
from typing import Dict, Iterator, List, Optional, Set

from flask import current_app
from sqlalchemy.orm import Session

from retail_analytics.models import (
    BrandMapping,
    ChannelCost,
    ChannelMapping,
    InventoryItem,
    PaymentMapping,
    Sale,
    SaleReturn,
)
from retail_analytics.services.channels import resolve_return_channels, resolve_sale_channels
from retail_analytics.services.inventory_matcher import InventoryIndex

logger = logging.getLogger(__name__)


def _page_size(page_size: Optional[int]) -> int:
    if page_size:
        return page_size
    return current_app.config.get('READ_PAGE_SIZE', 1000)


def iter_rows(session: Session, model, page_size: Optional[int] = None, query=None) -> Iterator:
    """Yield every row of ``model`` using keyset pages on the primary key."""
    size = _page_size(page_size)
    base = query if query is not None else session.query(model)
    last_id = None
    pages = 0
    while True:
        page_query = base
        if last_id is not None:
            page_query = page_query.filter(model.id > last_id)
        rows = page_query.order_by(model.id.asc()).limit(size).all()
        pages += 1
        for row in rows:
            yield row
        if len(rows) < size:
            break
        last_id = rows[-1].id
    logger.debug("Read %s in %d page(s)", model.__tablename__, pages)


def load_sales(session: Session, page_size: Optional[int] = None) -> List[dict]:
    return [sale.to_dict() for sale in iter_rows(session, Sale, page_size)]


def load_returns(session: Session, page_size: Optional[int] = None) -> List[dict]:
    return [ret.to_dict() for ret in iter_rows(session, SaleReturn, page_size)]


def load_inventory(session: Session, page_size: Optional[int] = None) -> List[dict]:
    return [item.to_dict() for item in iter_rows(session, InventoryItem, page_size)]


def existing_signatures(session: Session, model, page_size: Optional[int] = None) -> Set[str]:
    """Snapshot of stored duplicate signatures, taken once per upload call."""
    return {row.signature for row in iter_rows(session, model, page_size)}


def existing_inventory_skus(session: Session, page_size: Optional[int] = None) -> Set[str]:
    return {item.sku for item in iter_rows(session, InventoryItem, page_size)}


def load_payment_mappings(session: Session) -> Dict[str, dict]:
    return {mapping.payment_method: mapping.to_dict() for mapping in session.query(PaymentMapping).all()}


def load_channel_costs(session: Session) -> Dict[str, dict]:
    return {cost.payment_method: cost.to_dict() for cost in session.query(ChannelCost).all()}


def load_learned_brands(session: Session) -> Dict[str, str]:
    return {mapping.sku_key: mapping.brand for mapping in session.query(BrandMapping).all()}


def load_learned_channels(session: Session) -> Dict[str, str]:
    return {mapping.user_key: mapping.channel for mapping in session.query(ChannelMapping).all()}


def load_resolved_sales(session: Session, index: Optional[InventoryIndex] = None) -> List[dict]:
    """
    Sales as the dashboards see them: channel resolved through the current
    payment mappings and, when an index is given, missing brands filled
    from the catalog.
    """
    sales = resolve_sale_channels(load_sales(session), load_payment_mappings(session))
    if index:
        for sale in sales:
            if not sale.get('brand') or sale.get('brand') == 'Unknown':
                match = index.match_record(sale)
                sale['brand'] = match.brand if match and match.brand else None
    return sales


def load_resolved_returns(session: Session) -> List[dict]:
    """Returns with the same read-time channel resolution as ``load_resolved_sales``."""
    return resolve_return_channels(load_returns(session), load_payment_mappings(session))
