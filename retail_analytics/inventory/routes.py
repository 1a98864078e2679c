import logging
import math

from flask import jsonify, request
from sqlalchemy import func, or_

from retail_analytics import db
from retail_analytics.errors import InvalidRequest, RecordNotFound
from retail_analytics.inventory import inventory_bp
from retail_analytics.models import InventoryItem
from retail_analytics.services import corrections, ingestion
from retail_analytics.services.file_import import InventoryAdapter, read_upload

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MIN_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _pagination_args():
    page = max(1, request.args.get('page', 1, type=int) or 1)
    limit = request.args.get('limit', DEFAULT_PAGE_SIZE, type=int) or DEFAULT_PAGE_SIZE
    return page, min(max(limit, MIN_PAGE_SIZE), MAX_PAGE_SIZE)


def _filtered_query():
    query = db.session.query(InventoryItem)

    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(
            InventoryItem.sku.ilike(pattern),
            InventoryItem.brand.ilike(pattern),
            InventoryItem.category.ilike(pattern),
        ))

    brand = (request.args.get('brand') or '').strip()
    if brand and brand != 'all':
        query = query.filter(InventoryItem.brand == brand)

    category = (request.args.get('category') or '').strip()
    if category == 'empty':
        query = query.filter(or_(InventoryItem.category.is_(None), InventoryItem.category == ''))
    elif category and category != 'all':
        query = query.filter(InventoryItem.category == category)

    return query


def _distinct(column):
    rows = db.session.query(column).filter(column.isnot(None), column != '').distinct().order_by(column).all()
    return [value for (value,) in rows]


@inventory_bp.route('', methods=['GET'])
def list_inventory():
    page, limit = _pagination_args()
    query = _filtered_query()
    total = query.count()
    items = query.order_by(InventoryItem.sku.asc()).offset((page - 1) * limit).limit(limit).all()
    total_pages = math.ceil(total / limit) if total else 0

    return jsonify({
        'success': True,
        'inventory': [item.to_dict() for item in items],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'total_pages': total_pages,
            'has_next': page < total_pages,
            'has_prev': page > 1,
        },
        'filters': {
            'brands': _distinct(InventoryItem.brand),
            'categories': _distinct(InventoryItem.category),
        },
    })


@inventory_bp.route('', methods=['POST'])
def upload_chunk():
    """
    Store one chunk of catalog items sent by the client.

    Body: ``{"inventory": [...], "chunk": 1, "total_chunks": 4}``. The chunk
    numbers are only echoed back and logged.
    """
    payload = request.get_json(silent=True)
    items = payload.get('inventory') if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise InvalidRequest('inventory must be an array')

    chunk = payload.get('chunk', 1)
    total_chunks = payload.get('total_chunks', 1)
    report = ingestion.ingest_inventory(db.session, items)
    logger.info("Inventory chunk %s/%s: %d stored", chunk, total_chunks, report['processed'])

    body = dict(report, success=True, chunk=chunk, total_chunks=total_chunks)
    if report['processed'] == 0 and report['errors']:
        body['success'] = False
        body['error'] = 'No valid inventory rows in this chunk'
        return jsonify(body), 400
    return jsonify(body)


@inventory_bp.route('/upload', methods=['POST'])
def upload_file():
    rows = read_upload(request.files.get('file'))
    if not InventoryAdapter.detect(list(rows[0].keys())):
        raise InvalidRequest(
            'Unrecognised inventory layout',
            details=f"Required columns: {', '.join(InventoryAdapter.REQUIRED)}",
        )

    items, errors, warnings = InventoryAdapter.parse_rows(rows)
    if not items:
        raise InvalidRequest('No valid inventory rows found', details='; '.join(errors[:10]))

    report = ingestion.ingest_inventory(db.session, items)
    report['errors'] = errors + report['errors']
    report['warnings'] = warnings + report['warnings']
    return jsonify(dict(report, success=True))


@inventory_bp.route('/count', methods=['GET'])
def count():
    total = db.session.query(func.count(InventoryItem.id)).scalar()
    return jsonify({'success': True, 'count': total})


@inventory_bp.route('/<int:item_id>', methods=['DELETE'])
def delete_item(item_id):
    item = db.session.get(InventoryItem, item_id)
    if item is None:
        raise RecordNotFound(f'Inventory item {item_id} not found')
    db.session.delete(item)
    db.session.commit()
    return jsonify({'success': True, 'deleted': item_id})


@inventory_bp.route('', methods=['DELETE'])
def delete_all():
    deleted = corrections.delete_all(db.session, InventoryItem)
    return jsonify({'success': True, 'deleted': deleted})
