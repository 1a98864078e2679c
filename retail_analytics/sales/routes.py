import logging

from flask import jsonify, request

from retail_analytics import db
from retail_analytics.errors import InvalidRequest, RecordNotFound
from retail_analytics.models import ChannelCost, PaymentMapping, Sale, SaleReturn
from retail_analytics.sales import sales_bp
from retail_analytics.services import corrections, ingestion, repository
from retail_analytics.services.channels import (
    MACRO_AREAS,
    channel_diagnostics,
    suggest_channel_fixes,
    unmapped_method_summary,
)
from retail_analytics.services.file_import import (
    EcommerceAdapter,
    StoreSalesAdapter,
    detect_format,
    read_upload,
)
from retail_analytics.services.inventory_matcher import InventoryIndex, diagnose_skus
from retail_analytics.services.metrics import sales_stats

logger = logging.getLogger(__name__)


def _json_body(allow_list=False):
    payload = request.get_json(silent=True)
    if payload is None:
        raise InvalidRequest('Request body must be JSON')
    if not isinstance(payload, dict) and not (allow_list and isinstance(payload, list)):
        raise InvalidRequest('Request body must be a JSON object')
    return payload


def _list_field(payload, name):
    rows = payload.get(name) if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        raise InvalidRequest(f'{name} must be an array')
    return rows


def _upload_response(report, status_code=200):
    return jsonify(dict(report, success=True)), status_code


@sales_bp.route('', methods=['GET'])
def list_sales():
    index = InventoryIndex.build(repository.load_inventory(db.session))
    sales = repository.load_resolved_sales(db.session, index)
    return jsonify({'success': True, 'sales': sales, 'count': len(sales)})


@sales_bp.route('', methods=['POST'])
def create_sale():
    payload = _json_body()
    report = ingestion.ingest_sales(db.session, [payload])
    if report['errors']:
        raise InvalidRequest(report['errors'][0])
    return _upload_response(report, 201 if report['processed'] else 200)


@sales_bp.route('/bulk', methods=['POST'])
def bulk_sales():
    rows = _list_field(_json_body(), 'sales')
    report = ingestion.ingest_sales(db.session, rows)
    return _upload_response(report)


@sales_bp.route('/<int:sale_id>', methods=['DELETE'])
def delete_sale(sale_id):
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise RecordNotFound(f'Sale {sale_id} not found')
    db.session.delete(sale)
    db.session.commit()
    return jsonify({'success': True, 'deleted': sale_id})


@sales_bp.route('/all', methods=['DELETE'])
def delete_all_sales():
    deleted = corrections.delete_all(db.session, Sale)
    if request.args.get('include_returns') in ('1', 'true'):
        deleted += corrections.delete_all(db.session, SaleReturn)
    return jsonify({'success': True, 'deleted': deleted})


@sales_bp.route('/returns', methods=['GET'])
def list_returns():
    returns = repository.load_resolved_returns(db.session)
    return jsonify({'success': True, 'returns': returns, 'count': len(returns)})


@sales_bp.route('/returns/bulk', methods=['POST'])
def bulk_returns():
    rows = _list_field(_json_body(), 'returns')
    report = ingestion.ingest_returns(db.session, rows)
    return _upload_response(report)


@sales_bp.route('/payment-mappings', methods=['GET'])
def get_payment_mappings():
    mappings = [mapping.to_dict() for mapping in db.session.query(PaymentMapping).order_by(PaymentMapping.payment_method)]
    return jsonify({'success': True, 'mappings': mappings, 'macro_areas': list(MACRO_AREAS)})


@sales_bp.route('/payment-mappings', methods=['POST'])
def save_payment_mappings():
    payload = _json_body(allow_list=True)
    entries = payload.get('mappings', payload) if isinstance(payload, dict) else payload
    saved = corrections.save_payment_mappings(db.session, entries)
    return jsonify({'success': True, 'mappings': saved, 'saved': len(saved)})


@sales_bp.route('/unmapped-payment-methods', methods=['GET'])
def unmapped_payment_methods():
    sales = repository.load_sales(db.session)
    methods = unmapped_method_summary(sales, repository.load_payment_mappings(db.session))
    return jsonify({'success': True, 'methods': methods, 'count': len(methods)})


@sales_bp.route('/channel-costs', methods=['GET'])
def get_channel_costs():
    costs = [cost.to_dict() for cost in db.session.query(ChannelCost).order_by(ChannelCost.payment_method)]
    return jsonify({'success': True, 'costs': costs})


@sales_bp.route('/channel-costs', methods=['POST'])
def save_channel_costs():
    payload = _json_body(allow_list=True)
    entries = payload.get('costs', payload) if isinstance(payload, dict) else payload
    saved = corrections.save_channel_costs(db.session, entries)
    return jsonify({'success': True, 'costs': saved, 'saved': len(saved)})


@sales_bp.route('/fix-channels', methods=['POST'])
def fix_channels():
    payload = _json_body()
    updated = corrections.fix_channels(db.session, payload.get('record_ids'), payload.get('new_channel'))
    return jsonify({'success': True, 'updated': updated})


@sales_bp.route('/channel-diagnostics', methods=['GET'])
def channel_report():
    sales = repository.load_sales(db.session)
    report = channel_diagnostics(sales)
    report['suggestions'] = suggest_channel_fixes(sales, repository.load_learned_channels(db.session))
    return jsonify(dict(report, success=True))


@sales_bp.route('/bulk-update', methods=['POST'])
def bulk_update():
    result = corrections.bulk_update(db.session, _list_field(_json_body(), 'updates'))
    return jsonify(dict(result, success=True))


@sales_bp.route('/learn', methods=['POST'])
def learn():
    payload = _json_body()
    learned = corrections.learn_mappings(
        db.session,
        brand_mappings=payload.get('brand_mappings'),
        channel_mappings=payload.get('channel_mappings'),
    )
    return jsonify({'success': True, 'learned': learned})


@sales_bp.route('/update-brands-from-inventory', methods=['POST'])
def update_brands_from_inventory():
    result = corrections.update_brands_from_inventory(db.session)
    return jsonify(dict(result, success=True))


@sales_bp.route('/orphans', methods=['GET'])
def orphans():
    limit = request.args.get('limit', type=int)
    result = corrections.find_orphans(repository.load_sales(db.session), limit)
    return jsonify(dict(result, success=True))


@sales_bp.route('/duplicates', methods=['GET'])
def duplicates():
    result = corrections.list_duplicates(db.session, request.args.get('type', 'sales'))
    return jsonify(dict(result, success=True))


@sales_bp.route('/remove-duplicates', methods=['POST'])
def remove_duplicates():
    payload = request.get_json(silent=True) or {}
    kind = payload.get('type') or request.args.get('type', 'sales')
    result = corrections.remove_duplicates(db.session, kind)
    return jsonify(dict(result, success=True))


@sales_bp.route('/diagnose-skus', methods=['GET'])
def diagnose():
    limit = request.args.get('limit', 20, type=int)
    index = InventoryIndex.build(repository.load_inventory(db.session))
    result = diagnose_skus(repository.load_sales(db.session), index, limit)
    return jsonify(dict(result, success=True))


@sales_bp.route('/stats', methods=['GET'])
def stats():
    sales = repository.load_resolved_sales(db.session)
    result = sales_stats(sales)
    result['returns'] = db.session.query(SaleReturn).count()
    return jsonify(dict(result, success=True))


@sales_bp.route('/upload', methods=['POST'])
def upload():
    """Import a store or e-commerce export; the format is detected from the header row."""
    rows = read_upload(request.files.get('file'))
    file_format = detect_format(list(rows[0].keys()))

    if file_format == 'store':
        sales, errors = StoreSalesAdapter.parse_rows(rows, repository.load_learned_channels(db.session))
        returns = []
    elif file_format == 'ecommerce':
        sales, returns, errors = EcommerceAdapter.parse_rows(rows, repository.load_payment_mappings(db.session))
    else:
        raise InvalidRequest(
            'Unrecognised file layout',
            details='Expected store columns (Data, Utente, SKU, Quant., Prezzo) or an e-commerce export (Documento, Numero, ...)',
        )

    if not sales and not returns:
        raise InvalidRequest('No valid rows found', details='; '.join(errors[:10]))

    report = ingestion.ingest_sales(db.session, sales)
    report['errors'] = errors + report['errors']
    report['format'] = file_format
    if returns:
        report['returns'] = ingestion.ingest_returns(db.session, returns)

    logger.info("Upload %s: %d sales, %d returns", file_format, len(sales), len(returns))
    return _upload_response(report)
