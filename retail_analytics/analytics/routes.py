import calendar
import io
import logging
from datetime import date

from flask import current_app, jsonify, request, send_file

from retail_analytics import db
from retail_analytics.analytics import analytics_bp
from retail_analytics.errors import InvalidRequest
from retail_analytics.services import repository
from retail_analytics.services.date_ranges import calculate_yoy_change, filter_by_date_range, total_amount
from retail_analytics.services.drilldown import (
    calculate_brand_analytics,
    calculate_channel_analytics,
    calculate_country_analytics,
    calculate_document_type_analytics,
    unique_brands,
)
from retail_analytics.services.inventory_matcher import InventoryIndex
from retail_analytics.services.metrics import (
    brand_data,
    calculate_marketplace_metrics,
    calculate_metrics,
    category_data,
    marketplace_data,
    monthly_sales_with_yoy,
    sales_by_date,
    season_data,
)
from retail_analytics.services.oss import (
    calculate_vat_by_country,
    export_csv,
    export_filename,
    export_xlsx,
    oss_countries,
    oss_totals,
    period_label,
)
from retail_analytics.utils.formatting import format_currency_eur, format_percent

logger = logging.getLogger(__name__)

EXPORT_FORMATS = {
    'csv': 'text/csv',
    'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
}


def _range_args():
    return (
        request.args.get('range', 'all'),
        request.args.get('start'),
        request.args.get('end'),
    )


def _load_data():
    """Catalog index, read-time resolved sales and returns, unfiltered."""
    index = InventoryIndex.build(repository.load_inventory(db.session))
    sales = repository.load_resolved_sales(db.session, index)
    returns = repository.load_resolved_returns(db.session)
    return index, sales, returns


def _filtered():
    date_range, start, end = _range_args()
    index, sales, returns = _load_data()
    return (
        index,
        filter_by_date_range(sales, date_range, start, end),
        filter_by_date_range(returns, date_range, start, end),
    )


def _returns_total(records):
    return abs(total_amount(records))


@analytics_bp.route('/metrics', methods=['GET'])
def metrics():
    date_range, start, end = _range_args()
    index, sales, returns = _load_data()
    current_sales = filter_by_date_range(sales, date_range, start, end)
    current_returns = filter_by_date_range(returns, date_range, start, end)

    result = calculate_metrics(current_sales, current_returns, index=index)
    result['yoy'] = {
        'sales': calculate_yoy_change(sales, date_range, start, end),
        'returns': calculate_yoy_change(returns, date_range, start, end, metric_fn=_returns_total),
    }
    result['charts'] = {
        'sales_by_date': sales_by_date(current_sales),
        'marketplaces': marketplace_data(current_sales),
        'categories': category_data(current_sales),
        'brands': brand_data(current_sales, index=index),
        'seasons': season_data(current_sales),
        'monthly': monthly_sales_with_yoy(sales),
    }
    result['formatted'] = {
        'total_sales': format_currency_eur(result['total_sales']),
        'total_returns': format_currency_eur(result['total_returns']),
        'return_rate': format_percent(result['return_rate']),
        'margin': format_percent(result['margin']),
    }
    return jsonify(dict(result, success=True, range=date_range))


@analytics_bp.route('/marketplaces', methods=['GET'])
def marketplaces():
    index, sales, returns = _filtered()
    result = calculate_marketplace_metrics(
        sales,
        returns,
        cost_settings=repository.load_channel_costs(db.session),
        default_tax_rate=current_app.config.get('DEFAULT_TAX_RATE', 22),
        index=index,
    )
    return jsonify(dict(result, success=True))


@analytics_bp.route('/countries', methods=['GET'])
def countries():
    _, sales, returns = _filtered()
    return jsonify({'success': True, 'countries': calculate_country_analytics(sales, returns)})


@analytics_bp.route('/channels', methods=['GET'])
def channels():
    _, sales, returns = _filtered()
    return jsonify({'success': True, 'channels': calculate_channel_analytics(sales, returns)})


@analytics_bp.route('/document-types', methods=['GET'])
def document_types():
    _, sales, returns = _filtered()
    return jsonify({'success': True, 'document_types': calculate_document_type_analytics(sales, returns)})


@analytics_bp.route('/brands', methods=['GET'])
def brands():
    index, sales, _ = _filtered()
    return jsonify({'success': True, 'brands': unique_brands(sales, index)})


@analytics_bp.route('/brands/<path:brand>', methods=['GET'])
def brand_detail(brand):
    index, sales, _ = _filtered()
    return jsonify(dict(calculate_brand_analytics(sales, brand, index), success=True))


def _oss_period():
    """``start``/``end`` dates, or a whole ``year``/``month``."""
    start, end = request.args.get('start'), request.args.get('end')
    if start and end:
        return {'start': start, 'end': end}

    year = request.args.get('year', type=int)
    month = request.args.get('month', type=int)
    if year and month and 1 <= month <= 12:
        last_day = calendar.monthrange(year, month)[1]
        return {'start': date(year, month, 1).isoformat(), 'end': date(year, month, last_day).isoformat()}
    raise InvalidRequest('start and end (or year and month) are required')


def _oss_rows(period):
    returns = repository.load_resolved_returns(db.session)
    sales = repository.load_sales(db.session)
    return calculate_vat_by_country(sales, returns, period)


@analytics_bp.route('/oss', methods=['GET'])
def oss_report():
    period = _oss_period()
    rows = _oss_rows(period)
    return jsonify({
        'success': True,
        'period': dict(period, label=period_label(period)),
        'countries': rows,
        'totals': oss_totals(rows),
        'rates': oss_countries(),
    })


@analytics_bp.route('/oss/export', methods=['GET'])
def oss_export():
    period = _oss_period()
    export_format = (request.args.get('format') or 'csv').lower()
    if export_format not in EXPORT_FORMATS:
        raise InvalidRequest(f'Unsupported export format: {export_format}', details='Use csv or xlsx')

    rows = _oss_rows(period)
    content = export_csv(rows, period) if export_format == 'csv' else export_xlsx(rows, period)
    filename = export_filename(period, export_format)
    logger.info("OSS export %s: %d countries", filename, len(rows))
    return send_file(
        io.BytesIO(content),
        mimetype=EXPORT_FORMATS[export_format],
        as_attachment=True,
        download_name=filename,
    )
