import io
from datetime import datetime

import openpyxl
import pytest

from retail_analytics import db
from retail_analytics.errors import UploadFailed
from retail_analytics.models import InventoryItem, Sale
from retail_analytics.services import ingestion


def _post_sales(client, sales):
    response = client.post('/api/sales/bulk', json={'sales': sales})
    assert response.status_code == 200, response.get_json()
    return response.get_json()


def _post_inventory(client, items):
    response = client.post('/api/inventory', json={'inventory': items, 'chunk': 1, 'total_chunks': 1})
    assert response.status_code == 200, response.get_json()
    return response.get_json()


def test_empty_sales_list(client):
    body = client.get('/api/sales').get_json()
    assert body == {'success': True, 'sales': [], 'count': 0}


def test_bulk_upload_reports_counts(client, make_sale):
    body = _post_sales(client, [make_sale(), make_sale(date='garbage')])

    assert body['success'] is True
    assert body['processed'] == 1
    assert body['errors'] == ['Row 2: invalid or missing date']

    again = _post_sales(client, [make_sale()])
    assert again['skipped_duplicates'] == 1
    assert client.get('/api/sales').get_json()['count'] == 1


def test_bulk_upload_requires_an_array(client):
    response = client.post('/api/sales/bulk', json={'sales': 'nope'})

    assert response.status_code == 400
    assert response.get_json() == {'success': False, 'error': 'sales must be an array'}


def test_single_sale(client, make_sale):
    response = client.post('/api/sales', json=make_sale())
    assert response.status_code == 201

    response = client.post('/api/sales', json=make_sale(sku=None))
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Row 1: missing SKU'


def test_upload_failure_returns_partial_report(client, make_sale, monkeypatch):
    def _failing(session, rows, **kwargs):
        raise UploadFailed('Upload interrupted at chunk 2/4', {'total': 8, 'processed': 2,
                                                                 'skipped_duplicates': 0, 'errors': []})

    monkeypatch.setattr(ingestion, 'ingest_sales', _failing)
    response = client.post('/api/sales/bulk', json={'sales': [make_sale()]})

    assert response.status_code == 500
    body = response.get_json()
    assert body['success'] is False
    assert body['processed'] == 2


def test_payment_mapping_applies_to_existing_sales(client, make_sale):
    _post_sales(client, [make_sale(payment_method='Cettire', channel='ecommerce')])

    unmapped = client.get('/api/sales/unmapped-payment-methods').get_json()
    assert unmapped['methods'][0]['payment_method'] == 'Cettire'
    assert unmapped['methods'][0]['suggested_macro_area'] == 'Marketplace'
    assert client.get('/api/sales').get_json()['sales'][0]['channel'] == 'ecommerce'

    response = client.post('/api/sales/payment-mappings', json={'mappings': [
        {'payment_method': 'Cettire', 'macro_area': 'Marketplace'},
    ]})
    assert response.get_json()['saved'] == 1

    assert client.get('/api/sales').get_json()['sales'][0]['channel'] == 'marketplace'
    assert client.get('/api/sales/unmapped-payment-methods').get_json()['count'] == 0
    mappings = client.get('/api/sales/payment-mappings').get_json()
    assert mappings['mappings'] == [{'payment_method': 'Cettire', 'macro_area': 'Marketplace', 'channel': 'marketplace'}]


def test_payment_mapping_validation(client):
    response = client.post('/api/sales/payment-mappings', json={'PayPal': {'macro_area': 'Negozio'}})

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid macro area for PayPal: Negozio'


def test_channel_costs_round_trip(client):
    response = client.post('/api/sales/channel-costs', json={'Zalando': {'commissionPercent': 15, 'fixedCost': 1.5}})
    assert response.status_code == 200

    costs = client.get('/api/sales/channel-costs').get_json()['costs']
    assert costs[0]['payment_method'] == 'Zalando'
    assert costs[0]['commission_percent'] == 15.0
    assert costs[0]['fixed_cost'] == 1.5
    assert costs[0]['apply_on_vat_included'] is True


def test_channel_corrections(client, make_sale):
    _post_sales(client, [
        make_sale(sku='S1', channel='negozio', user='Carla'),
        make_sale(sku='S2', channel=None, user='walk-in'),
    ])
    ids = {sale['sku']: sale['id'] for sale in client.get('/api/sales').get_json()['sales']}

    diagnostics = client.get('/api/sales/channel-diagnostics').get_json()
    assert diagnostics['summary']['problematic_records'] == 2
    assert diagnostics['suggestions'][0]['suggested_channel'] == 'negozio_donna'

    bad = client.post('/api/sales/fix-channels', json={'record_ids': [ids['S1']], 'new_channel': 'shop'})
    assert bad.status_code == 400

    fixed = client.post('/api/sales/fix-channels', json={'record_ids': [ids['S1'], 999], 'new_channel': 'negozio_donna'})
    assert fixed.get_json()['updated'] == 1

    updated = client.post('/api/sales/bulk-update', json={'updates': [
        {'id': ids['S2'], 'channel': 'ecommerce', 'brand': 'Moncler'},
        {'id': 12345, 'brand': 'Ghost'},
    ]}).get_json()
    assert updated['updated'] == 1
    assert updated['missing'] == [12345]

    orphans = client.get('/api/sales/orphans').get_json()
    assert orphans['missing_brand_count'] == 1
    assert orphans['invalid_channel_count'] == 0


def test_learned_mappings_and_brand_backfill(client, make_sale):
    _post_sales(client, [make_sale(sku='abc123'), make_sale(sku='LRN-1', amount=5)])

    learned = client.post('/api/sales/learn', json={
        'brand_mappings': [{'sku': 'lrn1', 'brand': 'Prada'}],
        'channel_mappings': [{'user': 'Carla', 'channel': 'negozio_donna'}, {'user': 'x', 'channel': 'bad'}],
    }).get_json()
    assert learned['learned'] == 2

    _post_inventory(client, [{'sku': 'ABC-123', 'brand': 'Nike', 'purchase_price': 50}])

    result = client.post('/api/sales/update-brands-from-inventory').get_json()
    assert result == {'success': True, 'checked': 2, 'updated': 2}
    brands = {sale['sku']: sale['brand'] for sale in client.get('/api/sales').get_json()['sales']}
    assert brands == {'ABC123': 'Nike', 'LRN-1': 'Prada'}


def test_duplicates_listing_and_removal(app, client):
    for created in (datetime(2024, 7, 2), datetime(2024, 7, 1), datetime(2024, 7, 3)):
        db.session.add(Sale(date=datetime(2024, 7, 10), sku='DUP', product_id='DUP', quantity=1, price=10,
                            amount=10, channel='ecommerce', signature='x', created_at=created))
    db.session.add(Sale(date=datetime(2024, 7, 10), sku='ONE', product_id='ONE', quantity=1, price=10,
                        amount=10, channel='ecommerce', signature='y'))
    db.session.commit()

    listing = client.get('/api/sales/duplicates').get_json()
    assert listing['group_count'] == 1
    assert listing['duplicate_count'] == 2

    removed = client.post('/api/sales/remove-duplicates', json={'type': 'sales'}).get_json()
    assert removed['removed'] == 2
    remaining = db.session.query(Sale).filter_by(sku='DUP').one()
    assert remaining.created_at == datetime(2024, 7, 1)

    assert client.get('/api/sales/duplicates?type=orders').status_code == 400


def test_diagnose_and_stats(client, make_sale):
    _post_inventory(client, [{'sku': 'ABC-123', 'brand': 'Nike', 'purchase_price': 50}])
    _post_sales(client, [make_sale(sku='abc123'), make_sale(sku='MISSING', date='2024-08-01')])

    diagnosis = client.get('/api/sales/diagnose-skus?limit=5').get_json()
    assert diagnosis['matched'] == 1
    assert diagnosis['unmatched_samples'][0]['sku'] == 'MISSING'

    stats = client.get('/api/sales/stats').get_json()
    assert stats['total'] == 2
    assert [m['month'] for m in stats['by_month']] == ['2024-07', '2024-08']
    assert stats['returns'] == 0


def test_delete_sales(client, make_sale):
    _post_sales(client, [make_sale(), make_sale(sku='OTHER')])
    sale_id = client.get('/api/sales').get_json()['sales'][0]['id']

    assert client.delete(f'/api/sales/{sale_id}').get_json()['deleted'] == sale_id
    missing = client.delete(f'/api/sales/{sale_id}')
    assert missing.status_code == 404
    assert missing.get_json()['success'] is False

    assert client.delete('/api/sales/all').get_json()['deleted'] == 1


def test_returns_endpoints(client, make_return):
    body = client.post('/api/sales/returns/bulk', json={'returns': [make_return()]}).get_json()
    assert body['processed'] == 1

    returns = client.get('/api/sales/returns').get_json()['returns']
    assert returns[0]['amount'] == -100.0
    assert returns[0]['reason'] == 'RESO'


def test_store_file_upload(client):
    csv_bytes = (
        "Data;Utente;SKU;Quant.;Prezzo\n"
        "10/07/2024;Carla;abc-123;2;49,90\n"
        "11/07/2024;Nobody;X1;1;10\n"
    ).encode('utf-8')

    response = client.post(
        '/api/sales/upload',
        data={'file': (io.BytesIO(csv_bytes), 'negozio.csv')},
        content_type='multipart/form-data',
    )

    body = response.get_json()
    assert response.status_code == 200
    assert body['format'] == 'store'
    assert body['processed'] == 1
    assert body['errors'][0].startswith("Row 3: unknown user 'Nobody'")
    sale = client.get('/api/sales').get_json()['sales'][0]
    assert sale['channel'] == 'negozio_donna'
    assert sale['amount'] == 99.8


def test_ecommerce_file_upload_stores_returns(client):
    csv_bytes = (
        "Documento,Numero,Data,Nazione,Metodo pagamento,SKU,Qty,Prezzo\n"
        "RICEVUTA,1,10/07/2024,DE,PayPal,A-1,1,100.00\n"
        "RESO,2,12/07/2024,DE,PayPal,A-1,1,100.00\n"
    ).encode('utf-8')

    body = client.post(
        '/api/sales/upload',
        data={'file': (io.BytesIO(csv_bytes), 'ordini.csv')},
        content_type='multipart/form-data',
    ).get_json()

    assert body['format'] == 'ecommerce'
    assert body['processed'] == 1
    assert body['returns']['processed'] == 1


def test_upload_rejects_unknown_layout(client):
    response = client.post(
        '/api/sales/upload',
        data={'file': (io.BytesIO(b"a,b\n1,2\n"), 'random.csv')},
        content_type='multipart/form-data',
    )
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Unrecognised file layout'

    response = client.post('/api/sales/upload', data={}, content_type='multipart/form-data')
    assert response.get_json()['error'] == 'No file uploaded'


def test_inventory_pagination_and_filters(app, client):
    db.session.add_all([
        InventoryItem(sku=f'SKU-{i:02d}', brand='Nike' if i % 2 else 'Gucci',
                      category=None if i < 3 else 'calzature', purchase_price=10, sell_price=20)
        for i in range(25)
    ])
    db.session.commit()

    body = client.get('/api/inventory?limit=5&page=2').get_json()
    assert body['pagination'] == {
        'page': 2, 'limit': 10, 'total': 25, 'total_pages': 3, 'has_next': True, 'has_prev': True,
    }
    assert body['inventory'][0]['sku'] == 'SKU-10'
    assert body['filters'] == {'brands': ['Gucci', 'Nike'], 'categories': ['calzature']}

    assert client.get('/api/inventory?limit=500').get_json()['pagination']['limit'] == 100
    assert client.get('/api/inventory?category=empty').get_json()['pagination']['total'] == 3
    assert client.get('/api/inventory?brand=Nike').get_json()['pagination']['total'] == 12
    assert client.get('/api/inventory?search=sku-2').get_json()['pagination']['total'] == 5
    assert client.get('/api/inventory/count').get_json()['count'] == 25


def test_inventory_chunk_with_only_invalid_rows(client):
    response = client.post('/api/inventory', json={'inventory': [{'sku': 'NO-BRAND'}], 'chunk': 2, 'total_chunks': 3})

    assert response.status_code == 400
    body = response.get_json()
    assert body['success'] is False
    assert body['chunk'] == 2
    assert body['invalid'] == 1


def test_inventory_file_upload_and_delete(client):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(['SKU', 'Brand', 'Prezzo di acquisto', 'Prezzo di vendita'])
    ws.append(['ABC-123', 'Nike', 50, 120])
    ws.append(['DEF-456', 'Gucci', 80, None])
    buffer = io.BytesIO()
    wb.save(buffer)

    body = client.post(
        '/api/inventory/upload',
        data={'file': (io.BytesIO(buffer.getvalue()), 'catalogo.xlsx')},
        content_type='multipart/form-data',
    ).get_json()

    assert body['processed'] == 2
    assert body['warnings'] == ['Row 3: no sell price, stored as 0']

    item_id = client.get('/api/inventory').get_json()['inventory'][0]['id']
    assert client.delete(f'/api/inventory/{item_id}').status_code == 200
    assert client.delete(f'/api/inventory/{item_id}').status_code == 404
    assert client.delete('/api/inventory').get_json()['deleted'] == 1


def test_metrics_end_to_end_margin(client, make_sale, make_return):
    _post_inventory(client, [{'sku': 'ABC-123', 'brand': 'Nike', 'purchase_price': 50}])
    _post_sales(client, [make_sale(sku='abc123', quantity=2, price=100, amount=200)])
    client.post('/api/sales/returns/bulk', json={'returns': [
        make_return(amount=-100),
        make_return(order_reference='ORD-2', amount=20),
    ]})

    body = client.get('/api/analytics/metrics').get_json()

    assert body['success'] is True
    assert body['total_sales'] == 200.0
    assert body['total_cost'] == 100.0
    assert body['margin'] == 50.0
    assert body['total_returns'] == 80.0
    assert body['sales_by_brand'] == {'Nike': 200.0}
    assert body['formatted']['margin'] == '50,0%'
    assert body['formatted']['total_sales'] == '€ 200,00'
    assert set(body['yoy']) == {'sales', 'returns'}
    assert set(body['charts']) == {'sales_by_date', 'marketplaces', 'categories', 'brands', 'seasons', 'monthly'}


def test_metrics_without_inventory_has_no_margin(client, make_sale):
    _post_sales(client, [make_sale()])

    body = client.get('/api/analytics/metrics?range=custom&start=2024-07-01&end=2024-07-31').get_json()

    assert body['margin'] is None
    assert body['formatted']['margin'] == 'N/D'
    assert body['sales_count'] == 1
    assert client.get('/api/analytics/metrics?range=custom&start=2024-08-01&end=2024-08-31').get_json()['sales_count'] == 0


def test_marketplace_endpoint(client, make_sale):
    client.post('/api/sales/channel-costs', json=[{'payment_method': 'Zalando', 'commission_percent': 10}])
    _post_sales(client, [
        make_sale(channel='marketplace', payment_method='Zalando', amount=100, order_reference='Z1'),
        make_sale(sku='OTHER', channel='ecommerce', amount=50),
    ])

    body = client.get('/api/analytics/marketplaces').get_json()

    assert [row['name'] for row in body['marketplaces']] == ['Zalando']
    assert body['marketplaces'][0]['total_commissions'] == 10.0
    assert body['totals']['net_from_channel'] == 90.0


def test_mapping_added_after_upload_reclassifies_returns(client, make_sale, make_return):
    _post_sales(client, [make_sale(payment_method='Zalando', order_reference='Z1')])
    client.post('/api/sales/returns/bulk', json={'returns': [make_return(payment_method='Zalando')]})
    client.post('/api/sales/payment-mappings', json={'mappings': [
        {'payment_method': 'Zalando', 'macro_area': 'Marketplace'},
    ]})
    client.post('/api/sales/channel-costs', json={'Zalando': {'return_cost': 5}})

    zalando = client.get('/api/analytics/marketplaces').get_json()['marketplaces'][0]
    assert zalando['name'] == 'Zalando'
    assert zalando['total_returns'] == 100.0
    assert zalando['total_return_costs'] == 5.0
    assert zalando['net_from_channel'] == 95.0

    channels = client.get('/api/analytics/channels').get_json()['channels']
    assert [row['channel'] for row in channels] == ['Zalando']
    assert channels[0]['sales_amount'] == 100.0
    assert channels[0]['returns_amount'] == 100.0

    assert client.get('/api/sales/returns').get_json()['returns'][0]['channel'] == 'marketplace'


def test_drilldown_endpoints(client, make_sale, make_return):
    _post_sales(client, [
        make_sale(country='DE', documento='RICEVUTA', numero='1', brand='Nike'),
        make_sale(sku='S2', country='FR', channel='negozio_donna', amount=70),
    ])
    client.post('/api/sales/returns/bulk', json={'returns': [make_return(country='DE', amount=-30)]})

    countries = client.get('/api/analytics/countries').get_json()['countries']
    assert [row['country'] for row in countries] == ['DE']
    assert countries[0]['net_amount'] == 70.0

    channels = client.get('/api/analytics/channels').get_json()['channels']
    assert channels[0]['channel'] == 'ecommerce'

    document_types = client.get('/api/analytics/document-types').get_json()['document_types']
    assert {row['document_type'] for row in document_types} == {'RICEVUTA', 'VENDITA', 'RESO'}

    assert client.get('/api/analytics/brands').get_json()['brands'] == ['Nike']
    nike = client.get('/api/analytics/brands/Nike').get_json()
    assert nike['total_amount'] == 100.0
    assert nike['by_country'][0]['country_name'] == 'Germania'


def test_oss_report_and_exports(client, make_sale):
    _post_sales(client, [
        make_sale(country='DE', documento='RICEVUTA', numero='1', amount=121, price=121),
        make_sale(sku='F1', country='DE', documento='FATTURA', numero='2', amount=500, price=500),
    ])

    body = client.get('/api/analytics/oss?start=2024-07-01&end=2024-07-31').get_json()
    germany = body['countries'][0]
    assert germany['base_amount'] == 121.0
    assert germany['vat_rate'] == 19
    assert germany['vat_amount'] == 22.99
    assert body['totals']['vat_amount'] == 22.99
    assert body['period']['label'] == '2024-07-01 - 2024-07-31'

    by_month = client.get('/api/analytics/oss?year=2024&month=7').get_json()
    assert by_month['countries'][0]['base_amount'] == 121.0

    csv_response = client.get('/api/analytics/oss/export?start=2024-07-01&end=2024-07-31&format=csv')
    assert csv_response.status_code == 200
    assert 'OSS_2024_07.csv' in csv_response.headers['Content-Disposition']
    assert b'Germania' in csv_response.data

    xlsx_response = client.get('/api/analytics/oss/export?year=2024&month=7&format=xlsx')
    sheet = openpyxl.load_workbook(io.BytesIO(xlsx_response.data)).active
    assert sheet['B2'].value == 'DE'


@pytest.mark.parametrize('url', [
    '/api/analytics/oss',
    '/api/analytics/oss/export?start=2024-07-01&end=2024-07-31&format=pdf',
])
def test_oss_bad_requests(client, url):
    response = client.get(url)
    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_unknown_route_uses_error_envelope(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert response.get_json()['success'] is False
