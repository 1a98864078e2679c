"""
VAT One-Stop-Shop (OSS) report.

Only receipts (``RICEVUTA``) and returns tagged ``RESO`` are fiscal
documents covered by OSS; everything else is left out whatever its date.
The home country (Italy) is not an OSS destination.
"""

import csv
import io
import logging
from collections import OrderedDict
from datetime import datetime, time
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from retail_analytics.utils.normalize import money, quantize_money, to_datetime, to_decimal

logger = logging.getLogger(__name__)

HOME_COUNTRY = 'IT'
OSS_SALE_DOCUMENT = 'RICEVUTA'
OSS_RETURN_REASON = 'RESO'

OSS_COUNTRIES = OrderedDict([
    ('AT', ('Austria', 20)),
    ('BE', ('Belgio', 21)),
    ('BG', ('Bulgaria', 20)),
    ('CY', ('Cipro', 19)),
    ('HR', ('Croazia', 25)),
    ('CZ', ('Repubblica Ceca', 21)),
    ('DK', ('Danimarca', 25)),
    ('EE', ('Estonia', 20)),
    ('FI', ('Finlandia', 24)),
    ('FR', ('Francia', 20)),
    ('DE', ('Germania', 19)),
    ('GR', ('Grecia', 24)),
    ('HU', ('Ungheria', 27)),
    ('IE', ('Irlanda', 23)),
    ('LV', ('Lettonia', 21)),
    ('LT', ('Lituania', 21)),
    ('LU', ('Lussemburgo', 17)),
    ('MT', ('Malta', 18)),
    ('NL', ('Paesi Bassi', 21)),
    ('PL', ('Polonia', 23)),
    ('PT', ('Portogallo', 23)),
    ('RO', ('Romania', 19)),
    ('SK', ('Slovacchia', 20)),
    ('SI', ('Slovenia', 22)),
    ('ES', ('Spagna', 21)),
    ('SE', ('Svezia', 25)),
])

EXPORT_HEADERS = [
    'Periodo',
    'Codice Paese',
    'Nome Paese',
    'Base Imponibile',
    'IVA Dovuta',
    'Numero Transazioni',
    'Aliquota IVA',
]


def get_country_vat_rate(code) -> int:
    entry = OSS_COUNTRIES.get(str(code or '').strip().upper())
    return entry[1] if entry else 0


def oss_countries() -> List[Dict]:
    return [{'code': code, 'name': name, 'vat_rate': rate} for code, (name, rate) in OSS_COUNTRIES.items()]


def _tag(value) -> str:
    return str(value or '').strip().upper()


def _period_bounds(period: Dict):
    start = to_datetime(period.get('start'))
    end = to_datetime(period.get('end'))
    if end is not None:
        end = datetime.combine(end.date(), time.max)
    return start, end


def _in_period(record: dict, start, end) -> bool:
    record_date = to_datetime(record.get('date'))
    if record_date is None:
        return False
    if start is not None and record_date < start:
        return False
    if end is not None and record_date > end:
        return False
    return True


def _transaction(record: dict, kind: str) -> Dict:
    amount = money(record.get('amount'))
    return {
        'type': kind,
        'id': record.get('id'),
        'date': record.get('date'),
        'amount': amount if kind == 'sale' else -abs(amount),
        'document_type': _tag(record.get('documento') if kind == 'sale' else record.get('reason')),
        'document_number': record.get('numero') or record.get('order_reference'),
        'order_reference': record.get('order_reference'),
    }


def calculate_vat_by_country(sales: Iterable[dict], returns: Iterable[dict], period: Dict) -> List[Dict]:
    """
    VAT due per destination country for ``period`` (``{'start', 'end'}``,
    end inclusive to the end of the day). Countries outside the OSS table
    and countries without qualifying documents are omitted.
    """
    start, end = _period_bounds(period)
    buckets: Dict[str, Dict] = {}

    def _bucket(code):
        return buckets.setdefault(code, {'sales': Decimal('0'), 'returns': Decimal('0'), 'transactions': []})

    for sale in sales:
        if _tag(sale.get('documento')) != OSS_SALE_DOCUMENT or not _in_period(sale, start, end):
            continue
        code = _tag(sale.get('country'))
        if code not in OSS_COUNTRIES:
            continue
        bucket = _bucket(code)
        bucket['sales'] += to_decimal(sale.get('amount'))
        bucket['transactions'].append(_transaction(sale, 'sale'))

    for ret in returns:
        if _tag(ret.get('reason')) != OSS_RETURN_REASON or not _in_period(ret, start, end):
            continue
        code = _tag(ret.get('country'))
        if code not in OSS_COUNTRIES:
            continue
        bucket = _bucket(code)
        # Signed sum first; abs is taken once per country below
        bucket['returns'] += to_decimal(ret.get('amount'))
        bucket['transactions'].append(_transaction(ret, 'return'))

    rows = []
    for code in sorted(buckets):
        bucket = buckets[code]
        if not bucket['transactions']:
            continue
        name, rate = OSS_COUNTRIES[code]
        sales_amount = quantize_money(bucket['sales'])
        returns_amount = quantize_money(abs(bucket['returns']))
        base_amount = sales_amount - returns_amount
        rows.append({
            'country': code,
            'country_name': name,
            'sales_amount': float(sales_amount),
            'returns_amount': float(returns_amount),
            'base_amount': float(base_amount),
            'vat_rate': rate,
            'vat_amount': money(base_amount * rate / 100),
            'transaction_count': len(bucket['transactions']),
            'transactions': bucket['transactions'],
        })

    logger.debug("OSS report for %s: %d countries", period, len(rows))
    return rows


def oss_totals(rows: List[Dict]) -> Dict:
    return {
        'base_amount': money(sum((to_decimal(row['base_amount']) for row in rows), Decimal('0'))),
        'vat_amount': money(sum((to_decimal(row['vat_amount']) for row in rows), Decimal('0'))),
        'transaction_count': sum(row['transaction_count'] for row in rows),
        'countries': len(rows),
    }


def period_label(period: Dict) -> str:
    start, end = _period_bounds(period)
    if start is None or end is None:
        return ''
    return f"{start.date().isoformat()} - {end.date().isoformat()}"


def export_filename(period: Dict, extension: str) -> str:
    start, _ = _period_bounds(period)
    stamp = start.strftime('%Y_%m') if start else datetime.now().strftime('%Y_%m')
    return f"OSS_{stamp}.{extension}"


def export_rows(rows: List[Dict], period: Dict) -> List[List]:
    label = period_label(period)
    return [
        [
            label,
            row['country'],
            row['country_name'],
            row['base_amount'],
            row['vat_amount'],
            row['transaction_count'],
            row['vat_rate'],
        ]
        for row in rows
    ]


def export_csv(rows: List[Dict], period: Dict) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=';')
    writer.writerow(EXPORT_HEADERS)
    writer.writerows(export_rows(rows, period))
    totals = oss_totals(rows)
    writer.writerow(['TOTALE', '', '', totals['base_amount'], totals['vat_amount'], totals['transaction_count'], ''])
    return buffer.getvalue().encode('utf-8-sig')


def export_xlsx(rows: List[Dict], period: Dict, sheet_title: Optional[str] = None) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title or 'OSS'
    ws.append(EXPORT_HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for line in export_rows(rows, period):
        ws.append(line)
    totals = oss_totals(rows)
    ws.append(['TOTALE', None, None, totals['base_amount'], totals['vat_amount'], totals['transaction_count'], None])
    ws[ws.max_row][0].font = Font(bold=True)

    for column in ws.columns:
        width = max(len(str(cell.value or '')) for cell in column)
        ws.column_dimensions[get_column_letter(column[0].column)].width = min(width + 3, 40)
    ws.freeze_panes = 'A2'

    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()
