"""
Adapters that turn uploaded spreadsheets into upload payloads.

Each adapter maps the columns of one export format onto the ingestion
schema. Row problems are collected as messages and the row is skipped;
parsing never raises on bad data.

Supported: store cash-register exports, e-commerce order exports (sales
and returns in the same file) and inventory catalogs, as CSV or XLSX.
"""

import csv
import io
import logging
import zipfile
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from retail_analytics.errors import InvalidRequest
from retail_analytics.services.channels import KNOWN_MARKETPLACES, USER_STORE_MAPPING, classify_payment_method
from retail_analytics.utils.normalize import normalize_user, parse_date_flexible, parse_euro_number

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ('.csv', '.xlsx', '.xlsm')


class UnsupportedFile(ValueError):
    pass


def detect_encoding(raw_bytes: bytes) -> str:
    """Return the first encoding that decodes the whole file."""
    encodings = ['utf-8-sig', 'utf-8', 'cp1252', 'latin-1']
    for enc in encodings:
        try:
            raw_bytes.decode(enc)
            return enc
        except UnicodeDecodeError:
            continue
    return 'utf-8'


def _clean_header(value) -> str:
    return str(value).strip() if value is not None else ''


def read_csv_rows(raw_bytes: bytes) -> List[Dict]:
    encoding = detect_encoding(raw_bytes)
    text_stream = io.TextIOWrapper(io.BytesIO(raw_bytes), encoding=encoding, newline='')

    # Italian exports use ";", everything else ","
    sample = text_stream.read(2048)
    text_stream.seek(0)
    delimiter = ';' if sample.count(';') >= sample.count(',') and ';' in sample else ','

    reader = csv.DictReader(text_stream, delimiter=delimiter)
    rows = []
    for row in reader:
        cleaned = {_clean_header(k): v for k, v in row.items() if k is not None}
        if any(str(v).strip() for v in cleaned.values() if v is not None):
            rows.append(cleaned)
    return rows


def read_xlsx_rows(raw_bytes: bytes) -> List[Dict]:
    workbook = openpyxl.load_workbook(io.BytesIO(raw_bytes), data_only=True, read_only=True)
    try:
        sheet = workbook.active
        iterator = sheet.iter_rows(values_only=True)
        try:
            headers = [_clean_header(value) for value in next(iterator)]
        except StopIteration:
            return []

        rows = []
        for values in iterator:
            if values is None or all(value is None or str(value).strip() == '' for value in values):
                continue
            rows.append({headers[i]: values[i] for i in range(min(len(headers), len(values))) if headers[i]})
        return rows
    finally:
        workbook.close()


def read_rows(filename: str, raw_bytes: bytes) -> List[Dict]:
    name = (filename or '').lower()
    if not name.endswith(SUPPORTED_EXTENSIONS):
        raise UnsupportedFile('Unsupported file format, use CSV or XLSX')
    if name.endswith('.csv'):
        return read_csv_rows(raw_bytes)
    return read_xlsx_rows(raw_bytes)


def read_upload(storage) -> List[Dict]:
    """Rows of an uploaded file, rejecting missing, empty or unreadable uploads."""
    if storage is None or not storage.filename:
        raise InvalidRequest('No file uploaded')
    raw_bytes = storage.read()
    if not raw_bytes:
        raise InvalidRequest('Empty file')
    try:
        rows = read_rows(storage.filename, raw_bytes)
    except UnsupportedFile as exc:
        raise InvalidRequest(str(exc))
    except (csv.Error, zipfile.BadZipFile, InvalidFileException) as exc:
        raise InvalidRequest('Unreadable file', details=str(exc))
    if not rows:
        raise InvalidRequest('The file contains no data rows')
    logger.info("Read %d row(s) from %s", len(rows), storage.filename)
    return rows


def _first(row: Mapping, *columns):
    for column in columns:
        value = row.get(column)
        if value is not None and str(value).strip() != '':
            return value
    return None


def _text(value) -> str:
    return str(value).strip() if value is not None else ''


def _number(value) -> Optional[float]:
    """Like parse_euro_number, but tells a real zero apart from garbage."""
    if value is None or str(value).strip() == '':
        return None
    number = parse_euro_number(value)
    if number == 0 and not any(ch.isdigit() for ch in str(value)):
        return None
    return number


class StoreSalesAdapter:
    """
    Cash-register exports of the two physical stores.

    Expected columns: Data, Utente, SKU, Quant., Prezzo. The clerk tag in
    ``Utente`` decides the store.
    """

    REQUIRED = ('Data', 'Utente', 'SKU', 'Quant.', 'Prezzo')

    @staticmethod
    def detect(headers: List[str]) -> bool:
        return all(column in headers for column in StoreSalesAdapter.REQUIRED)

    @staticmethod
    def process_row(row: Mapping, line: int, learned_channels: Optional[Mapping[str, str]] = None) -> Tuple[Optional[Dict], Optional[str]]:
        for column in StoreSalesAdapter.REQUIRED:
            if row.get(column) is None or _text(row.get(column)) == '':
                return None, f"Row {line}: missing '{column}'"

        user = _text(row['Utente'])
        user_key = normalize_user(user)
        channel = (learned_channels or {}).get(user_key) or USER_STORE_MAPPING.get(user_key)
        if not channel:
            return None, f"Row {line}: unknown user '{user}' (known: {', '.join(sorted(USER_STORE_MAPPING))})"

        date_value = parse_date_flexible(row['Data'])
        if date_value is None:
            return None, f"Row {line}: invalid date '{row['Data']}'"

        quantity = _number(row['Quant.'])
        if quantity is None or quantity <= 0 or quantity != int(quantity):
            return None, f"Row {line}: invalid quantity '{row['Quant.']}'"

        price = _number(row['Prezzo'])
        if price is None or price <= 0:
            return None, f"Row {line}: invalid price '{row['Prezzo']}'"

        quantity = int(quantity)
        amount = Decimal(str(price)) * quantity
        return {
            'date': date_value,
            'user': user,
            'channel': channel,
            'sku': _text(row['SKU']),
            'quantity': quantity,
            'price': price,
            'amount': float(amount),
            'category': _text(row.get('Categoria')) or None,
            'brand': _text(row.get('Brand')) or None,
        }, None

    @staticmethod
    def parse_rows(rows: List[Mapping], learned_channels: Optional[Mapping[str, str]] = None) -> Tuple[List[Dict], List[str]]:
        parsed, errors = [], []
        for line, row in enumerate(rows, start=2):
            record, error = StoreSalesAdapter.process_row(row, line, learned_channels)
            if error:
                errors.append(error)
            else:
                parsed.append(record)
        return parsed, errors


class EcommerceAdapter:
    """
    Web-shop order exports, one line per article.

    Lines sharing Documento/Numero/Data form one transaction. Credit notes
    and ``RESO`` documents become returns: returned articles are negative,
    retained fees (negative price on a return) positive.
    """

    RETURN_DOCUMENTS = ('RESO', 'NOTA CRED', 'NOTA DI CREDITO')
    PRICE_COLUMNS = ('Prezzo articc', 'Prezzo Articolo', 'Prezzo unitario', 'Item Amount', 'Prezzo', 'Price')
    QUANTITY_COLUMNS = ('Qty', 'Quant.', 'Quantità')
    PAYMENT_COLUMNS = ('Metodo pagamento', 'Metodo paga')
    SHIPPING_COLUMNS = ('Spese trasporto', 'Spese traspc')
    TAX_COLUMNS = ('Aliquota per', 'Tax Rate')

    @staticmethod
    def detect(headers: List[str]) -> bool:
        return 'Documento' in headers and 'Numero' in headers

    @staticmethod
    def is_return(documento) -> bool:
        return _text(documento).upper() in EcommerceAdapter.RETURN_DOCUMENTS

    @staticmethod
    def determine_channel(payment_method: str, platform: str, mappings: Optional[Mapping[str, Mapping]] = None) -> str:
        classified = classify_payment_method(payment_method, mappings or {})
        if classified:
            return classified['channel']
        platform = platform.lower()
        if any(marketplace in platform for marketplace in KNOWN_MARKETPLACES):
            return 'marketplace'
        return 'ecommerce'

    @staticmethod
    def parse_rows(rows: List[Mapping], mappings: Optional[Mapping[str, Mapping]] = None) -> Tuple[List[Dict], List[Dict], List[str]]:
        sales, returns, errors = [], [], []

        groups: Dict[Tuple[str, str, str], List[Tuple[int, Mapping]]] = {}
        for line, row in enumerate(rows, start=2):
            key = (_text(row.get('Documento')), _text(row.get('Numero')), _text(row.get('Data')))
            groups.setdefault(key, []).append((line, row))

        for (documento, numero, _), lines in groups.items():
            first = lines[0][1]
            date_value = parse_date_flexible(first.get('Data'))
            if date_value is None:
                errors.append(f"Document {documento} {numero}: invalid or missing date")
                continue

            is_return = EcommerceAdapter.is_return(documento)
            country = _text(first.get('Nazione')).upper() or None
            platform = _text(first.get('Supplier/Platform'))
            area = platform or _text(first.get('Area')) or None
            payment_method = _text(_first(first, *EcommerceAdapter.PAYMENT_COLUMNS)) or None
            channel = EcommerceAdapter.determine_channel(payment_method or '', platform, mappings)

            shipping = None
            if not is_return:
                shipping = _number(_first(first, *EcommerceAdapter.SHIPPING_COLUMNS))
                if shipping is not None and shipping <= 0:
                    shipping = None

            for position, (line, row) in enumerate(lines):
                price = _number(_first(row, *EcommerceAdapter.PRICE_COLUMNS))
                if price is None or (not is_return and price <= 0):
                    errors.append(f"Row {line} ({documento} {numero}): invalid price")
                    continue
                quantity = _number(_first(row, *EcommerceAdapter.QUANTITY_COLUMNS)) or 1
                quantity = int(abs(quantity)) or 1
                tax_rate = _number(_first(row, *EcommerceAdapter.TAX_COLUMNS))
                order_reference = _text(row.get('Order/Reference Number')) or None
                sku = _text(row.get('SKU'))
                description = _text(_first(row, 'Item Description', 'Articolo'))

                common = {
                    'date': date_value,
                    'channel': channel,
                    'payment_method': payment_method,
                    'area': area,
                    'country': country,
                    'order_reference': order_reference,
                    'tax_rate': tax_rate,
                    'quantity': quantity,
                }

                if is_return:
                    line_amount = Decimal(str(abs(price))) * quantity
                    if 'spese di reso' in description.lower():
                        # Return shipping charged to the customer
                        returns.append(dict(common, sku=None, quantity=1, price=-abs(price), amount=-abs(price),
                                            return_shipping_cost=-abs(price), reason=documento,
                                            marketplace=payment_method))
                        continue
                    retained_fee = price < 0
                    returns.append(dict(
                        common,
                        sku=sku or description or None,
                        price=abs(price) if retained_fee else -abs(price),
                        amount=float(line_amount if retained_fee else -line_amount),
                        return_shipping_cost=abs(price) if retained_fee else None,
                        reason=documento,
                        marketplace=payment_method,
                    ))
                    continue

                if not sku:
                    errors.append(f"Row {line} ({documento} {numero}): missing SKU")
                    continue
                amount = Decimal(str(price)) * quantity
                if shipping and position == 0:
                    amount += Decimal(str(shipping))
                sales.append(dict(
                    common,
                    user='ecommerce',
                    sku=sku,
                    price=price,
                    amount=float(amount),
                    shipping_cost=shipping if position == 0 else None,
                    documento=documento or None,
                    numero=numero or None,
                    marketplace=payment_method if channel == 'marketplace' else None,
                ))

        return sales, returns, errors


class InventoryAdapter:
    """
    Catalog exports: SKU, Brand and 'Prezzo di acquisto' are required;
    'Prezzo di vendita', Categoria and Collezione are optional.
    """

    REQUIRED = ('SKU', 'Brand', 'Prezzo di acquisto')

    @staticmethod
    def detect(headers: List[str]) -> bool:
        return all(column in headers for column in InventoryAdapter.REQUIRED)

    @staticmethod
    def parse_rows(rows: List[Mapping]) -> Tuple[List[Dict], List[str], List[str]]:
        parsed, errors, warnings = [], [], []
        seen = set()
        for line, row in enumerate(rows, start=2):
            sku = _text(row.get('SKU'))
            brand = _text(row.get('Brand'))
            if not sku:
                errors.append(f"Row {line}: missing 'SKU'")
                continue
            if not brand:
                errors.append(f"Row {line}: missing 'Brand'")
                continue

            purchase_price = _number(row.get('Prezzo di acquisto'))
            if purchase_price is None or purchase_price < 0:
                errors.append(f"Row {line}: invalid purchase price '{row.get('Prezzo di acquisto')}'")
                continue

            sell_price = _number(row.get('Prezzo di vendita'))
            if sell_price is None:
                if _text(row.get('Prezzo di vendita')):
                    errors.append(f"Row {line}: invalid sell price '{row.get('Prezzo di vendita')}'")
                    continue
                warnings.append(f"Row {line}: no sell price, stored as 0")
                sell_price = 0.0

            key = sku.upper()
            if key in seen:
                warnings.append(f"Row {line}: duplicate SKU {sku} skipped")
                continue
            seen.add(key)

            parsed.append({
                'sku': sku,
                'brand': brand,
                'purchase_price': purchase_price,
                'sell_price': sell_price,
                'category': _text(row.get('Categoria')) or None,
                'collection': _text(row.get('Collezione')) or None,
            })
        return parsed, errors, warnings


def detect_format(headers: List[str]) -> Optional[str]:
    """'store', 'ecommerce', 'inventory' or None."""
    if EcommerceAdapter.detect(headers):
        return 'ecommerce'
    if StoreSalesAdapter.detect(headers):
        return 'store'
    if InventoryAdapter.detect(headers):
        return 'inventory'
    return None
