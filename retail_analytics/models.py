from datetime import datetime
from decimal import Decimal

from retail_analytics import db


def _iso(value):
    return value.isoformat() if value else None


def _float(value):
    if value is None:
        return None
    return float(Decimal(value).quantize(Decimal('0.01')))


class Sale(db.Model):
    __tablename__ = 'sale'

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.DateTime, nullable=False, index=True)
    user = db.Column(db.String(120), nullable=True)
    # Raw channel as uploaded; payment mappings are resolved at read time
    channel = db.Column(db.String(30), nullable=False, index=True, default='unknown')
    marketplace = db.Column(db.String(120), nullable=True)
    brand = db.Column(db.String(120), nullable=True, index=True)
    category = db.Column(db.String(80), nullable=False, default='abbigliamento')
    sku = db.Column(db.String(120), nullable=False, index=True)
    product_id = db.Column(db.String(120), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_method = db.Column(db.String(120), nullable=True, index=True)
    area = db.Column(db.String(80), nullable=True)
    country = db.Column(db.String(8), nullable=True, index=True)
    order_reference = db.Column(db.String(120), nullable=True, index=True)
    documento = db.Column(db.String(50), nullable=True)
    numero = db.Column(db.String(80), nullable=True)
    season = db.Column(db.String(40), nullable=False, default='autunno_inverno')
    shipping_cost = db.Column(db.Numeric(12, 2), nullable=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=True)
    signature = db.Column(db.String(255), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'date': _iso(self.date),
            'user': self.user,
            'channel': self.channel,
            'marketplace': self.marketplace,
            'brand': self.brand,
            'category': self.category,
            'sku': self.sku,
            'product_id': self.product_id,
            'quantity': self.quantity,
            'price': _float(self.price),
            'amount': _float(self.amount),
            'payment_method': self.payment_method,
            'area': self.area,
            'country': self.country,
            'order_reference': self.order_reference,
            'documento': self.documento,
            'numero': self.numero,
            'season': self.season,
            'shipping_cost': _float(self.shipping_cost),
            'tax_rate': _float(self.tax_rate),
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Sale {self.sku} {self.amount}>'


class SaleReturn(db.Model):
    __tablename__ = 'sale_return'

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.String(120), nullable=True)
    date = db.Column(db.DateTime, nullable=False, index=True)
    # Signed: refunds are negative, retained return fees positive
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    reason = db.Column(db.String(120), nullable=False, default='RESO')
    channel = db.Column(db.String(30), nullable=False, default='ecommerce')
    marketplace = db.Column(db.String(120), nullable=True)
    payment_method = db.Column(db.String(120), nullable=True)
    sku = db.Column(db.String(120), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(12, 2), nullable=True)
    area = db.Column(db.String(80), nullable=True)
    country = db.Column(db.String(8), nullable=True, index=True)
    order_reference = db.Column(db.String(120), nullable=True, index=True)
    return_shipping_cost = db.Column(db.Numeric(12, 2), nullable=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=True)
    signature = db.Column(db.String(255), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'sale_id': self.sale_id,
            'date': _iso(self.date),
            'amount': _float(self.amount),
            'reason': self.reason,
            'channel': self.channel,
            'marketplace': self.marketplace,
            'payment_method': self.payment_method,
            'sku': self.sku,
            'quantity': self.quantity,
            'price': _float(self.price),
            'area': self.area,
            'country': self.country,
            'order_reference': self.order_reference,
            'return_shipping_cost': _float(self.return_shipping_cost),
            'tax_rate': _float(self.tax_rate),
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<SaleReturn {self.order_reference or self.sku} {self.amount}>'


class InventoryItem(db.Model):
    __tablename__ = 'inventory_item'

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(120), nullable=False, unique=True, index=True)
    brand = db.Column(db.String(120), nullable=False, index=True)
    category = db.Column(db.String(80), nullable=True, index=True)
    purchase_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    sell_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    collection = db.Column(db.String(40), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'sku': self.sku,
            'brand': self.brand,
            'category': self.category,
            'purchase_price': _float(self.purchase_price),
            'sell_price': _float(self.sell_price),
            'collection': self.collection,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<InventoryItem {self.sku}>'


class PaymentMapping(db.Model):
    __tablename__ = 'payment_mapping'

    payment_method = db.Column(db.String(120), primary_key=True)
    macro_area = db.Column(db.String(20), nullable=False)  # Marketplace | Sito | Altro
    channel = db.Column(db.String(30), nullable=False)  # ecommerce | marketplace
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'payment_method': self.payment_method,
            'macro_area': self.macro_area,
            'channel': self.channel,
        }

    def __repr__(self):
        return f'<PaymentMapping {self.payment_method} -> {self.channel}>'


class ChannelCost(db.Model):
    __tablename__ = 'channel_cost'

    payment_method = db.Column(db.String(120), primary_key=True)
    macro_area = db.Column(db.String(20), nullable=True)
    commission_percent = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    extra_commission_percent = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    fixed_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    return_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    apply_on_vat_included = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'payment_method': self.payment_method,
            'macro_area': self.macro_area,
            'commission_percent': _float(self.commission_percent),
            'extra_commission_percent': _float(self.extra_commission_percent),
            'fixed_cost': _float(self.fixed_cost),
            'return_cost': _float(self.return_cost),
            'apply_on_vat_included': bool(self.apply_on_vat_included),
        }

    def __repr__(self):
        return f'<ChannelCost {self.payment_method}>'


class BrandMapping(db.Model):
    """Operator-learned brand for a SKU matching key."""

    __tablename__ = 'brand_mapping'

    sku_key = db.Column(db.String(120), primary_key=True)
    brand = db.Column(db.String(120), nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {'sku_key': self.sku_key, 'brand': self.brand}


class ChannelMapping(db.Model):
    """Operator-learned channel for a normalized user tag."""

    __tablename__ = 'channel_mapping'

    user_key = db.Column(db.String(120), primary_key=True)
    channel = db.Column(db.String(30), nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {'user_key': self.user_key, 'channel': self.channel}
