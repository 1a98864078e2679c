from flask import Blueprint

sales_bp = Blueprint('sales', __name__, url_prefix='/api/sales')

from retail_analytics.sales import routes  # noqa: E402,F401
