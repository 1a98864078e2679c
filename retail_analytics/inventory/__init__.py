from flask import Blueprint

inventory_bp = Blueprint('inventory', __name__, url_prefix='/api/inventory')

from retail_analytics.inventory import routes  # noqa: E402,F401
