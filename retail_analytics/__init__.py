import logging

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from config import Config

db = SQLAlchemy()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(app):
    """Attach a single stream handler to the package logger (safe to call twice)."""
    logger = logging.getLogger(__name__)
    logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    if not any(getattr(h, '_retail_analytics', False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._retail_analytics = True
        logger.addHandler(handler)
    return logger


def create_app(config_class=Config):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    configure_logging(app)
    db.init_app(app)

    # Blueprints
    from retail_analytics.sales import sales_bp
    from retail_analytics.inventory import inventory_bp
    from retail_analytics.analytics import analytics_bp
    from retail_analytics.errors import register_error_handlers

    app.register_blueprint(sales_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(analytics_bp)
    register_error_handlers(app)

    with app.app_context():
        from retail_analytics import models  # noqa: F401
        db.create_all()

    logging.getLogger(__name__).info("Retail analytics app ready (%s)", app.config['SQLALCHEMY_DATABASE_URI'])
    return app
