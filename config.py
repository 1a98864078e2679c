import os


def _env_int(name, default):
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name, default):
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///retail_analytics.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MAX_CONTENT_LENGTH = 50 * 1024 * 1024  # 50MB (store/inventory exports)
    JSON_SORT_KEYS = False

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Ingestion
    UPLOAD_CHUNK_SIZE = _env_int('UPLOAD_CHUNK_SIZE', 2000)
    UPLOAD_MAX_RETRIES = _env_int('UPLOAD_MAX_RETRIES', 3)
    UPLOAD_RETRY_BACKOFF = _env_float('UPLOAD_RETRY_BACKOFF', 0.5)
    READ_PAGE_SIZE = _env_int('READ_PAGE_SIZE', 1000)

    # Used when a sale carries no VAT rate of its own
    DEFAULT_TAX_RATE = _env_float('DEFAULT_TAX_RATE', 22.0)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_LEVEL = 'WARNING'
    UPLOAD_CHUNK_SIZE = 3
    UPLOAD_RETRY_BACKOFF = 0
    READ_PAGE_SIZE = 2
