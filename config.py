"""Storefront configuration, read from the environment (and ``.env``)."""
import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name, default='false'):
    return os.getenv(name, default).lower() == 'true'


def _database_url():
    """DATABASE_URL wins; otherwise assemble a psycopg URL from DB_* / POSTGRES_* parts."""
    url = os.getenv('DATABASE_URL')
    if url:
        return url
    host = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
    port = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
    name = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'storefront')
    user = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'storefront')
    password = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'storefront')
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{name}"


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')

    SESSION_COOKIE_SECURE = _flag('SESSION_COOKIE_SECURE')
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400

    # Absolute links in confirmation emails and fulfillment results
    APP_BASE_URL = os.getenv('APP_BASE_URL', 'http://localhost:5000')

    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ECHO = _flag('SQLALCHEMY_ECHO')

    # Guest carts are identified by a signed JWT cookie
    CART_TOKEN_SECRET = os.getenv('CART_TOKEN_SECRET') or SECRET_KEY
    CART_TOKEN_TTL_DAYS = int(os.getenv('CART_TOKEN_TTL_DAYS', '30'))
    CART_COOKIE_NAME = os.getenv('CART_COOKIE_NAME', 'cart_token')
    CART_COOKIE_SECURE = _flag('CART_COOKIE_SECURE')

    DEFAULT_CURRENCY = os.getenv('DEFAULT_CURRENCY', 'USD')

    STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY')
    STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET')

    PAYPAL_CLIENT_ID = os.getenv('PAYPAL_CLIENT_ID')
    PAYPAL_CLIENT_SECRET = os.getenv('PAYPAL_CLIENT_SECRET')
    PAYPAL_WEBHOOK_ID = os.getenv('PAYPAL_WEBHOOK_ID')
    PAYPAL_API_BASE = os.getenv('PAYPAL_API_BASE', 'https://api-m.sandbox.paypal.com')

    MP_ACCESS_TOKEN = os.getenv('MP_ACCESS_TOKEN')
    MP_WEBHOOK_SECRET = os.getenv('MP_WEBHOOK_SECRET')

    # Ignored when ENV is production
    WEBHOOK_SKIP_VERIFICATION = _flag('WEBHOOK_SKIP_VERIFICATION')

    MAIL_SERVER = os.getenv('SMTP_HOST', 'smtp.gmail.com')
    MAIL_PORT = int(os.getenv('SMTP_PORT', '587'))
    MAIL_USE_TLS = True
    MAIL_USE_SSL = False
    MAIL_USERNAME = os.getenv('SMTP_USER') or ''
    MAIL_PASSWORD = os.getenv('SMTP_PASSWORD') or ''
    MAIL_DEFAULT_SENDER = os.getenv('SMTP_FROM') or MAIL_USERNAME or 'no-reply@localhost'
    MAIL_SUPPRESS_SEND = _flag('MAIL_SUPPRESS_SEND')

    # Private bucket for downloadable product files
    S3_ENDPOINT = os.getenv('S3_ENDPOINT', 'http://minio:9000')
    S3_ACCESS_KEY = os.getenv('S3_ACCESS_KEY', 'minioadmin')
    S3_SECRET_KEY = os.getenv('S3_SECRET_KEY', 'minioadmin')
    S3_BUCKET = os.getenv('S3_BUCKET', 'downloads')
    S3_REGION = os.getenv('S3_REGION', 'us-east-1')

    DOWNLOAD_URL_TTL = int(os.getenv('DOWNLOAD_URL_TTL', '300'))
    DOWNLOAD_DEFAULT_MAX = int(os.getenv('DOWNLOAD_DEFAULT_MAX', '5'))
    DOWNLOAD_DEFAULT_DAYS = int(os.getenv('DOWNLOAD_DEFAULT_DAYS', '30'))

    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CACHE_ENABLED = _flag('CACHE_ENABLED', 'true')
    CACHE_DEFAULT_TTL = int(os.getenv('CACHE_DEFAULT_TTL', '60'))
    CACHE_PRODUCTS_TTL = int(os.getenv('CACHE_PRODUCTS_TTL', '60'))
    CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'storefront')
