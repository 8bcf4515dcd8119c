"""Configuration module for the subdesk Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    TESTING = False

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'subdesk')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'subdesk')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'subdesk')

        DATABASE_URL = (
            f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', '0') == '1'
    DB_POOL_SIZE = int(os.getenv('DB_POOL_SIZE', '10'))
    DB_MAX_OVERFLOW = int(os.getenv('DB_MAX_OVERFLOW', '20'))

    # Order transactions
    # Row-lock wait before the database aborts with lock_not_available (PostgreSQL only)
    ORDER_LOCK_TIMEOUT_MS = int(os.getenv('ORDER_LOCK_TIMEOUT_MS', '5000'))
    # Attempts for a create/delete/update that hit a deadlock or lock timeout
    ORDER_TX_MAX_ATTEMPTS = int(os.getenv('ORDER_TX_MAX_ATTEMPTS', '3'))
    ORDER_NUMBER_PREFIX = os.getenv('ORDER_NUMBER_PREFIX', 'SO-')
    ORDERS_PAGE_SIZE = int(os.getenv('ORDERS_PAGE_SIZE', '50'))

    # Error tracking
    SENTRY_DSN = os.getenv('SENTRY_DSN')


class TestConfig(Config):
    """Configuration used by the test-suite (SQLite file database)."""

    TESTING = True
    DEBUG = False
    ENV = 'testing'
    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite:///subdesk-test.db')
    SQLALCHEMY_ECHO = False
    ORDER_TX_MAX_ATTEMPTS = 3
    SENTRY_DSN = None
