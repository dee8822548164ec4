"""
Configuration module for the reconciliation worker.
"""
import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Application configuration."""

    # PostgreSQL Configuration
    POSTGRES_HOST = os.getenv('POSTGRES_HOST', 'localhost')
    POSTGRES_PORT = int(os.getenv('POSTGRES_PORT', '5432'))
    POSTGRES_DB = os.getenv('POSTGRES_DB', 'election_db')
    POSTGRES_USER = os.getenv('POSTGRES_USER', 'election_user')
    POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', 'election_pass')
    POSTGRES_MIN_CONNECTIONS = int(os.getenv('POSTGRES_MIN_CONNECTIONS', '1'))
    POSTGRES_MAX_CONNECTIONS = int(os.getenv('POSTGRES_MAX_CONNECTIONS', '2'))

    # Scheduling
    RECONCILE_INTERVAL_SECONDS = float(os.getenv('RECONCILE_INTERVAL_SECONDS', '60'))

    # Retry Configuration
    MAX_RETRY_ATTEMPTS = int(os.getenv('MAX_RETRY_ATTEMPTS', '3'))
    RETRY_DELAY_SECONDS = float(os.getenv('RETRY_DELAY_SECONDS', '1.0'))

    # Prometheus Configuration
    PROMETHEUS_PORT = int(os.getenv('PROMETHEUS_PORT', '8002'))

    # Logging Configuration
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


config = Config()
