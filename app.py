import os
import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

class Base(DeclarativeBase):
    pass

db = SQLAlchemy(model_class=Base)

def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {value!r}")

def create_app(config_overrides=None):
    # Create the app
    app = Flask(__name__)

    # Configure the database - use PostgreSQL in production, SQLite for development
    database_url = os.environ.get("DATABASE_URL") or "sqlite:///fleet_ledger.db"

    if database_url.startswith(("postgresql://", "postgres://")):
        # Ensure psycopg2 driver is specified
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        database_url = database_url.replace("postgresql://", "postgresql+psycopg2://", 1)

        from urllib.parse import urlparse
        parsed = urlparse(database_url)
        logger.info(f"Connecting to PostgreSQL: host={parsed.hostname}, db={parsed.path[1:]}, user={parsed.username}")

        app.config["SQLALCHEMY_DATABASE_URI"] = database_url
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "pool_size": 10,
            "pool_recycle": 280,  # Slightly less than 5 minutes to prevent stale connections
            "pool_pre_ping": True,
            "max_overflow": 15,
            "pool_timeout": 20,
            "connect_args": {
                "connect_timeout": 10,
                "application_name": "fleet_cash_ledger",
                "keepalives_idle": 600,
                "keepalives_interval": 30,
                "keepalives_count": 3
            }
        }
    else:
        # Fallback to SQLite for local development
        app.config["SQLALCHEMY_DATABASE_URI"] = database_url
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "pool_recycle": 300,
            "pool_pre_ping": True,
        }

    # Ledger configuration
    app.config['LEDGER_TIMEZONE'] = os.environ.get('LEDGER_TIMEZONE', 'Africa/Abidjan')
    app.config['LEDGER_CURRENCY'] = os.environ.get('LEDGER_CURRENCY', 'XOF')
    app.config['LEDGER_CURRENCY_DECIMALS'] = _env_int('LEDGER_CURRENCY_DECIMALS', 0)
    app.config['LEDGER_RECONCILIATION_EPSILON'] = _env_int('LEDGER_RECONCILIATION_EPSILON', 0)
    app.config['LEDGER_DIAGNOSTIC_WINDOW_DAYS'] = _env_int('LEDGER_DIAGNOSTIC_WINDOW_DAYS', 30)
    app.config['LEDGER_MUTATION_RETRIES'] = _env_int('LEDGER_MUTATION_RETRIES', 3)
    app.config['LEDGER_QUERY_TIMEOUT_MS'] = _env_int('LEDGER_QUERY_TIMEOUT_MS', 10000)
    app.config['LEDGER_CLOSE_JOB_AT'] = os.environ.get('LEDGER_CLOSE_JOB_AT', '00:15')

    if config_overrides:
        app.config.update(config_overrides)

    from utils.config_validator import validate_ledger_config
    is_valid, errors = validate_ledger_config(app.config)
    if not is_valid:
        raise RuntimeError("Invalid ledger configuration: " + "; ".join(errors))

    from utils.logging_config import setup_logging
    setup_logging(app)

    # Initialize extensions
    db.init_app(app)

    # Make sure models are registered on the metadata before create_all()
    import models  # noqa: F401

    from ledger_commands import ledger_cli
    app.cli.add_command(ledger_cli)

    return app
