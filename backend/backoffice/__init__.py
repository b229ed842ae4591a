# backend/backoffice/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None, payment_provider=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        # Applied before init_app: Flask-SQLAlchemy binds its engine there
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Refund gateway; tests and deployments may inject their own
    if payment_provider is None:
        from .services.payment_provider import MockPaymentProvider
        payment_provider = MockPaymentProvider()
    app.extensions["payment_provider"] = payment_provider

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
