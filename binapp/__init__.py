from flask import Flask, current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from config import Config

from . import models  # ensure models are registered with SQLAlchemy
from .cli import register_cli
from .extensions import db
from .marketplace import build_marketplace_client
from .routes import allocations, bins, errors, health, inventory, orders
from .scheduler import OrderSyncScheduler
from .utils.cache import ORDER_LIST_CACHE_KEY, TTLCache
from .utils.logging import configure_logging


def _ping_database() -> None:
    db.session.execute(text("SELECT 1"))


def create_app(config_override=None):
    app = Flask(__name__)

    # load configuration from environment variables
    app.config.from_object(Config)
    if config_override:
        app.config.update(config_override)

    app.config.setdefault("DATABASE_AVAILABLE", True)
    app.config.setdefault("DATABASE_ERROR", None)

    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if database_uri.startswith("sqlite:///:memory:"):
        engine_options = app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {})
        connect_args = engine_options.setdefault("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        engine_options.setdefault("poolclass", StaticPool)

    if not app.testing:
        configure_logging(app)

    db.init_app(app)

    database_available = True
    database_error_message = None

    with app.app_context():
        try:
            _ping_database()
        except OperationalError as exc:
            database_available = False
            details = str(getattr(exc, "orig", exc)).strip()
            database_error_message = (
                "Unable to connect to the configured database. Start the "
                "database service or update the DB_URL setting, then restart."
            )
            if details:
                database_error_message += f" (Error: {details})"
            current_app.logger.error("Database connection unavailable during startup: %s", details)
            db.session.remove()
        else:
            try:
                db.create_all()
            except SQLAlchemyError:
                database_available = False
                database_error_message = "The database schema could not be initialized."
                current_app.logger.exception("Database initialization error")
                db.session.remove()

    app.config["DATABASE_AVAILABLE"] = database_available
    app.config["DATABASE_ERROR"] = database_error_message

    app.extensions["binapp.marketplace"] = build_marketplace_client(app.config)
    app.extensions[ORDER_LIST_CACHE_KEY] = TTLCache(app.config.get("ORDER_LIST_CACHE_TTL", 60))

    app.register_blueprint(errors.bp)
    app.register_blueprint(health.bp)
    app.register_blueprint(allocations.bp)
    app.register_blueprint(orders.bp)
    app.register_blueprint(bins.bp)
    app.register_blueprint(inventory.bp)

    register_cli(app)

    if app.config.get("ORDER_SYNC_ENABLED") and database_available and not app.testing:
        scheduler = OrderSyncScheduler(app, app.config.get("ORDER_SYNC_INTERVAL_SEC", 300))
        app.extensions["binapp.scheduler"] = scheduler
        scheduler.start()

    return app
