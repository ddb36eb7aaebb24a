# backend/stockaudit/__init__.py
import logging

from flask import Flask, current_app

from .config import Config
from .extensions import db, migrate


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    # app.logger is the "stockaudit" logger, so service module loggers
    # (stockaudit.services.*) propagate into Flask's handler
    app.logger.setLevel(level)


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        # Must land before db.init_app: the engine is built from config there
        app.config.update(config_overrides)

    _configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.scans import scans_bp
    from .routes.snapshots import snapshots_bp
    from .routes.recovery import recovery_bp
    from .routes.notifications import notifications_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(scans_bp)
    app.register_blueprint(snapshots_bp)
    app.register_blueprint(recovery_bp)
    app.register_blueprint(notifications_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def get_snapshot_repository():
    """Snapshot archive for the current app (overridable via app.extensions)."""
    from .services.snapshot_service import FileSystemSnapshotRepository

    repository = current_app.extensions.get("snapshot_repository")
    if repository is None:
        repository = FileSystemSnapshotRepository(current_app.config["SNAPSHOT_ARCHIVE_DIR"])
        current_app.extensions["snapshot_repository"] = repository
    return repository


def get_reconciliation_signal():
    """POS reconciliation signal for the current app (overridable via app.extensions)."""
    from .services.pos_client import PosReconciliationClient

    signal = current_app.extensions.get("reconciliation_signal")
    if signal is None:
        signal = PosReconciliationClient.from_config(current_app.config)
        current_app.extensions["reconciliation_signal"] = signal
    return signal


def get_product_catalog():
    from .services.catalog_service import DatabaseProductCatalog

    catalog = current_app.extensions.get("product_catalog")
    if catalog is None:
        catalog = DatabaseProductCatalog()
        current_app.extensions["product_catalog"] = catalog
    return catalog
