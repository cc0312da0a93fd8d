"""
Freight Workflow Engine
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from app.config import config
from app.middleware.logging_config import configure_logging
from app.models import db
from app.services.workflow_catalog import build_catalog

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_class = config[config_name]
    # ProductionConfig validates its environment on construction
    app.config.from_object(config_class())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)

    # ── Workflow catalog (built once, read by the services) ──────────────
    app.extensions["workflow_catalog"] = build_catalog(app.config.get("FTL_DEFAULT_ROUTE"))

    # ── Import all models so create_all sees them ────────────────────────
    from app.models import shipment as _shipment_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("recompute-statuses")
    @click.argument("shipment_id", type=int)
    def recompute_statuses_cmd(shipment_id):
        """Re-derive and store every step status of one shipment."""
        from app.core.exceptions import NotFoundError
        from app.services.shipment_workflow_service import recompute_shipment_statuses

        try:
            outcome = recompute_shipment_statuses(shipment_id)
        except NotFoundError as e:
            raise click.ClickException(str(e)) from None
        logger.info(
            "Recomputed shipment %s: %s step(s) changed, overall %s",
            shipment_id, outcome["changed"], outcome["overall_status"],
            extra={"shipment_id": shipment_id},
        )
        click.echo(f"{outcome['changed']} step(s) changed; overall status {outcome['overall_status']}")

    return app
