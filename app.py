"""Application factory: clean entry point for the Flask application."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from sqlalchemy import event

from config import enable_sqlite_fks, load_config
from errors import BillingError
from extensions import db, limiter
from routes import register_blueprints
from services.invoice import InvoiceImmutableError, register_invoice_guards

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["RATELIMIT_ENABLED"] = (
        os.environ.get("RATELIMIT_ENABLED", "true").lower() not in ("false", "0", "no")
    )

    # Initialize extensions
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()

    # Issued invoices are append-only
    register_invoice_guards(app)

    # Register all blueprints
    register_blueprints(app)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def load_actor():
        """Set ``g.actor`` from the ``X-Actor`` header."""
        g.actor = request.headers.get("X-Actor", "").strip() or "system"

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(BillingError)
    def billing_error(error: BillingError):
        db.session.rollback()
        logger.info("%s %s refused: %s (%s)", request.method, request.path, error.message, error.code)
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(InvoiceImmutableError)
    def immutable_invoice(error):
        db.session.rollback()
        logger.warning("Blocked invoice mutation: %s", error)
        return jsonify({"error": "invoice_immutable", "message": str(error)}), 409

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "not_found", "message": "Resource not found."}), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return jsonify({"error": "method_not_allowed", "message": "Method not allowed."}), 405

    @app.errorhandler(500)
    def server_error(_error):
        db.session.rollback()
        return jsonify({"error": "internal_error", "message": "Internal server error."}), 500

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return jsonify({"error": "rate_limited", "message": "Too many requests, retry later."}), 429

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
