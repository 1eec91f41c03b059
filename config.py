"""Configuration loading: YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, BillingConfig

logger = logging.getLogger(__name__)


def _env_int(name: str, fallback) -> int:
    return int(os.environ.get(name, fallback))


def _env_float(name: str, fallback) -> float:
    return float(os.environ.get(name, fallback))


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    return (
        AppConfig(
            name=app_cfg.get("name", "Marketplace Billing"),
            secret_key=secret_key,
            base_currency=app_cfg.get("base_currency", "EUR"),
        ),
        BillingConfig(
            invoice_prefix=os.environ.get(
                "BILLING_INVOICE_PREFIX", billing_cfg.get("invoice_prefix", "LK")
            ),
            payment_due_days=_env_int(
                "BILLING_PAYMENT_DUE_DAYS", billing_cfg.get("payment_due_days", 14)
            ),
            vat_standard=_env_float(
                "BILLING_VAT_STANDARD", billing_cfg.get("vat_standard", 19.0)
            ),
            vat_reduced=_env_float(
                "BILLING_VAT_REDUCED", billing_cfg.get("vat_reduced", 7.0)
            ),
            storno_reason_min_length=_env_int(
                "BILLING_STORNO_REASON_MIN_LENGTH",
                billing_cfg.get("storno_reason_min_length", 10),
            ),
            counter_retry_attempts=_env_int(
                "BILLING_COUNTER_RETRY_ATTEMPTS",
                billing_cfg.get("counter_retry_attempts", 3),
            ),
            counter_retry_backoff=_env_float(
                "BILLING_COUNTER_RETRY_BACKOFF",
                billing_cfg.get("counter_retry_backoff", 0.05),
            ),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///marketplace_billing.db")),
    )


def default_billing_config() -> BillingConfig:
    """Billing defaults used when no application config is available."""
    return BillingConfig(
        invoice_prefix="LK",
        payment_due_days=14,
        vat_standard=19.0,
        vat_reduced=7.0,
        storno_reason_min_length=10,
        counter_retry_attempts=3,
        counter_retry_backoff=0.05,
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
