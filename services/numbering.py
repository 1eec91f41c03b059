"""Invoice numbering service.

One global counter row backs every invoice number on the platform.  The
counter is incremented inside the caller's transaction, so an invoice that
is rolled back also rolls back its number: numbers are strictly increasing
and gap-free.

Formatted numbers look like ``LK-2026-000042``.  The year is informational;
the integer sequence never resets.
"""

from __future__ import annotations

import datetime
import logging

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from config import default_billing_config
from errors import CounterAllocationFailure
from extensions import db
from models import NumberSequence
from services.concurrency import lock_for_update

logger = logging.getLogger(__name__)

INVOICE_ENTITY = "invoice"
GLOBAL_SCOPE = "global"


def billing_config():
    """Return the active ``BillingConfig``."""
    if has_app_context() and "BILLING_CONFIG" in current_app.config:
        return current_app.config["BILLING_CONFIG"]
    return default_billing_config()


def _next_sequence(entity_type: str, scope_key: str) -> int:
    """Atomically increment and return the next sequence value."""
    seq = lock_for_update(
        NumberSequence.query.filter_by(entity_type=entity_type, scope_key=scope_key)
    ).first()
    if not seq:
        seq = NumberSequence(entity_type=entity_type, scope_key=scope_key, last_value=1)
        db.session.add(seq)
        db.session.flush()
        return 1
    # Atomic increment via SQL expression to prevent race conditions
    seq.last_value = NumberSequence.last_value + 1
    db.session.flush()
    # Refresh to get the actual value after increment
    db.session.refresh(seq)
    return seq.last_value


def get_next_invoice_number() -> int:
    """Allocate the next global invoice sequence number.

    Must be called inside the transaction that inserts the invoice.
    Raises ``CounterAllocationFailure`` when the increment cannot complete;
    the caller then rolls back and retries the whole operation.
    """
    try:
        value = _next_sequence(INVOICE_ENTITY, GLOBAL_SCOPE)
    except SQLAlchemyError as exc:
        logger.warning("Invoice counter increment failed: %s", exc)
        raise CounterAllocationFailure(
            "Invoice number could not be allocated, retry the operation."
        ) from exc
    return value


def current_invoice_number() -> int:
    """Return the last allocated sequence number (0 when none issued yet)."""
    seq = NumberSequence.query.filter_by(
        entity_type=INVOICE_ENTITY, scope_key=GLOBAL_SCOPE
    ).first()
    return seq.last_value if seq else 0


def format_invoice_number(sequence: int, issue_date: datetime.date | datetime.datetime) -> str:
    prefix = billing_config().invoice_prefix
    return f"{prefix}-{issue_date.year}-{sequence:06d}"
