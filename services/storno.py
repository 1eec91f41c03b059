"""Invoice cancellation by storno.

An issued invoice is never edited or deleted.  Cancelling it issues a new
invoice with negated amounts and its own number from the global sequence,
then flips the original's status.  Both writes share one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import AlreadyCancelled, BillingError, CounterAllocationFailure, NotFound, ValidationError
from extensions import db
from models import Invoice, InvoiceItem
from services.audit import log_action
from services.concurrency import lock_for_update, run_with_retry
from services.invoice import CANCELLED_STATUSES, compare_and_set_status
from services.numbering import billing_config, format_invoice_number, get_next_invoice_number
from utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StornoResult:
    success: bool
    storno_invoice_number: Optional[str] = None
    storno_invoice_id: Optional[int] = None
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> dict:
        if self.success:
            return {
                "success": True,
                "storno_invoice_number": self.storno_invoice_number,
                "storno_invoice_id": self.storno_invoice_id,
            }
        return {"success": False, "error": self.error, "code": self.code}


def _mirror_invoice(original: Invoice, reason: str, actor: str) -> Invoice:
    now = utc_now()
    sequence = get_next_invoice_number()
    storno = Invoice(
        sequence_number=sequence,
        invoice_number=format_invoice_number(sequence, now),
        invoice_type=original.invoice_type,
        business_id=original.business_id,
        butcher_name=original.butcher_name,
        butcher_address=original.butcher_address,
        description=f"Storno of {original.invoice_number}",
        period=original.period,
        subtotal=-original.subtotal,
        tax_rate=original.tax_rate,
        tax_amount=-original.tax_amount,
        grand_total=-original.grand_total,
        currency=original.currency,
        status="storno",
        issue_date=now,
        due_date=now.date(),
        is_storno=True,
        storno_of_id=original.id,
        original_invoice_number=original.invoice_number,
        storno_reason=reason,
        created_by=actor,
    )
    for item in original.items:
        storno.items.append(
            InvoiceItem(
                description=item.description,
                item_type=item.item_type,
                quantity=item.quantity,
                unit_price=-item.unit_price,
                total=-item.total,
            )
        )
    db.session.add(storno)
    db.session.flush()
    return storno


def _storno_once(invoice_id: int, reason: str, actor: str) -> StornoResult:
    original = lock_for_update(Invoice.query.filter_by(id=invoice_id)).first()
    if original is None:
        raise NotFound(f"Invoice {invoice_id} not found.")
    if original.is_storno:
        raise ValidationError(f"{original.invoice_number} is a storno invoice and cannot be cancelled.")
    if original.is_cancelled or original.status in CANCELLED_STATUSES:
        raise AlreadyCancelled(f"Invoice {original.invoice_number} is already cancelled.")

    expected_status = original.status
    try:
        storno = _mirror_invoice(original, reason, actor)
    except IntegrityError:
        # Only one storno may reference an invoice; another writer got there first.
        raise AlreadyCancelled(f"Invoice {invoice_id} was cancelled concurrently.") from None

    flipped = compare_and_set_status(
        original,
        expected_status,
        {
            "status": "cancelled",
            "is_cancelled": True,
            "cancelled_at": utc_now(),
            "cancelled_by": actor,
            "cancel_reason": reason,
            "storno_invoice_number": storno.invoice_number,
        },
    )
    if not flipped:
        raise AlreadyCancelled(f"Invoice {invoice_id} changed status concurrently.")

    log_action(
        "invoice",
        original.id,
        "storno",
        performed_by=actor,
        old_data={"status": expected_status, "invoice_number": original.invoice_number},
        new_data={
            "status": "cancelled",
            "invoice_number": original.invoice_number,
            "storno_invoice_number": storno.invoice_number,
        },
        reason=reason,
    )
    db.session.commit()
    return StornoResult(
        success=True,
        storno_invoice_number=storno.invoice_number,
        storno_invoice_id=storno.id,
    )


def storno_invoice(invoice_id: int, reason: str, actor: str) -> StornoResult:
    """Cancel *invoice_id* by issuing a negated storno invoice.

    Never raises for expected failures: returns ``StornoResult`` with
    ``success=False`` and an error code from the billing taxonomy.
    """
    cfg = billing_config()
    reason = (reason or "").strip()
    if len(reason) < cfg.storno_reason_min_length:
        error = ValidationError(
            f"Storno reason must be at least {cfg.storno_reason_min_length} characters."
        )
        return StornoResult(success=False, error=error.message, code=error.code)

    try:
        result = run_with_retry(
            lambda: _storno_once(invoice_id, reason, actor),
            attempts=cfg.counter_retry_attempts,
            backoff_base=cfg.counter_retry_backoff,
        )
    except BillingError as exc:
        db.session.rollback()
        logger.warning("Storno of invoice %s refused: %s", invoice_id, exc.message)
        return StornoResult(success=False, error=exc.message, code=exc.code)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Storno of invoice %s failed", invoice_id)
        error = CounterAllocationFailure("Storno did not complete; nothing was written. Retry.")
        return StornoResult(success=False, error=error.message, code=error.code)

    logger.info(
        "Invoice %s cancelled by storno %s (%s)", invoice_id, result.storno_invoice_number, actor
    )
    return result
