"""Invoice business logic.

Invoices are issued once and never deleted.  After insert only the status
and cancellation bookkeeping columns may change; ``register_invoice_guards``
blocks any flush that would touch a monetary or identity column.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from flask import current_app, has_app_context
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import attributes

from errors import AlreadyCancelled, AlreadyPaid, BillingError, NotFound, ValidationError
from extensions import db
from models import (
    IMMUTABLE_INVOICE_FIELDS,
    VALID_INVOICE_TYPES,
    Business,
    BusinessUsage,
    CommissionRecord,
    Invoice,
    InvoiceItem,
)
from services.audit import log_action
from services.commission import set_collection_status
from services.concurrency import run_with_retry
from services.numbering import billing_config, format_invoice_number, get_next_invoice_number
from utils import period_bounds, period_of, quantize_money, to_decimal, utc_now

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
CANCELLED_STATUSES = {"cancelled", "storno"}


@dataclass(frozen=True)
class Counterparty:
    """Buyer snapshot copied onto the invoice at issue time."""
    name: str
    address: str = ""
    business_id: Optional[int] = None

    @classmethod
    def from_business(cls, business: Business) -> "Counterparty":
        return cls(
            name=business.display_name,
            address=business.address_line,
            business_id=business.id,
        )


@dataclass(frozen=True)
class LineItem:
    description: str
    unit_price: Decimal
    quantity: int = 1
    item_type: str = "other"

    @property
    def total(self) -> Decimal:
        return to_decimal(self.unit_price) * self.quantity


def vat_rates() -> dict[str, Decimal]:
    """VAT percentages by key."""
    cfg = billing_config()
    return {
        "STANDARD": to_decimal(cfg.vat_standard),
        "REDUCED": to_decimal(cfg.vat_reduced),
    }


def resolve_vat_rate(vat_rate_key: str) -> Decimal:
    rates = vat_rates()
    key = (vat_rate_key or "").upper()
    if key not in rates:
        raise ValidationError(f"Unknown VAT rate key: {vat_rate_key}")
    return rates[key]


# ---------------------------------------------------------------------------
# Immutability guard
# ---------------------------------------------------------------------------

class InvoiceImmutableError(Exception):
    """Raised when a flush would delete an invoice or rewrite its amounts."""


def _enforce_invoice_immutability(session, flush_context, instances):
    for obj in session.deleted:
        if isinstance(obj, (Invoice, InvoiceItem)):
            raise InvoiceImmutableError(
                f"{type(obj).__name__} {obj.id} cannot be deleted; issue a storno instead."
            )
    for obj in session.dirty:
        if isinstance(obj, Invoice):
            for name in IMMUTABLE_INVOICE_FIELDS:
                if attributes.get_history(obj, name).has_changes():
                    raise InvoiceImmutableError(
                        f"Invoice {obj.invoice_number}: field '{name}' is immutable."
                    )
        elif isinstance(obj, InvoiceItem) and session.is_modified(obj):
            raise InvoiceImmutableError(f"Invoice item {obj.id} is immutable.")


def register_invoice_guards(app):
    """Register the before_flush listener.  Call once during app init."""
    if not event.contains(db.session, "before_flush", _enforce_invoice_immutability):
        event.listen(db.session, "before_flush", _enforce_invoice_immutability)


# ---------------------------------------------------------------------------
# Issuing
# ---------------------------------------------------------------------------

def _issue_invoice(
    counterparty: Counterparty,
    subtotal: Decimal,
    tax_rate: Decimal,
    *,
    actor: str,
    invoice_type: str,
    description: Optional[str],
    period: Optional[str],
    items: list[LineItem],
) -> Invoice:
    """Allocate a number and add the invoice to the session.  Does not commit."""
    issue_date = utc_now()
    sequence = get_next_invoice_number()
    tax = subtotal * tax_rate / HUNDRED

    invoice = Invoice(
        sequence_number=sequence,
        invoice_number=format_invoice_number(sequence, issue_date),
        invoice_type=invoice_type,
        business_id=counterparty.business_id,
        butcher_name=counterparty.name.strip(),
        butcher_address=(counterparty.address or "").strip(),
        description=description,
        period=period or period_of(issue_date),
        subtotal=quantize_money(subtotal),
        tax_rate=tax_rate,
        tax_amount=quantize_money(tax),
        grand_total=quantize_money(subtotal + tax),
        currency=billing_currency(),
        status="pending",
        issue_date=issue_date,
        due_date=issue_date.date() + datetime.timedelta(days=billing_config().payment_due_days),
        created_by=actor,
    )
    for item in items:
        invoice.items.append(
            InvoiceItem(
                description=item.description,
                item_type=item.item_type,
                quantity=item.quantity,
                unit_price=quantize_money(item.unit_price),
                total=quantize_money(item.total),
            )
        )
    db.session.add(invoice)
    db.session.flush()
    log_action(
        "invoice",
        invoice.id,
        "create",
        performed_by=actor,
        new_data={
            "invoice_number": invoice.invoice_number,
            "butcher_name": invoice.butcher_name,
            "subtotal": invoice.subtotal,
            "tax_rate": invoice.tax_rate,
            "grand_total": invoice.grand_total,
            "status": invoice.status,
        },
    )
    return invoice


def billing_currency() -> str:
    if has_app_context() and "APP_CONFIG" in current_app.config:
        return current_app.config["APP_CONFIG"].base_currency
    return "EUR"


def _validated_items(net_amount: Decimal, description: str, invoice_type: str, line_items) -> list[LineItem]:
    if not line_items:
        return [LineItem(description=description, unit_price=net_amount, item_type=invoice_type)]
    for item in line_items:
        if item.quantity <= 0:
            raise ValidationError("Line item quantity must be positive.")
    items_total = sum((item.total for item in line_items), Decimal("0"))
    if quantize_money(items_total) != quantize_money(net_amount):
        raise ValidationError(
            f"Line items total {quantize_money(items_total)} does not match net amount "
            f"{quantize_money(net_amount)}."
        )
    return list(line_items)


def create_invoice(
    counterparty: Counterparty,
    net_amount,
    vat_rate_key: str,
    *,
    actor: str,
    description: Optional[str] = None,
    period: Optional[str] = None,
    invoice_type: str = "manual",
    line_items: Optional[list[LineItem]] = None,
) -> Invoice:
    """Issue a new invoice with the next global invoice number.

    Raises ``ValidationError`` for a blank counterparty name, a non-positive
    amount or an unknown VAT key.  Number allocation is retried as a whole;
    if every attempt fails ``CounterAllocationFailure`` propagates and
    nothing is persisted.
    """
    if not counterparty.name or not counterparty.name.strip():
        raise ValidationError("Counterparty name is required.")
    net = to_decimal(net_amount)
    if not net.is_finite() or net <= 0:
        raise ValidationError("Net amount must be greater than zero.")
    if invoice_type not in VALID_INVOICE_TYPES:
        raise ValidationError(f"Unknown invoice type: {invoice_type}")
    if period:
        try:
            period_bounds(period)
        except ValueError:
            raise ValidationError(f"Invalid period: {period}") from None
    tax_rate = resolve_vat_rate(vat_rate_key)
    description = description or "Manual invoice"
    items = _validated_items(net, description, invoice_type, line_items)

    def _attempt() -> Invoice:
        invoice = _issue_invoice(
            counterparty,
            net,
            tax_rate,
            actor=actor,
            invoice_type=invoice_type,
            description=description,
            period=period,
            items=items,
        )
        db.session.commit()
        return invoice

    cfg = billing_config()
    invoice = run_with_retry(
        _attempt, attempts=cfg.counter_retry_attempts, backoff_base=cfg.counter_retry_backoff
    )
    logger.info(
        "Issued invoice %s to %s: %s %s",
        invoice.invoice_number, invoice.butcher_name, invoice.grand_total, invoice.currency,
    )
    return invoice


def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFound(f"Invoice {invoice_id} not found.")
    return invoice


def compare_and_set_status(invoice: Invoice, expected_status: str, values: dict) -> bool:
    """Update *invoice* only if its stored status is still *expected_status*.

    Returns ``False`` when another writer changed the status first.
    """
    updated = (
        Invoice.query.filter(Invoice.id == invoice.id, Invoice.status == expected_status)
        .update(values, synchronize_session="fetch")
    )
    return updated == 1


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------

PAYABLE_STATUSES = {"pending", "overdue", "failed"}


def mark_invoice_paid(invoice_id: int, *, actor: str) -> Invoice:
    """Record payment of an invoice.  Only the status columns change."""
    invoice = get_invoice(invoice_id)
    old_status = invoice.status
    if invoice.is_storno or old_status in CANCELLED_STATUSES:
        raise AlreadyCancelled(f"Invoice {invoice.invoice_number} is cancelled.")
    if old_status == "paid":
        raise AlreadyPaid(f"Invoice {invoice.invoice_number} is already paid.")
    if old_status not in PAYABLE_STATUSES:
        raise ValidationError(f"Invoice in status {old_status} cannot be paid.")

    paid_at = utc_now()
    if not compare_and_set_status(invoice, old_status, {"status": "paid", "paid_at": paid_at}):
        db.session.rollback()
        current = get_invoice(invoice_id)
        if current.status == "paid":
            raise AlreadyPaid(f"Invoice {current.invoice_number} is already paid.")
        raise AlreadyCancelled(f"Invoice {current.invoice_number} changed status concurrently.")
    log_action(
        "invoice",
        invoice.id,
        "payment_received",
        performed_by=actor,
        old_data={"status": old_status},
        new_data={"status": "paid", "paid_at": paid_at},
    )
    db.session.commit()
    logger.info("Invoice %s marked paid", invoice.invoice_number)
    return invoice


def mark_overdue_invoices(today: Optional[datetime.date] = None, *, actor: str = "system") -> int:
    """Flag pending invoices past their due date as overdue.  Returns the count."""
    today = today or utc_now().date()
    candidates = (
        Invoice.query.filter(
            Invoice.status == "pending",
            Invoice.is_storno.is_(False),
            Invoice.due_date < today,
        )
        .order_by(Invoice.sequence_number)
        .all()
    )
    flagged = 0
    for invoice in candidates:
        if compare_and_set_status(invoice, "pending", {"status": "overdue"}):
            log_action(
                "invoice",
                invoice.id,
                "status_change",
                performed_by=actor,
                old_data={"status": "pending"},
                new_data={"status": "overdue"},
            )
            flagged += 1
    db.session.commit()
    if flagged:
        logger.info("Marked %s invoices overdue", flagged)
    return flagged


# ---------------------------------------------------------------------------
# Monthly run
# ---------------------------------------------------------------------------

def _has_open_invoice(business_id: int, period: str, invoice_type: str) -> bool:
    return (
        Invoice.query.filter(
            Invoice.business_id == business_id,
            Invoice.period == period,
            Invoice.invoice_type == invoice_type,
            Invoice.is_storno.is_(False),
            Invoice.status.notin_(CANCELLED_STATUSES),
        ).first()
        is not None
    )


def _subscription_items(business: Business, period: str) -> list[LineItem]:
    plan = business.plan
    items: list[LineItem] = []
    if plan is None or not plan.is_active:
        return items
    monthly_fee = to_decimal(plan.monthly_fee or 0)
    if monthly_fee > 0:
        items.append(
            LineItem(
                description=f"{plan.name} plan - monthly subscription {period}",
                unit_price=monthly_fee,
                item_type="subscription",
            )
        )
    usage = BusinessUsage.query.filter_by(business_id=business.id, period=period).first()
    overage_fee = to_decimal(plan.order_overage_fee or 0)
    if usage and plan.order_limit is not None and overage_fee > 0:
        extra_orders = (usage.order_count or 0) - plan.order_limit
        if extra_orders > 0:
            items.append(
                LineItem(
                    description=f"Order overage ({extra_orders} orders)",
                    unit_price=overage_fee,
                    quantity=extra_orders,
                    item_type="overage",
                )
            )
    return items


def _issue_commission_invoice(business: Business, period: str, actor: str) -> Optional[Invoice]:
    records = (
        CommissionRecord.query.filter_by(
            business_id=business.id, period=period, collection_status="pending"
        )
        .order_by(CommissionRecord.id)
        .all()
    )
    net = sum((to_decimal(r.net_commission) for r in records), Decimal("0"))
    if net <= 0:
        return None
    invoice = _issue_invoice(
        Counterparty.from_business(business),
        net,
        resolve_vat_rate("STANDARD"),
        actor=actor,
        invoice_type="commission",
        description=f"Commission - {len(records)} orders - {period}",
        period=period,
        items=[
            LineItem(
                description=f"Order commission ({len(records)} orders)",
                unit_price=net,
                item_type="commission",
            )
        ],
    )
    for record in records:
        set_collection_status(
            record.id, "invoiced", actor=actor, invoice_id=invoice.id, commit=False
        )
    return invoice


def generate_monthly_invoices(period: str, *, actor: str = "system") -> dict:
    """Issue subscription and commission invoices for every active business.

    Each invoice is its own transaction; a failure for one business is
    logged and counted without affecting the others.  Businesses that
    already hold an open invoice of a type for *period* are skipped.
    """
    try:
        period_bounds(period)
    except ValueError:
        raise ValidationError(f"Invalid period: {period}") from None

    cfg = billing_config()
    stats = {
        "period": period,
        "subscription_generated": 0,
        "subscription_failed": 0,
        "commission_generated": 0,
        "commission_failed": 0,
        "skipped": 0,
        "total_amount": Decimal("0"),
        "invoice_numbers": [],
    }
    businesses = (
        Business.query.filter_by(is_active=True, subscription_status="active")
        .order_by(Business.id)
        .all()
    )
    logger.info("Monthly invoicing %s: %s active businesses", period, len(businesses))

    for business in businesses:
        for invoice_type in ("subscription", "commission"):
            if _has_open_invoice(business.id, period, invoice_type):
                stats["skipped"] += 1
                continue

            def _attempt(business=business, invoice_type=invoice_type):
                if invoice_type == "subscription":
                    items = _subscription_items(business, period)
                    if not items:
                        return None
                    net = sum((item.total for item in items), Decimal("0"))
                    invoice = _issue_invoice(
                        Counterparty.from_business(business),
                        net,
                        resolve_vat_rate("STANDARD"),
                        actor=actor,
                        invoice_type="subscription",
                        description=f"{business.plan.name} subscription - {period}",
                        period=period,
                        items=items,
                    )
                else:
                    invoice = _issue_commission_invoice(business, period, actor)
                if invoice is not None:
                    db.session.commit()
                return invoice

            try:
                invoice = run_with_retry(
                    _attempt,
                    attempts=cfg.counter_retry_attempts,
                    backoff_base=cfg.counter_retry_backoff,
                )
            except (BillingError, SQLAlchemyError):
                db.session.rollback()
                logger.exception(
                    "Monthly invoicing: %s invoice for business %s failed", invoice_type, business.id
                )
                stats[f"{invoice_type}_failed"] += 1
                continue
            if invoice is None:
                continue
            stats[f"{invoice_type}_generated"] += 1
            stats["total_amount"] += to_decimal(invoice.grand_total)
            stats["invoice_numbers"].append(invoice.invoice_number)
            logger.info(
                "Created %s invoice %s for %s - %s",
                invoice_type, invoice.invoice_number, invoice.butcher_name, invoice.grand_total,
            )

    logger.info(
        "Monthly invoicing %s completed: %s subscription, %s commission, %s failed",
        period,
        stats["subscription_generated"],
        stats["commission_generated"],
        stats["subscription_failed"] + stats["commission_failed"],
    )
    return stats


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def invoice_to_dict(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "sequence_number": invoice.sequence_number,
        "invoice_type": invoice.invoice_type,
        "business_id": invoice.business_id,
        "butcher_name": invoice.butcher_name,
        "butcher_address": invoice.butcher_address,
        "description": invoice.description,
        "period": invoice.period,
        "subtotal": str(invoice.subtotal),
        "tax_rate": str(invoice.tax_rate),
        "tax_amount": str(invoice.tax_amount),
        "grand_total": str(invoice.grand_total),
        "currency": invoice.currency,
        "status": invoice.status,
        "issue_date": invoice.issue_date.isoformat() if invoice.issue_date else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
        "is_storno": invoice.is_storno,
        "is_cancelled": invoice.is_cancelled,
        "storno_of_id": invoice.storno_of_id,
        "original_invoice_number": invoice.original_invoice_number,
        "storno_invoice_number": invoice.storno_invoice_number,
        "cancel_reason": invoice.cancel_reason,
        "items": [
            {
                "description": item.description,
                "item_type": item.item_type,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "total": str(item.total),
            }
            for item in invoice.items
        ],
    }
