"""Commission computation and commission-record bookkeeping.

``compute_commission`` is a pure function over an order event and a plan
snapshot.  ``record_commission`` wraps it with the write-once persistence
rules: one record per order id, re-deliveries return the stored record.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError

from errors import InvalidStateTransition, NotFound, ValidationError
from extensions import db
from models import (
    AUTO_COLLECTED_PAYMENT_METHODS,
    ORDER_PAYMENT_METHODS,
    BusinessUsage,
    CommissionRecord,
)
from services.audit import log_action
from services.plans import PlanSnapshot, get_business, get_business_plan, get_commission_rate
from utils import period_of, quantize_money, to_decimal, utc_now

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")

# Allowed collection-status edges.  auto_collected and paid are terminal.
COLLECTION_TRANSITIONS = {
    "pending": {"invoiced", "paid"},
    "invoiced": {"paid"},
    "auto_collected": set(),
    "paid": set(),
}


@dataclass(frozen=True)
class OrderEvent:
    """A billable order as delivered by the order system."""
    order_id: str
    business_id: int
    order_total: Decimal
    courier_type: str
    payment_method: str
    created_at: datetime.datetime
    order_number: Optional[str] = None


@dataclass(frozen=True)
class CommissionResult:
    order_id: str
    business_id: int
    period: str
    plan_id: Optional[int]
    plan_name: str
    order_total: Decimal
    courier_type: str
    payment_method: str
    commission_rate: Decimal
    commission_amount: Decimal
    per_order_fee: Decimal
    net_commission: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_commission: Decimal
    is_free_order: bool
    collection_status: str

    def monetary_fields(self) -> dict:
        return {
            "commission_rate": self.commission_rate,
            "commission_amount": self.commission_amount,
            "per_order_fee": self.per_order_fee,
            "net_commission": self.net_commission,
            "vat_rate": self.vat_rate,
            "vat_amount": self.vat_amount,
            "total_commission": self.total_commission,
        }


def _per_order_fee(plan: PlanSnapshot, order_total: Decimal) -> Decimal:
    if plan.per_order_fee_type == "fixed":
        return plan.per_order_fee_amount
    if plan.per_order_fee_type == "percentage":
        return order_total * plan.per_order_fee_amount / HUNDRED
    return Decimal("0")


def compute_commission(
    order: OrderEvent, plan: PlanSnapshot, free_orders_used: int
) -> CommissionResult:
    """Compute the commission owed on *order* under *plan*.

    *free_orders_used* is the number of orders the business has already
    placed under this plan; while it is below ``plan.free_order_count`` the
    order is free.  Commission, fee and VAT are each rounded to cents from
    unrounded inputs; net and total are the sums of the rounded parts, so
    the stored fields always add up.
    """
    order_total = to_decimal(order.order_total)
    if not order_total.is_finite() or order_total < 0:
        raise ValidationError("Order total must be a finite, non-negative amount.")
    if order.payment_method not in ORDER_PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method: {order.payment_method}")
    rate = get_commission_rate(plan, order.courier_type)

    is_free = free_orders_used < plan.free_order_count
    if is_free:
        commission = Decimal("0")
        fee = Decimal("0")
    else:
        commission = order_total * rate / HUNDRED
        fee = _per_order_fee(plan, order_total)

    commission_q = quantize_money(commission)
    fee_q = quantize_money(fee)
    vat_q = quantize_money((commission + fee) * plan.vat_rate / HUNDRED)
    net_q = commission_q + fee_q

    if is_free or order.payment_method in AUTO_COLLECTED_PAYMENT_METHODS:
        collection_status = "auto_collected"
    else:
        collection_status = "pending"

    return CommissionResult(
        order_id=order.order_id,
        business_id=order.business_id,
        period=period_of(order.created_at),
        plan_id=plan.plan_id,
        plan_name=plan.plan_name,
        order_total=quantize_money(order_total),
        courier_type=order.courier_type,
        payment_method=order.payment_method,
        commission_rate=rate,
        commission_amount=commission_q,
        per_order_fee=fee_q,
        net_commission=net_q,
        vat_rate=plan.vat_rate,
        vat_amount=vat_q,
        total_commission=net_q + vat_q,
        is_free_order=is_free,
        collection_status=collection_status,
    )


def count_plan_orders(business_id: int, plan_id: Optional[int]) -> int:
    """Return how many commission records the business has under *plan_id*."""
    query = CommissionRecord.query.filter_by(business_id=business_id)
    if plan_id is None:
        query = query.filter(CommissionRecord.plan_id.is_(None))
    else:
        query = query.filter(CommissionRecord.plan_id == plan_id)
    return query.count()


def _bump_usage(record: CommissionRecord) -> None:
    usage = BusinessUsage.query.filter_by(
        business_id=record.business_id, period=record.period
    ).first()
    if usage is None:
        usage = BusinessUsage(
            business_id=record.business_id,
            period=record.period,
            order_count=0,
            commission_total=Decimal("0"),
        )
        db.session.add(usage)
    usage.order_count = (usage.order_count or 0) + 1
    usage.commission_total = to_decimal(usage.commission_total or 0) + record.total_commission
    usage.last_order_at = utc_now()


def record_commission(order: OrderEvent, *, actor: str = "system") -> CommissionRecord:
    """Persist the commission for *order* exactly once.

    Re-delivery of an already recorded ``order_id`` returns the stored
    record unchanged.
    """
    existing = CommissionRecord.query.filter_by(order_id=order.order_id).first()
    if existing is not None:
        logger.info("Commission for order %s already recorded, skipping", order.order_id)
        return existing

    business = get_business(order.business_id)
    plan = get_business_plan(business)
    used = count_plan_orders(business.id, plan.plan_id)
    result = compute_commission(order, plan, used)

    record = CommissionRecord(
        order_id=result.order_id,
        order_number=order.order_number,
        business_id=business.id,
        business_name=business.display_name,
        plan_id=result.plan_id,
        plan_name=result.plan_name,
        period=result.period,
        order_total=result.order_total,
        courier_type=result.courier_type,
        payment_method=result.payment_method,
        commission_rate=result.commission_rate,
        commission_amount=result.commission_amount,
        per_order_fee=result.per_order_fee,
        net_commission=result.net_commission,
        vat_rate=result.vat_rate,
        vat_amount=result.vat_amount,
        total_commission=result.total_commission,
        is_free_order=result.is_free_order,
        collection_status=result.collection_status,
        order_created_at=order.created_at,
    )
    try:
        db.session.add(record)
        db.session.flush()
    except IntegrityError:
        # Concurrent delivery of the same order won the insert.
        db.session.rollback()
        logger.info("Commission for order %s recorded concurrently", order.order_id)
        winner = CommissionRecord.query.filter_by(order_id=order.order_id).first()
        if winner is None:
            raise
        return winner

    _bump_usage(record)
    log_action(
        "commission",
        record.id,
        "commission_recorded",
        performed_by=actor,
        new_data={
            "order_id": record.order_id,
            "total_commission": record.total_commission,
            "collection_status": record.collection_status,
        },
    )
    db.session.commit()
    logger.info(
        "Recorded commission %s for order %s (business %s, %s)",
        record.total_commission, record.order_id, record.business_id, record.collection_status,
    )
    return record


def set_collection_status(
    record_id: int,
    new_status: str,
    *,
    actor: str,
    invoice_id: Optional[int] = None,
    commit: bool = True,
) -> CommissionRecord:
    """Move a commission record along its collection-status edges."""
    record = db.session.get(CommissionRecord, record_id)
    if record is None:
        raise NotFound(f"Commission record {record_id} not found.")
    old_status = record.collection_status
    if new_status not in COLLECTION_TRANSITIONS.get(old_status, set()):
        raise InvalidStateTransition(
            f"Collection status cannot change from {old_status} to {new_status}."
        )
    record.collection_status = new_status
    if invoice_id is not None:
        record.invoice_id = invoice_id
    log_action(
        "commission",
        record.id,
        "status_change",
        performed_by=actor,
        old_data={"collection_status": old_status},
        new_data={"collection_status": new_status, "invoice_id": record.invoice_id},
    )
    if commit:
        db.session.commit()
    return record


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

@dataclass
class BusinessSummary:
    business_id: int
    business_name: str
    plan_name: str
    total_orders: int = 0
    total_order_amount: Decimal = Decimal("0")
    total_commission: Decimal = Decimal("0")
    card_commission: Decimal = Decimal("0")
    cash_commission: Decimal = Decimal("0")
    pending_amount: Decimal = Decimal("0")
    collected_amount: Decimal = Decimal("0")
    vat_total: Decimal = Decimal("0")
    record_ids: list = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {k: v for k, v in self.__dict__.items() if k != "record_ids"}
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in data.items()}


def summarize_commissions(
    period: Optional[str] = None,
    business_id: Optional[int] = None,
    collection_status: Optional[str] = None,
) -> tuple[list[BusinessSummary], dict]:
    """Roll commission records up into per-business summaries.

    Business names are resolved from the live business row; the name stored
    on the record is only a fallback for businesses that no longer exist.
    Returns ``(summaries sorted by total commission desc, platform totals)``.
    """
    query = CommissionRecord.query
    if period:
        query = query.filter_by(period=period)
    if business_id is not None:
        query = query.filter_by(business_id=business_id)
    if collection_status:
        query = query.filter_by(collection_status=collection_status)

    summaries: dict[int, BusinessSummary] = {}
    for record in query.order_by(CommissionRecord.id).all():
        summary = summaries.get(record.business_id)
        if summary is None:
            live_name = record.business.display_name if record.business else None
            summary = BusinessSummary(
                business_id=record.business_id,
                business_name=live_name or record.business_name or "",
                plan_name=record.plan_name or "",
            )
            summaries[record.business_id] = summary
        amount = to_decimal(record.total_commission)
        summary.total_orders += 1
        summary.total_order_amount += to_decimal(record.order_total)
        summary.total_commission += amount
        summary.vat_total += to_decimal(record.vat_amount)
        summary.record_ids.append(record.id)
        if record.payment_method in AUTO_COLLECTED_PAYMENT_METHODS:
            summary.card_commission += amount
        else:
            summary.cash_commission += amount
        if record.collection_status in ("pending", "invoiced"):
            summary.pending_amount += amount
        else:
            summary.collected_amount += amount

    ordered = sorted(summaries.values(), key=lambda s: s.total_commission, reverse=True)
    totals = {
        "total_orders": sum(s.total_orders for s in ordered),
        "total_order_amount": sum((s.total_order_amount for s in ordered), Decimal("0")),
        "total_commission": sum((s.total_commission for s in ordered), Decimal("0")),
        "pending_amount": sum((s.pending_amount for s in ordered), Decimal("0")),
        "collected_amount": sum((s.collected_amount for s in ordered), Decimal("0")),
        "card_commission": sum((s.card_commission for s in ordered), Decimal("0")),
        "cash_commission": sum((s.cash_commission for s in ordered), Decimal("0")),
        "vat_total": sum((s.vat_total for s in ordered), Decimal("0")),
    }
    return ordered, totals
