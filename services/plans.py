"""Subscription plan lookup and commission-rate resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from errors import NotFound, ValidationError
from extensions import db
from models import COURIER_TYPES, PER_ORDER_FEE_TYPES, Business, SubscriptionPlan
from utils import to_decimal

logger = logging.getLogger(__name__)

# Rates applied when a plan leaves a courier rate unset (percent).
DEFAULT_COMMISSION_RATES = {
    "click_collect": Decimal("5"),
    "own_courier": Decimal("4"),
    "lokma_courier": Decimal("7"),
}
DEFAULT_VAT_RATE = Decimal("19")

_FEE_TYPE_ALIASES = {"flat": "fixed"}


@dataclass(frozen=True)
class PlanSnapshot:
    """Read-only view of a plan, captured when a commission is computed."""
    plan_id: Optional[int]
    plan_name: str
    commission_click_collect: Optional[Decimal]
    commission_own_courier: Optional[Decimal]
    commission_lokma_courier: Optional[Decimal]
    per_order_fee_type: str = "none"
    per_order_fee_amount: Decimal = Decimal("0")
    free_order_count: int = 0
    vat_rate: Decimal = DEFAULT_VAT_RATE
    monthly_fee: Decimal = Decimal("0")


DEFAULT_PLAN = PlanSnapshot(
    plan_id=None,
    plan_name="Default",
    commission_click_collect=None,
    commission_own_courier=None,
    commission_lokma_courier=None,
)


def normalize_fee_type(fee_type: Optional[str]) -> str:
    fee_type = _FEE_TYPE_ALIASES.get(fee_type or "none", fee_type or "none")
    if fee_type not in PER_ORDER_FEE_TYPES:
        raise ValidationError(f"Unknown per-order fee type: {fee_type}")
    return fee_type


def _optional_decimal(value) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def get_plan_snapshot(plan: Optional[SubscriptionPlan]) -> PlanSnapshot:
    """Freeze *plan* into a ``PlanSnapshot``; ``None`` yields the default plan."""
    if plan is None:
        return DEFAULT_PLAN
    return PlanSnapshot(
        plan_id=plan.id,
        plan_name=plan.name,
        commission_click_collect=_optional_decimal(plan.commission_click_collect),
        commission_own_courier=_optional_decimal(plan.commission_own_courier),
        commission_lokma_courier=_optional_decimal(plan.commission_lokma_courier),
        per_order_fee_type=normalize_fee_type(plan.per_order_fee_type),
        per_order_fee_amount=to_decimal(plan.per_order_fee_amount or 0),
        free_order_count=plan.free_order_count or 0,
        vat_rate=to_decimal(plan.vat_rate if plan.vat_rate is not None else DEFAULT_VAT_RATE),
        monthly_fee=to_decimal(plan.monthly_fee or 0),
    )


def get_commission_rate(plan: PlanSnapshot, courier_type: str) -> Decimal:
    """Return the commission percentage *plan* charges for *courier_type*."""
    if courier_type not in COURIER_TYPES:
        raise ValidationError(f"Unknown courier type: {courier_type}")
    rate = {
        "click_collect": plan.commission_click_collect,
        "own_courier": plan.commission_own_courier,
        "lokma_courier": plan.commission_lokma_courier,
    }[courier_type]
    if rate is None:
        return DEFAULT_COMMISSION_RATES[courier_type]
    return rate


def get_business(business_id: int) -> Business:
    business = db.session.get(Business, business_id)
    if business is None:
        raise NotFound(f"Business {business_id} not found.")
    return business


def get_business_plan(business: Business) -> PlanSnapshot:
    """Return the snapshot of the business's active plan.

    Businesses without a plan, or on a deactivated plan, are billed under
    ``DEFAULT_PLAN``.
    """
    plan = business.plan
    if plan is not None and not plan.is_active:
        logger.warning(
            "Business %s is on inactive plan %s, using default rates", business.id, plan.code
        )
        plan = None
    return get_plan_snapshot(plan)


def upsert_plan(code: str, **fields) -> SubscriptionPlan:
    """Create or update the plan identified by *code*.  Does not commit."""
    if "per_order_fee_type" in fields:
        fields["per_order_fee_type"] = normalize_fee_type(fields["per_order_fee_type"])
    plan = SubscriptionPlan.query.filter_by(code=code).first()
    if plan is None:
        plan = SubscriptionPlan(code=code, name=fields.pop("name", code.title()))
        db.session.add(plan)
    for key, value in fields.items():
        if not hasattr(plan, key):
            raise ValidationError(f"Unknown plan field: {key}")
        setattr(plan, key, value)
    db.session.flush()
    return plan


DEFAULT_PLANS = [
    {
        "code": "free",
        "name": "Free",
        "monthly_fee": Decimal("0.00"),
        "commission_click_collect": Decimal("8"),
        "commission_own_courier": Decimal("0"),
        "commission_lokma_courier": Decimal("0"),
        "free_order_count": 5,
        "order_limit": 50,
    },
    {
        "code": "basic",
        "name": "Basic",
        "monthly_fee": Decimal("29.99"),
        "commission_click_collect": Decimal("6"),
        "commission_own_courier": Decimal("5"),
        "commission_lokma_courier": Decimal("8"),
        "free_order_count": 10,
        "order_limit": 200,
        "order_overage_fee": Decimal("0.50"),
    },
    {
        "code": "pro",
        "name": "Pro",
        "monthly_fee": Decimal("59.99"),
        "commission_click_collect": Decimal("4"),
        "commission_own_courier": Decimal("3"),
        "commission_lokma_courier": Decimal("6"),
        "per_order_fee_type": "fixed",
        "per_order_fee_amount": Decimal("0.50"),
    },
]


def seed_default_plans() -> int:
    """Create the default subscription plans that don't exist yet.  Returns the count created."""
    created = 0
    for plan_data in DEFAULT_PLANS:
        fields = dict(plan_data)
        code = fields.pop("code")
        if SubscriptionPlan.query.filter_by(code=code).first() is not None:
            continue
        upsert_plan(code, **fields)
        created += 1
    db.session.commit()
    if created:
        logger.info("Seeded %s default subscription plans", created)
    return created
