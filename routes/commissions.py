"""Commission recording, plans and reporting routes."""

import logging

from flask import Blueprint, jsonify, request

from errors import ValidationError
from extensions import db
from models import SubscriptionPlan
from routes.common import decimal_field, get_actor, int_arg, json_body, require_fields
from services.commission import (
    OrderEvent,
    compute_commission,
    count_plan_orders,
    record_commission,
    set_collection_status,
    summarize_commissions,
)
from services.plans import get_business, get_business_plan, upsert_plan
from utils import money_str, parse_datetime, safe_int, utc_now

logger = logging.getLogger(__name__)

commissions_bp = Blueprint("commissions", __name__)

PLAN_FIELDS = (
    "name",
    "monthly_fee",
    "commission_click_collect",
    "commission_own_courier",
    "commission_lokma_courier",
    "per_order_fee_type",
    "per_order_fee_amount",
    "free_order_count",
    "vat_rate",
    "order_limit",
    "order_overage_fee",
    "is_active",
)


def _order_event(data: dict) -> OrderEvent:
    require_fields(data, "order_id", "business_id", "order_total", "courier_type", "payment_method")
    created_at = utc_now()
    if data.get("created_at"):
        created_at = parse_datetime(data["created_at"])
        if created_at is None:
            raise ValidationError("Field 'created_at' must be an ISO-8601 datetime.")
    return OrderEvent(
        order_id=str(data["order_id"]),
        business_id=safe_int(data["business_id"], default=-1),
        order_total=decimal_field(data, "order_total"),
        courier_type=data["courier_type"],
        payment_method=data["payment_method"],
        created_at=created_at,
        order_number=data.get("order_number"),
    )


def _optional_str(value):
    return None if value is None else str(value)


def _record_to_dict(record) -> dict:
    return {
        "id": record.id,
        "order_id": record.order_id,
        "business_id": record.business_id,
        "plan_name": record.plan_name,
        "period": record.period,
        "order_total": money_str(record.order_total),
        "courier_type": record.courier_type,
        "payment_method": record.payment_method,
        "commission_rate": str(record.commission_rate),
        "commission_amount": money_str(record.commission_amount),
        "per_order_fee": money_str(record.per_order_fee),
        "net_commission": money_str(record.net_commission),
        "vat_rate": str(record.vat_rate),
        "vat_amount": money_str(record.vat_amount),
        "total_commission": money_str(record.total_commission),
        "is_free_order": record.is_free_order,
        "collection_status": record.collection_status,
        "invoice_id": record.invoice_id,
    }


@commissions_bp.route("/commissions", methods=["POST"])
def record():
    """Record the commission for a delivered order (idempotent on order_id)."""
    event = _order_event(json_body())
    commission = record_commission(event, actor=get_actor())
    return jsonify(_record_to_dict(commission)), 201


@commissions_bp.route("/commissions/preview", methods=["POST"])
def preview():
    """Compute a commission without storing it."""
    event = _order_event(json_body())
    business = get_business(event.business_id)
    plan = get_business_plan(business)
    result = compute_commission(event, plan, count_plan_orders(business.id, plan.plan_id))
    data = {k: str(v) for k, v in result.monetary_fields().items()}
    data.update(
        plan_name=result.plan_name,
        period=result.period,
        collection_status=result.collection_status,
    )
    return jsonify(data)


@commissions_bp.route("/commissions/<int:record_id>/status", methods=["POST"])
def update_status(record_id: int):
    data = json_body()
    require_fields(data, "status")
    commission = set_collection_status(record_id, data["status"], actor=get_actor())
    return jsonify(_record_to_dict(commission))


@commissions_bp.route("/commissions/summary", methods=["GET"])
def summary():
    summaries, totals = summarize_commissions(
        period=request.args.get("period") or None,
        business_id=int_arg("business_id"),
        collection_status=request.args.get("collection_status") or None,
    )
    return jsonify({
        "businesses": [s.to_dict() for s in summaries],
        "totals": {k: str(v) for k, v in totals.items()},
    })


@commissions_bp.route("/plans", methods=["GET"])
def list_plans():
    plans = SubscriptionPlan.query.order_by(SubscriptionPlan.monthly_fee).all()
    return jsonify([
        {
            "id": p.id,
            "code": p.code,
            "name": p.name,
            "monthly_fee": money_str(p.monthly_fee or 0),
            "commission_click_collect": _optional_str(p.commission_click_collect),
            "commission_own_courier": _optional_str(p.commission_own_courier),
            "commission_lokma_courier": _optional_str(p.commission_lokma_courier),
            "per_order_fee_type": p.per_order_fee_type,
            "per_order_fee_amount": money_str(p.per_order_fee_amount or 0),
            "free_order_count": p.free_order_count,
            "is_active": p.is_active,
        }
        for p in plans
    ])


@commissions_bp.route("/plans/<code>", methods=["PUT"])
def put_plan(code: str):
    data = json_body()
    unknown = sorted(set(data) - set(PLAN_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown plan fields: {', '.join(unknown)}")
    plan = upsert_plan(code, **data)
    db.session.commit()
    logger.info("Plan %s saved by %s", plan.code, get_actor())
    return jsonify({"id": plan.id, "code": plan.code, "name": plan.name})
