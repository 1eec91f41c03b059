"""Invoice issuing, payment, storno and monthly-run routes."""

import logging

from flask import Blueprint, jsonify, request

from errors import ValidationError
from extensions import limiter
from models import Invoice, VALID_INVOICE_STATUSES
from routes.common import decimal_field, get_actor, int_arg, json_body, require_fields
from services.invoice import (
    Counterparty,
    LineItem,
    create_invoice,
    generate_monthly_invoices,
    get_invoice,
    invoice_to_dict,
    mark_invoice_paid,
    mark_overdue_invoices,
)
from services.plans import get_business
from services.storno import storno_invoice
from utils import parse_date, safe_int

logger = logging.getLogger(__name__)

invoices_bp = Blueprint("invoices", __name__)


def _counterparty(data: dict) -> Counterparty:
    if data.get("business_id") not in (None, ""):
        business = get_business(safe_int(data["business_id"], default=-1))
        return Counterparty.from_business(business)
    require_fields(data, "butcher_name")
    return Counterparty(name=data["butcher_name"], address=data.get("butcher_address") or "")


def _line_items(raw_items) -> list:
    items = []
    for raw in raw_items or []:
        if not isinstance(raw, dict):
            raise ValidationError("Line items must be objects.")
        require_fields(raw, "description", "unit_price")
        quantity = raw.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("Line item quantity must be an integer.")
        items.append(
            LineItem(
                description=raw["description"],
                unit_price=decimal_field(raw, "unit_price"),
                quantity=quantity,
                item_type=raw.get("item_type") or "other",
            )
        )
    return items


@invoices_bp.route("/invoices", methods=["GET"])
def list_invoices():
    query = Invoice.query
    status = request.args.get("status")
    if status:
        if status not in VALID_INVOICE_STATUSES:
            raise ValidationError(f"Unknown invoice status: {status}")
        query = query.filter_by(status=status)
    business_id = int_arg("business_id")
    if business_id is not None:
        query = query.filter_by(business_id=business_id)
    if request.args.get("period"):
        query = query.filter_by(period=request.args["period"])
    invoices = query.order_by(Invoice.sequence_number.desc()).all()
    return jsonify([invoice_to_dict(inv) for inv in invoices])


@invoices_bp.route("/invoices", methods=["POST"])
@limiter.limit("30 per minute")
def create():
    data = json_body()
    require_fields(data, "net_amount")
    invoice = create_invoice(
        _counterparty(data),
        decimal_field(data, "net_amount"),
        data.get("vat_rate_key") or "STANDARD",
        actor=get_actor(),
        description=data.get("description"),
        period=data.get("period"),
        invoice_type=data.get("invoice_type") or "manual",
        line_items=_line_items(data.get("items")),
    )
    return jsonify(invoice_to_dict(invoice)), 201


@invoices_bp.route("/invoices/<int:invoice_id>", methods=["GET"])
def detail(invoice_id: int):
    return jsonify(invoice_to_dict(get_invoice(invoice_id)))


@invoices_bp.route("/invoices/<int:invoice_id>/pay", methods=["POST"])
def pay(invoice_id: int):
    invoice = mark_invoice_paid(invoice_id, actor=get_actor())
    return jsonify(invoice_to_dict(invoice))


@invoices_bp.route("/invoices/<int:invoice_id>/storno", methods=["POST"])
@limiter.limit("10 per minute")
def storno(invoice_id: int):
    data = json_body()
    result = storno_invoice(invoice_id, data.get("reason") or "", get_actor())
    if result.success:
        return jsonify(result.to_dict()), 201
    status = {
        "validation_error": 400,
        "not_found": 404,
        "already_cancelled": 409,
        "counter_allocation_failure": 503,
    }.get(result.code, 500)
    return jsonify(result.to_dict()), status


@invoices_bp.route("/invoices/monthly", methods=["POST"])
@limiter.limit("5 per minute")
def monthly_run():
    data = json_body()
    require_fields(data, "period")
    stats = generate_monthly_invoices(data["period"], actor=get_actor())
    stats["total_amount"] = str(stats["total_amount"])
    return jsonify(stats)


@invoices_bp.route("/invoices/mark-overdue", methods=["POST"])
def mark_overdue():
    data = json_body()
    today = None
    if data.get("today"):
        today = parse_date(data["today"])
        if today is None:
            raise ValidationError("Field 'today' must be YYYY-MM-DD.")
    flagged = mark_overdue_invoices(today, actor=get_actor())
    return jsonify({"marked_overdue": flagged})
