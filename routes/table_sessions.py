"""Group table session routes."""

from flask import Blueprint, jsonify, request

from errors import ValidationError
from routes.common import decimal_field, get_actor, json_body, require_fields
from services.table_session import (
    WHOLE_TABLE,
    add_item,
    advance_session,
    cancel_session,
    confirm_payment,
    get_session,
    join_session,
    list_sessions,
    open_session,
    session_to_dict,
    session_totals,
)
from utils import money_str, safe_int

table_sessions_bp = Blueprint("table_sessions", __name__)


def _business_id_arg() -> int:
    business_id = safe_int(request.args.get("business_id"), default=-1)
    if business_id < 0:
        raise ValidationError("Query parameter 'business_id' is required.")
    return business_id


@table_sessions_bp.route("/table-sessions", methods=["POST"])
def open_table():
    data = json_body()
    require_fields(data, "business_id", "table_number", "host_user_id")
    session = open_session(
        safe_int(data["business_id"], default=-1),
        data["table_number"],
        str(data["host_user_id"]),
        data.get("host_name"),
    )
    return jsonify(session_to_dict(session)), 201


@table_sessions_bp.route("/table-sessions", methods=["GET"])
def list_tables():
    sessions = list_sessions(_business_id_arg(), request.args.get("status") or None)
    return jsonify([session_to_dict(s, include_items=False) for s in sessions])


@table_sessions_bp.route("/table-sessions/report", methods=["GET"])
def report():
    totals = session_totals(list_sessions(_business_id_arg()))
    return jsonify({k: (money_str(v) if k != "sessions" else v) for k, v in totals.items()})


@table_sessions_bp.route("/table-sessions/<int:session_id>", methods=["GET"])
def detail(session_id: int):
    return jsonify(session_to_dict(get_session(session_id)))


@table_sessions_bp.route("/table-sessions/<int:session_id>/participants", methods=["POST"])
def join(session_id: int):
    data = json_body()
    require_fields(data, "user_id")
    participant = join_session(session_id, str(data["user_id"]), data.get("name"))
    return jsonify({"id": participant.id, "user_id": participant.user_id}), 201


@table_sessions_bp.route("/table-sessions/<int:session_id>/items", methods=["POST"])
def add(session_id: int):
    data = json_body()
    require_fields(data, "participant_id", "product_name", "quantity", "unit_price")
    session = add_item(
        session_id,
        safe_int(data["participant_id"], default=-1),
        data.get("product_id"),
        data["product_name"],
        data["quantity"],
        decimal_field(data, "unit_price"),
        item_note=data.get("item_note"),
    )
    return jsonify(session_to_dict(session)), 201


@table_sessions_bp.route("/table-sessions/<int:session_id>/status", methods=["POST"])
def change_status(session_id: int):
    data = json_body()
    require_fields(data, "status")
    session = advance_session(session_id, data["status"], actor=get_actor())
    return jsonify(session_to_dict(session))


@table_sessions_bp.route("/table-sessions/<int:session_id>/payments", methods=["POST"])
def pay(session_id: int):
    data = json_body()
    require_fields(data, "participant_id", "method")
    participant = data["participant_id"]
    if participant != WHOLE_TABLE:
        participant = safe_int(participant, default=-1)
    session = confirm_payment(session_id, participant, data["method"], actor=get_actor())
    return jsonify(session_to_dict(session))


@table_sessions_bp.route("/table-sessions/<int:session_id>/cancel", methods=["POST"])
def cancel(session_id: int):
    data = json_body()
    session = cancel_session(session_id, data.get("reason"), actor=get_actor())
    return jsonify(session_to_dict(session))
