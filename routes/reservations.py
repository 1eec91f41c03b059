"""Reservation and table-card routes."""

from flask import Blueprint, jsonify, request

from models import Reservation
from routes.common import get_actor, int_arg, json_body, require_fields
from services.reservation import (
    confirm_reservation,
    create_reservation,
    occupied_table_cards,
    reservation_to_dict,
    update_reservation_status,
)
from services.plans import get_business
from utils import safe_int

reservations_bp = Blueprint("reservations", __name__)


@reservations_bp.route("/reservations", methods=["POST"])
def create():
    data = json_body()
    require_fields(data, "business_id", "customer_name", "reservation_date")
    reservation = create_reservation(
        safe_int(data["business_id"], default=-1),
        data["customer_name"],
        data["reservation_date"],
        party_size=safe_int(data.get("party_size"), default=1),
        time_slot=data.get("time_slot"),
        customer_phone=data.get("customer_phone"),
        customer_email=data.get("customer_email"),
        notes=data.get("notes"),
    )
    return jsonify(reservation_to_dict(reservation)), 201


@reservations_bp.route("/reservations", methods=["GET"])
def list_reservations():
    query = Reservation.query
    business_id = int_arg("business_id")
    if business_id is not None:
        query = query.filter_by(business_id=business_id)
    if request.args.get("status"):
        query = query.filter_by(status=request.args["status"])
    reservations = query.order_by(Reservation.reservation_date, Reservation.id).all()
    return jsonify([reservation_to_dict(r) for r in reservations])


@reservations_bp.route("/reservations/<int:reservation_id>/confirm", methods=["POST"])
def confirm(reservation_id: int):
    data = json_body()
    require_fields(data, "table_cards")
    reservation = confirm_reservation(reservation_id, data["table_cards"], actor=get_actor())
    return jsonify(reservation_to_dict(reservation))


@reservations_bp.route("/reservations/<int:reservation_id>/status", methods=["POST"])
def change_status(reservation_id: int):
    data = json_body()
    require_fields(data, "status")
    reservation = update_reservation_status(reservation_id, data["status"], actor=get_actor())
    return jsonify(reservation_to_dict(reservation))


@reservations_bp.route("/businesses/<int:business_id>/table-cards", methods=["GET"])
def table_cards(business_id: int):
    business = get_business(business_id)
    occupied = occupied_table_cards(business.id)
    available = [n for n in range(1, (business.max_tables or 0) + 1) if n not in occupied]
    return jsonify({"occupied": sorted(occupied), "available": available})
