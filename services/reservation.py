"""Reservation confirmation with table-card assignment.

A table card can be held by at most one confirmed reservation of a
business.  The availability check and the assignment run in one
transaction with the business row locked.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from errors import InvalidStateTransition, NotFound, ValidationError
from extensions import db
from models import Business, Reservation
from services.audit import log_action
from services.concurrency import lock_for_update
from services.plans import get_business
from utils import parse_date, utc_now

logger = logging.getLogger(__name__)

RESERVATION_TRANSITIONS = {
    "pending": {"confirmed", "rejected", "cancelled"},
    "confirmed": {"cancelled"},
    "rejected": set(),
    "cancelled": set(),
}


def get_reservation(reservation_id: int) -> Reservation:
    reservation = db.session.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFound(f"Reservation {reservation_id} not found.")
    return reservation


def create_reservation(
    business_id: int,
    customer_name: str,
    reservation_date,
    *,
    party_size: int = 1,
    time_slot: Optional[str] = None,
    customer_phone: Optional[str] = None,
    customer_email: Optional[str] = None,
    notes: Optional[str] = None,
) -> Reservation:
    business = get_business(business_id)
    if not customer_name or not customer_name.strip():
        raise ValidationError("Customer name is required.")
    if isinstance(reservation_date, str):
        reservation_date = parse_date(reservation_date)
    if reservation_date is None:
        raise ValidationError("Reservation date must be YYYY-MM-DD.")
    if party_size < 1:
        raise ValidationError("Party size must be at least 1.")
    reservation = Reservation(
        business_id=business.id,
        customer_name=customer_name.strip(),
        customer_phone=customer_phone,
        customer_email=customer_email,
        party_size=party_size,
        reservation_date=reservation_date,
        time_slot=time_slot,
        notes=notes,
        status="pending",
        table_card_numbers=[],
    )
    db.session.add(reservation)
    db.session.commit()
    return reservation


def occupied_table_cards(business_id: int, exclude_reservation_id: Optional[int] = None) -> set[int]:
    """Table cards currently held by confirmed reservations of the business."""
    query = Reservation.query.filter_by(business_id=business_id, status="confirmed")
    if exclude_reservation_id is not None:
        query = query.filter(Reservation.id != exclude_reservation_id)
    occupied: set[int] = set()
    for reservation in query.all():
        occupied.update(int(n) for n in reservation.table_card_numbers or [])
    return occupied


def _normalize_cards(card_numbers: Iterable) -> list[int]:
    cards = []
    for raw in card_numbers or []:
        if isinstance(raw, bool):
            raise ValidationError(f"Invalid table card number: {raw!r}")
        try:
            card = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid table card number: {raw!r}") from None
        if card not in cards:
            cards.append(card)
    return sorted(cards)


def confirm_reservation(reservation_id: int, card_numbers: Iterable, *, actor: str) -> Reservation:
    """Confirm a pending reservation and hand it the given table cards.

    Raises ``ValidationError`` when a card is outside ``1..max_tables`` or
    already held by another confirmed reservation.
    """
    reservation = get_reservation(reservation_id)
    if reservation.status != "pending":
        raise InvalidStateTransition(
            f"Reservation {reservation.id} is {reservation.status}, only pending ones can be confirmed."
        )
    cards = _normalize_cards(card_numbers)
    if not cards:
        raise ValidationError("At least one table card must be assigned.")

    business = lock_for_update(Business.query.filter_by(id=reservation.business_id)).first()
    max_tables = business.max_tables or 0
    out_of_range = [c for c in cards if c < 1 or c > max_tables]
    if out_of_range:
        raise ValidationError(
            f"Table cards {out_of_range} are outside 1..{max_tables} for this business."
        )
    taken = sorted(set(cards) & occupied_table_cards(business.id, reservation.id))
    if taken:
        raise ValidationError(f"Table cards {taken} are already assigned to another reservation.")

    reservation.status = "confirmed"
    reservation.confirmed_by = actor
    reservation.table_card_numbers = cards
    reservation.table_card_assigned_by = actor
    reservation.table_card_assigned_at = utc_now()
    log_action(
        "reservation",
        reservation.id,
        "status_change",
        performed_by=actor,
        old_data={"status": "pending", "table_card_numbers": []},
        new_data={"status": "confirmed", "table_card_numbers": cards},
    )
    db.session.commit()
    logger.info("Reservation %s confirmed with table cards %s", reservation.id, cards)
    return reservation


def update_reservation_status(reservation_id: int, new_status: str, *, actor: str) -> Reservation:
    """Reject or cancel a reservation.  Cancelling releases its table cards."""
    if new_status == "confirmed":
        raise ValidationError("Use confirm_reservation to confirm with table cards.")
    reservation = get_reservation(reservation_id)
    old_status = reservation.status
    if new_status not in RESERVATION_TRANSITIONS.get(old_status, set()):
        raise InvalidStateTransition(
            f"Reservation {reservation.id} cannot move from {old_status} to {new_status}."
        )
    old_cards = list(reservation.table_card_numbers or [])
    reservation.status = new_status
    reservation.table_card_numbers = []
    log_action(
        "reservation",
        reservation.id,
        "cancel" if new_status == "cancelled" else "status_change",
        performed_by=actor,
        old_data={"status": old_status, "table_card_numbers": old_cards},
        new_data={"status": new_status, "table_card_numbers": []},
    )
    db.session.commit()
    logger.info("Reservation %s moved %s -> %s", reservation.id, old_status, new_status)
    return reservation


def reservation_to_dict(reservation: Reservation) -> dict:
    return {
        "id": reservation.id,
        "business_id": reservation.business_id,
        "customer_name": reservation.customer_name,
        "customer_phone": reservation.customer_phone,
        "customer_email": reservation.customer_email,
        "party_size": reservation.party_size,
        "reservation_date": reservation.reservation_date.isoformat(),
        "time_slot": reservation.time_slot,
        "notes": reservation.notes,
        "status": reservation.status,
        "confirmed_by": reservation.confirmed_by,
        "table_card_numbers": list(reservation.table_card_numbers or []),
    }
