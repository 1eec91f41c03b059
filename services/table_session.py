"""Group table sessions: a shared dine-in check with per-participant payment.

Status flows ``active -> ordering -> paying -> closed``; any non-terminal
status may move to ``cancelled``.  ``closed`` and ``cancelled`` are terminal.
Totals are recomputed from the participants on every write, so
``grand_total`` always equals the sum of participant subtotals.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional, Union

from errors import AlreadyPaid, InvalidStateTransition, NotFound, ValidationError
from extensions import db
from models import (
    ORDER_PAYMENT_METHODS,
    Business,
    TableGroupItem,
    TableGroupSession,
    TableParticipant,
)
from services.audit import log_action
from services.concurrency import lock_for_update
from services.plans import get_business
from utils import quantize_money, to_decimal, utc_now

logger = logging.getLogger(__name__)

WHOLE_TABLE = "whole-table"
DEFAULT_CANCEL_REASON = "Cancelled by staff"

SESSION_TRANSITIONS = {
    "active": {"ordering", "cancelled"},
    "ordering": {"paying", "cancelled"},
    "paying": {"closed", "cancelled"},
    "closed": set(),
    "cancelled": set(),
}
TERMINAL_STATUSES = {"closed", "cancelled"}
ITEM_EDITABLE_STATUSES = {"active", "ordering"}


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

def can_transition(current: str, new_status: str) -> bool:
    return new_status in SESSION_TRANSITIONS.get(current, set())


def transition(session: TableGroupSession, new_status: str) -> TableGroupSession:
    """Move *session* to *new_status* or raise ``InvalidStateTransition``.  Does not commit."""
    if not can_transition(session.status, new_status):
        raise InvalidStateTransition(
            f"Table session {session.id} cannot move from {session.status} to {new_status}."
        )
    session.status = new_status
    if new_status in TERMINAL_STATUSES:
        session.closed_at = utc_now()
    return session


def _require_open(session: TableGroupSession, action: str) -> None:
    if session.status in TERMINAL_STATUSES:
        raise InvalidStateTransition(
            f"Cannot {action}: table session {session.id} is {session.status}."
        )


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_session(session_id: int, *, for_update: bool = False) -> TableGroupSession:
    query = TableGroupSession.query.filter_by(id=session_id)
    if for_update:
        query = lock_for_update(query)
    session = query.first()
    if session is None:
        raise NotFound(f"Table session {session_id} not found.")
    return session


def _get_participant(session: TableGroupSession, participant_id: int) -> TableParticipant:
    for participant in session.participants:
        if participant.id == participant_id:
            return participant
    raise NotFound(f"Participant {participant_id} is not part of table session {session.id}.")


def list_sessions(business_id: int, status: Optional[str] = None) -> list[TableGroupSession]:
    query = TableGroupSession.query.filter_by(business_id=business_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(TableGroupSession.created_at.desc(), TableGroupSession.id.desc()).all()


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------

def _recompute_totals(session: TableGroupSession) -> None:
    grand = Decimal("0")
    paid = Decimal("0")
    for participant in session.participants:
        subtotal = sum((to_decimal(i.total_price) for i in participant.items), Decimal("0"))
        participant.subtotal = quantize_money(subtotal)
        grand += participant.subtotal
        if participant.payment_status == "paid":
            paid += participant.subtotal
    session.grand_total = quantize_money(grand)
    if session.payment_type == "whole_table":
        session.paid_total = session.grand_total
    else:
        session.paid_total = quantize_money(paid)


def aggregate_items(session) -> list[dict]:
    """Sum every participant's items into one line per product.

    Lines are keyed by ``product_id``, falling back to the product name for
    items without one.  Pure: reads the session, writes nothing.  The
    result is sorted by product name so participant order does not matter.
    """
    grouped: dict[str, dict] = {}
    for participant in session.participants:
        for item in participant.items:
            key = f"id:{item.product_id}" if item.product_id else f"name:{item.product_name}"
            line = grouped.get(key)
            if line is None:
                line = grouped[key] = {
                    "product_id": item.product_id or None,
                    "product_name": item.product_name,
                    "quantity": 0,
                    "total_price": Decimal("0"),
                }
            line["quantity"] += item.quantity
            line["total_price"] += to_decimal(item.total_price)

    lines = []
    for key in sorted(grouped, key=lambda k: (grouped[k]["product_name"], k)):
        line = grouped[key]
        line["total_price"] = quantize_money(line["total_price"])
        line["unit_price"] = quantize_money(line["total_price"] / line["quantity"])
        lines.append(line)
    return lines


def session_totals(sessions: Iterable[TableGroupSession]) -> dict:
    """Roll sessions up for reporting.

    A cancelled session's unpaid remainder counts as written off, never as
    outstanding.
    """
    totals = {
        "sessions": 0,
        "billed": Decimal("0"),
        "paid": Decimal("0"),
        "outstanding": Decimal("0"),
        "written_off": Decimal("0"),
    }
    for session in sessions:
        grand = to_decimal(session.grand_total or 0)
        paid = to_decimal(session.paid_total or 0)
        remainder = grand - paid
        totals["sessions"] += 1
        totals["billed"] += grand
        totals["paid"] += paid
        if session.status == "cancelled":
            totals["written_off"] += remainder
        else:
            totals["outstanding"] += remainder
    return totals


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def open_session(
    business_id: int, table_number, host_user_id: str, host_name: Optional[str] = None
) -> TableGroupSession:
    """Open a table with the host as first participant."""
    business = get_business(business_id)
    table_number = str(table_number or "").strip()
    if not table_number:
        raise ValidationError("Table number is required.")
    if not host_user_id:
        raise ValidationError("Host user id is required.")

    lock_for_update(Business.query.filter_by(id=business.id)).first()
    open_on_table = TableGroupSession.query.filter(
        TableGroupSession.business_id == business.id,
        TableGroupSession.table_number == table_number,
        TableGroupSession.status.notin_(TERMINAL_STATUSES),
    ).first()
    if open_on_table is not None:
        raise ValidationError(
            f"Table {table_number} already has an open session ({open_on_table.id})."
        )

    session = TableGroupSession(
        business_id=business.id,
        table_number=table_number,
        status="active",
        host_user_id=host_user_id,
        host_name=host_name,
        grand_total=Decimal("0"),
        paid_total=Decimal("0"),
    )
    session.participants.append(
        TableParticipant(
            user_id=host_user_id,
            name=host_name,
            is_host=True,
            subtotal=Decimal("0"),
            payment_status="pending",
        )
    )
    db.session.add(session)
    db.session.flush()
    log_action(
        "table_session",
        session.id,
        "create",
        performed_by=host_user_id,
        new_data={"table_number": table_number, "business_id": business.id},
    )
    db.session.commit()
    logger.info("Opened table session %s on table %s (business %s)", session.id, table_number, business.id)
    return session


def join_session(session_id: int, user_id: str, name: Optional[str] = None) -> TableParticipant:
    session = get_session(session_id, for_update=True)
    _require_open(session, "join")
    if session.status == "paying":
        raise InvalidStateTransition(f"Table session {session.id} is already settling.")
    if not user_id:
        raise ValidationError("User id is required.")
    for participant in session.participants:
        if participant.user_id == user_id:
            return participant
    participant = TableParticipant(
        user_id=user_id, name=name, is_host=False, subtotal=Decimal("0"), payment_status="pending"
    )
    session.participants.append(participant)
    db.session.commit()
    return participant


def add_item(
    session_id: int,
    participant_id: int,
    product_id: Optional[str],
    product_name: str,
    quantity,
    unit_price,
    item_note: Optional[str] = None,
) -> TableGroupSession:
    """Add a line to a participant's order and refresh the totals."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer.")
    price = to_decimal(unit_price)
    if not price.is_finite() or price < 0:
        raise ValidationError("Unit price must be a finite, non-negative amount.")
    if not product_name or not str(product_name).strip():
        raise ValidationError("Product name is required.")

    session = get_session(session_id, for_update=True)
    if session.status not in ITEM_EDITABLE_STATUSES:
        raise InvalidStateTransition(
            f"Items cannot be added while table session {session.id} is {session.status}."
        )
    participant = _get_participant(session, participant_id)
    if participant.payment_status == "paid":
        raise AlreadyPaid(f"Participant {participant.id} has already paid.")

    participant.items.append(
        TableGroupItem(
            product_id=str(product_id) if product_id else None,
            product_name=str(product_name).strip(),
            quantity=quantity,
            unit_price=quantize_money(price),
            total_price=quantize_money(price * quantity),
            item_note=item_note,
        )
    )
    _recompute_totals(session)
    db.session.commit()
    return session


def advance_session(session_id: int, new_status: str, *, actor: str) -> TableGroupSession:
    """Staff-triggered status change along the state machine."""
    session = get_session(session_id, for_update=True)
    if new_status == "cancelled":
        raise ValidationError("Use cancel_session to cancel a table session.")
    old_status = session.status
    transition(session, new_status)
    log_action(
        "table_session",
        session.id,
        "status_change",
        performed_by=actor,
        old_data={"status": old_status},
        new_data={"status": new_status},
    )
    db.session.commit()
    logger.info("Table session %s moved %s -> %s by %s", session.id, old_status, new_status, actor)
    return session


def _mark_participant_paid(participant: TableParticipant, method: str) -> bool:
    """Conditional update; ``False`` when the participant was already paid."""
    updated = (
        TableParticipant.query.filter(
            TableParticipant.id == participant.id,
            TableParticipant.payment_status == "pending",
        )
        .update(
            {"payment_status": "paid", "payment_method": method, "paid_at": utc_now()},
            synchronize_session="fetch",
        )
    )
    return updated == 1


def confirm_payment(
    session_id: int,
    participant_id: Union[int, str],
    method: str,
    *,
    actor: Optional[str] = None,
) -> TableGroupSession:
    """Record a payment in split mode (one participant) or whole-table mode.

    Pass ``"whole-table"`` as *participant_id* to settle the full check at
    once.  A session whose ``paid_total`` reaches ``grand_total`` closes.
    """
    if method not in ORDER_PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method: {method}")
    session = get_session(session_id, for_update=True)
    _require_open(session, "confirm payment")
    old_paid = session.paid_total

    if participant_id == WHOLE_TABLE:
        if session.payment_type == "whole_table" or all(
            p.payment_status == "paid" for p in session.participants
        ):
            raise AlreadyPaid(f"Table session {session.id} is already paid.")
        for participant in session.participants:
            if participant.payment_status == "pending":
                _mark_participant_paid(participant, method)
        session.payment_type = "whole_table"
        session.paid_by_user_id = actor
    else:
        participant = _get_participant(session, int(participant_id))
        if not _mark_participant_paid(participant, method):
            raise AlreadyPaid(f"Participant {participant.id} has already paid.")
        session.payment_type = session.payment_type or "split"

    _recompute_totals(session)
    if session.status != "paying":
        if session.status == "active":
            transition(session, "ordering")
        transition(session, "paying")
    auto_closed = session.paid_total == session.grand_total
    if auto_closed:
        transition(session, "closed")

    log_action(
        "table_session",
        session.id,
        "payment_received",
        performed_by=actor,
        old_data={"paid_total": old_paid},
        new_data={
            "paid_total": session.paid_total,
            "participant": participant_id,
            "method": method,
            "status": session.status,
        },
    )
    db.session.commit()
    logger.info(
        "Table session %s payment (%s, %s): paid %s of %s%s",
        session.id, participant_id, method, session.paid_total, session.grand_total,
        ", closed" if auto_closed else "",
    )
    return session


def cancel_session(session_id: int, reason: Optional[str] = None, *, actor: str) -> TableGroupSession:
    """Cancel a non-terminal session.  Recorded payments are left untouched."""
    session = get_session(session_id, for_update=True)
    old_status = session.status
    written_off = quantize_money(to_decimal(session.grand_total or 0) - to_decimal(session.paid_total or 0))
    transition(session, "cancelled")
    session.cancelled_at = session.closed_at
    session.cancelled_by = actor
    session.cancel_reason = (reason or "").strip() or DEFAULT_CANCEL_REASON
    log_action(
        "table_session",
        session.id,
        "cancel",
        performed_by=actor,
        old_data={"status": old_status},
        new_data={"status": "cancelled", "written_off": written_off},
        reason=session.cancel_reason,
    )
    db.session.commit()
    logger.info("Table session %s cancelled by %s: %s", session.id, actor, session.cancel_reason)
    return session


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def session_to_dict(session: TableGroupSession, include_items: bool = True) -> dict:
    data = {
        "id": session.id,
        "business_id": session.business_id,
        "table_number": session.table_number,
        "status": session.status,
        "host_user_id": session.host_user_id,
        "host_name": session.host_name,
        "grand_total": str(quantize_money(session.grand_total or 0)),
        "paid_total": str(quantize_money(session.paid_total or 0)),
        "payment_type": session.payment_type,
        "closed_at": session.closed_at.isoformat() if session.closed_at else None,
        "cancelled_by": session.cancelled_by,
        "cancel_reason": session.cancel_reason,
        "participants": [
            {
                "id": p.id,
                "user_id": p.user_id,
                "name": p.name,
                "is_host": p.is_host,
                "subtotal": str(quantize_money(p.subtotal or 0)),
                "payment_status": p.payment_status,
                "payment_method": p.payment_method,
            }
            for p in session.participants
        ],
    }
    if include_items:
        data["items"] = [
            {
                **line,
                "total_price": str(line["total_price"]),
                "unit_price": str(line["unit_price"]),
            }
            for line in aggregate_items(session)
        ]
    return data
