"""SQLAlchemy models and status vocabularies."""

from __future__ import annotations

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

COURIER_TYPES = ("click_collect", "own_courier", "lokma_courier")
PER_ORDER_FEE_TYPES = {"none", "fixed", "percentage"}
ORDER_PAYMENT_METHODS = {"card", "stripe", "cash", "other"}
AUTO_COLLECTED_PAYMENT_METHODS = {"card", "stripe"}

VALID_COLLECTION_STATUSES = {"auto_collected", "pending", "invoiced", "paid"}

VALID_INVOICE_STATUSES = {"draft", "pending", "paid", "failed", "cancelled", "overdue", "storno"}
VALID_INVOICE_TYPES = {"subscription", "commission", "manual"}

VALID_SESSION_STATUSES = {"active", "ordering", "paying", "cancelled", "closed"}
VALID_PARTICIPANT_PAYMENT_STATUSES = {"pending", "paid"}

VALID_RESERVATION_STATUSES = {"pending", "confirmed", "rejected", "cancelled"}


# ---------------------------------------------------------------------------
# Subscription plans & businesses
# ---------------------------------------------------------------------------

class SubscriptionPlan(db.Model):
    """Commission and fee table a business is billed under."""
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(60), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    monthly_fee = db.Column(db.Numeric(10, 2, asdecimal=True), default=0)
    currency = db.Column(db.String(10), default="EUR")
    commission_click_collect = db.Column(db.Numeric(5, 2, asdecimal=True))
    commission_own_courier = db.Column(db.Numeric(5, 2, asdecimal=True))
    commission_lokma_courier = db.Column(db.Numeric(5, 2, asdecimal=True))
    per_order_fee_type = db.Column(db.String(20), default="none")
    per_order_fee_amount = db.Column(db.Numeric(10, 2, asdecimal=True), default=0)
    free_order_count = db.Column(db.Integer, default=0)
    vat_rate = db.Column(db.Numeric(5, 2, asdecimal=True), default=19)
    order_limit = db.Column(db.Integer)  # NULL = unlimited
    order_overage_fee = db.Column(db.Numeric(10, 2, asdecimal=True), default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


class Business(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    company_name = db.Column(db.String(160))
    street = db.Column(db.String(160))
    postal_code = db.Column(db.String(20))
    city = db.Column(db.String(120))
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    subscription_status = db.Column(db.String(30), default="active")
    max_tables = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    plan = db.relationship("SubscriptionPlan")

    @property
    def display_name(self) -> str:
        return self.company_name or self.name

    @property
    def address_line(self) -> str:
        if not self.street:
            return ""
        return f"{self.street}, {self.postal_code or ''} {self.city or ''}".strip()


class BusinessUsage(db.Model):
    """Per-period usage counters, incremented as commission records land."""
    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("business.id"), nullable=False)
    period = db.Column(db.String(7), nullable=False)
    order_count = db.Column(db.Integer, default=0)
    commission_total = db.Column(db.Numeric(12, 2, asdecimal=True), default=0)
    last_order_at = db.Column(db.DateTime)

    __table_args__ = (
        db.UniqueConstraint("business_id", "period", name="uq_business_usage_period"),
    )


# ---------------------------------------------------------------------------
# Commission
# ---------------------------------------------------------------------------

class CommissionRecord(db.Model):
    """Platform fee owed on one billable order.

    Inputs and monetary fields are written once; only ``collection_status``
    (and ``invoice_id`` when folded into an invoice) change afterwards.
    """
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(80), unique=True, nullable=False)
    order_number = db.Column(db.String(40))
    business_id = db.Column(db.Integer, db.ForeignKey("business.id"), nullable=False)
    business_name = db.Column(db.String(160))
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    plan_name = db.Column(db.String(120))
    period = db.Column(db.String(7), nullable=False)
    order_total = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    courier_type = db.Column(db.String(30), nullable=False)
    payment_method = db.Column(db.String(20), nullable=False)
    commission_rate = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False)
    commission_amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    per_order_fee = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    net_commission = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    vat_rate = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False)
    vat_amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    total_commission = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    is_free_order = db.Column(db.Boolean, default=False)
    collection_status = db.Column(db.String(20), nullable=False, default="pending")
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    order_created_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    business = db.relationship("Business")

    __table_args__ = (
        db.Index("ix_commission_business_period", "business_id", "period"),
        db.Index("ix_commission_collection_status", "collection_status"),
    )


# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------

class NumberSequence(db.Model):
    """Sequence counters per entity type and scope."""
    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(40), nullable=False)
    scope_key = db.Column(db.String(120), default="")
    last_value = db.Column(db.Integer, default=0, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("entity_type", "scope_key", name="uq_number_sequence"),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    """Issued invoice.  Never deleted; monetary fields never change after insert."""
    id = db.Column(db.Integer, primary_key=True)
    sequence_number = db.Column(db.Integer, unique=True, nullable=False)
    invoice_number = db.Column(db.String(40), unique=True, nullable=False)
    invoice_type = db.Column(db.String(20), nullable=False, default="manual")
    business_id = db.Column(db.Integer, db.ForeignKey("business.id"))
    # Counterparty snapshot, copied at issue time
    butcher_name = db.Column(db.String(160), nullable=False)
    butcher_address = db.Column(db.String(255), default="")
    description = db.Column(db.String(255))
    period = db.Column(db.String(7), nullable=False)
    subtotal = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    tax_rate = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    grand_total = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), default="EUR")
    status = db.Column(db.String(20), nullable=False, default="pending")
    issue_date = db.Column(db.DateTime, nullable=False, default=utc_now)
    due_date = db.Column(db.Date, nullable=False)
    paid_at = db.Column(db.DateTime)
    # Storno
    is_storno = db.Column(db.Boolean, default=False, nullable=False)
    is_cancelled = db.Column(db.Boolean, default=False, nullable=False)
    storno_of_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    original_invoice_number = db.Column(db.String(40))
    storno_reason = db.Column(db.Text)
    storno_invoice_number = db.Column(db.String(40))
    cancelled_at = db.Column(db.DateTime)
    cancelled_by = db.Column(db.String(120))
    cancel_reason = db.Column(db.Text)
    created_by = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    business = db.relationship("Business")
    items = db.relationship(
        "InvoiceItem", backref="invoice", order_by="InvoiceItem.id"
    )
    storno_of = db.relationship("Invoice", remote_side=[id])

    __table_args__ = (
        db.Index("ix_invoice_status", "status"),
        db.Index("ix_invoice_business_period", "business_id", "period", "invoice_type"),
        db.UniqueConstraint("storno_of_id", name="uq_invoice_single_storno"),
    )


IMMUTABLE_INVOICE_FIELDS = (
    "sequence_number",
    "invoice_number",
    "invoice_type",
    "business_id",
    "butcher_name",
    "butcher_address",
    "period",
    "subtotal",
    "tax_rate",
    "tax_amount",
    "grand_total",
    "currency",
    "issue_date",
    "due_date",
    "is_storno",
    "storno_of_id",
)


class InvoiceItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    item_type = db.Column(db.String(20), default="other")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    total = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.String(80))
    action = db.Column(db.String(40), nullable=False)
    old_data = db.Column(db.JSON)
    new_data = db.Column(db.JSON)
    changed_fields = db.Column(db.JSON)
    reason = db.Column(db.Text)
    performed_by = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )


# ---------------------------------------------------------------------------
# Group table sessions
# ---------------------------------------------------------------------------

class TableGroupSession(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("business.id"), nullable=False)
    table_number = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="active")
    host_user_id = db.Column(db.String(80), nullable=False)
    host_name = db.Column(db.String(120))
    grand_total = db.Column(db.Numeric(10, 2, asdecimal=True), default=0)
    paid_total = db.Column(db.Numeric(10, 2, asdecimal=True), default=0)
    payment_type = db.Column(db.String(20))  # split | whole_table
    paid_by_user_id = db.Column(db.String(80))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
    closed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    cancelled_by = db.Column(db.String(120))
    cancel_reason = db.Column(db.Text)

    business = db.relationship("Business")
    participants = db.relationship(
        "TableParticipant",
        backref="session",
        cascade="all, delete-orphan",
        order_by="TableParticipant.id",
    )

    __table_args__ = (
        db.Index("ix_table_session_business_status", "business_id", "status"),
    )


class TableParticipant(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("table_group_session.id"), nullable=False)
    user_id = db.Column(db.String(80), nullable=False)
    name = db.Column(db.String(120))
    is_host = db.Column(db.Boolean, default=False)
    subtotal = db.Column(db.Numeric(10, 2, asdecimal=True), default=0)
    payment_status = db.Column(db.String(20), nullable=False, default="pending")
    payment_method = db.Column(db.String(20))
    paid_at = db.Column(db.DateTime)

    items = db.relationship(
        "TableGroupItem",
        backref="participant",
        cascade="all, delete-orphan",
        order_by="TableGroupItem.id",
    )


class TableGroupItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(db.Integer, db.ForeignKey("table_participant.id"), nullable=False)
    product_id = db.Column(db.String(80))
    product_name = db.Column(db.String(160), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    total_price = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    item_note = db.Column(db.String(255))

    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_table_item_quantity_positive"),
        db.CheckConstraint("unit_price >= 0", name="ck_table_item_price_non_negative"),
    )


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------

class Reservation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("business.id"), nullable=False)
    customer_name = db.Column(db.String(120), nullable=False)
    customer_phone = db.Column(db.String(60))
    customer_email = db.Column(db.String(120))
    party_size = db.Column(db.Integer, default=1)
    reservation_date = db.Column(db.Date, nullable=False)
    time_slot = db.Column(db.String(20))
    notes = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="pending")
    confirmed_by = db.Column(db.String(120))
    table_card_numbers = db.Column(db.JSON, default=list)
    table_card_assigned_by = db.Column(db.String(120))
    table_card_assigned_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    business = db.relationship("Business")

    __table_args__ = (
        db.Index("ix_reservation_business_status", "business_id", "status"),
    )
