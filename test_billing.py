"""Billing engine tests: commissions, invoice numbering, storno and the monthly run."""

import dataclasses
import datetime
import re
import threading
from decimal import Decimal

import pytest
from click.testing import CliRunner
from sqlalchemy.exc import SQLAlchemyError

import services.invoice as invoice_service
import services.storno as storno_service
from app import create_app
from billing_cli import cli
from errors import (
    AlreadyCancelled,
    AlreadyPaid,
    CounterAllocationFailure,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from extensions import db
from models import AuditLog, BusinessUsage, CommissionRecord, Invoice
from services.commission import (
    OrderEvent,
    compute_commission,
    record_commission,
    set_collection_status,
    summarize_commissions,
)
from services.invoice import (
    Counterparty,
    InvoiceImmutableError,
    LineItem,
    create_invoice,
    generate_monthly_invoices,
    mark_invoice_paid,
    mark_overdue_invoices,
)
from services.numbering import current_invoice_number, get_next_invoice_number
from services.plans import (
    DEFAULT_PLAN,
    PlanSnapshot,
    get_business_plan,
    get_commission_rate,
    get_plan_snapshot,
)
from services.storno import storno_invoice

STORNO_REASON = "Wrong amount billed to customer"


def order_time(period="2026-09", day=15):
    year, month = (int(part) for part in period.split("-"))
    return datetime.datetime(year, month, day, 12, 0, tzinfo=datetime.timezone.utc)


def make_order(order_id, business_id, total="100.00", courier="own_courier", method="cash", period="2026-09"):
    return OrderEvent(
        order_id=order_id,
        business_id=business_id,
        order_total=Decimal(total),
        courier_type=courier,
        payment_method=method,
        created_at=order_time(period),
    )


def reference_plan(**overrides):
    values = dict(
        plan_id=1,
        plan_name="Reference",
        commission_click_collect=Decimal("5"),
        commission_own_courier=Decimal("5"),
        commission_lokma_courier=Decimal("7"),
        per_order_fee_type="fixed",
        per_order_fee_amount=Decimal("0.40"),
        free_order_count=0,
        vat_rate=Decimal("7"),
    )
    values.update(overrides)
    return PlanSnapshot(**values)


def counterparty():
    return Counterparty(name="Metzgerei Yilmaz GmbH", address="Hauptstr. 1, 10115 Berlin")


# ---------------------------------------------------------------------------
# Commission computation
# ---------------------------------------------------------------------------

class TestCommissionArithmetic:
    def test_reference_example(self):
        result = compute_commission(make_order("o-1", 1), reference_plan(), 0)
        assert result.commission_amount == Decimal("5.00")
        assert result.per_order_fee == Decimal("0.40")
        assert result.net_commission == Decimal("5.40")
        assert result.vat_amount == Decimal("0.38")
        assert result.total_commission == Decimal("5.78")
        assert result.collection_status == "pending"

    def test_stored_fields_add_up_after_rounding(self):
        plan = reference_plan(per_order_fee_type="none", per_order_fee_amount=Decimal("0"))
        result = compute_commission(make_order("o-1", 1, total="10.10", courier="click_collect"), plan, 0)
        assert result.commission_amount == Decimal("0.51")
        assert result.per_order_fee == Decimal("0.00")
        assert result.net_commission == Decimal("0.51")
        assert result.vat_amount == Decimal("0.04")
        assert result.total_commission == Decimal("0.55")

    @pytest.mark.parametrize("total", ["10.10", "0.07", "33.33", "87.35", "1234.56"])
    def test_sum_invariants_hold(self, total):
        plan = reference_plan(per_order_fee_type="percentage", per_order_fee_amount=Decimal("1.5"))
        result = compute_commission(make_order("o-1", 1, total=total, courier="lokma_courier"), plan, 0)
        assert result.net_commission == result.commission_amount + result.per_order_fee
        assert result.total_commission == (
            result.commission_amount + result.per_order_fee + result.vat_amount
        )

    def test_non_finite_total_rejected(self):
        for total in ("NaN", "Infinity"):
            with pytest.raises(ValidationError):
                compute_commission(make_order("o-1", 1, total=total), reference_plan(), 0)

    def test_identical_inputs_give_identical_amounts(self):
        order = make_order("o-1", 1, total="87.35", courier="lokma_courier")
        first = compute_commission(order, reference_plan(), 0)
        second = compute_commission(order, reference_plan(), 0)
        assert first.monetary_fields() == second.monetary_fields()

    def test_percentage_fee(self):
        plan = reference_plan(per_order_fee_type="percentage", per_order_fee_amount=Decimal("1"))
        result = compute_commission(make_order("o-1", 1, total="200.00"), plan, 0)
        assert result.per_order_fee == Decimal("2.00")
        assert result.net_commission == Decimal("12.00")

    def test_card_payment_is_auto_collected(self):
        result = compute_commission(make_order("o-1", 1, method="card"), reference_plan(), 0)
        assert result.collection_status == "auto_collected"
        assert result.total_commission > 0

    def test_free_order_is_zero_and_auto_collected(self):
        plan = reference_plan(free_order_count=3)
        result = compute_commission(make_order("o-1", 1), plan, free_orders_used=2)
        assert result.is_free_order
        assert result.total_commission == Decimal("0.00")
        assert result.collection_status == "auto_collected"
        paid = compute_commission(make_order("o-2", 1), plan, free_orders_used=3)
        assert not paid.is_free_order
        assert paid.total_commission == Decimal("5.78")

    def test_unset_rate_falls_back_to_default(self):
        assert get_commission_rate(DEFAULT_PLAN, "click_collect") == Decimal("5")
        assert get_commission_rate(DEFAULT_PLAN, "own_courier") == Decimal("4")
        assert get_commission_rate(DEFAULT_PLAN, "lokma_courier") == Decimal("7")

    def test_zero_rate_is_honoured(self):
        plan = reference_plan(commission_own_courier=Decimal("0"))
        assert get_commission_rate(plan, "own_courier") == Decimal("0")

    def test_unknown_courier_rejected(self):
        with pytest.raises(ValidationError):
            compute_commission(make_order("o-1", 1, courier="drone"), reference_plan(), 0)

    def test_negative_total_rejected(self):
        with pytest.raises(ValidationError):
            compute_commission(make_order("o-1", 1, total="-1"), reference_plan(), 0)

    def test_unknown_payment_method_rejected(self):
        with pytest.raises(ValidationError):
            compute_commission(make_order("o-1", 1, method="iou"), reference_plan(), 0)


class TestPlans:
    def test_flat_fee_alias(self, ctx, make_plan):
        plan = make_plan("flat", per_order_fee_type="flat", per_order_fee_amount=Decimal("0.30"))
        assert get_plan_snapshot(plan).per_order_fee_type == "fixed"

    def test_inactive_plan_uses_default(self, ctx, make_plan, make_business):
        plan = make_plan("retired", commission_own_courier=Decimal("1"), is_active=False)
        business = make_business(plan=plan)
        assert get_business_plan(business) == DEFAULT_PLAN

    def test_business_without_plan_uses_default(self, ctx, make_business):
        assert get_business_plan(make_business()) == DEFAULT_PLAN


# ---------------------------------------------------------------------------
# Commission records
# ---------------------------------------------------------------------------

class TestCommissionRecords:
    def test_record_is_idempotent_on_order_id(self, ctx, make_plan, make_business):
        business = make_business(plan=make_plan())
        first = record_commission(make_order("o-1", business.id))
        again = record_commission(make_order("o-1", business.id, total="999.00"))
        assert again.id == first.id
        assert again.order_total == Decimal("100.00")
        assert CommissionRecord.query.count() == 1
        usage = BusinessUsage.query.filter_by(business_id=business.id, period="2026-09").one()
        assert usage.order_count == 1

    def test_free_orders_per_business_plan(self, ctx, make_plan, make_business):
        plan = make_plan(free_order_count=3, commission_own_courier=Decimal("5"))
        business = make_business(plan=plan)
        records = [record_commission(make_order(f"o-{i}", business.id)) for i in range(1, 5)]
        for record in records[:3]:
            assert record.total_commission == Decimal("0.00")
            assert record.collection_status == "auto_collected"
        assert records[3].total_commission == Decimal("5.95")
        assert records[3].collection_status == "pending"

    def test_snapshot_survives_plan_change(self, ctx, make_plan, make_business):
        plan = make_plan(commission_own_courier=Decimal("5"))
        business = make_business(plan=plan)
        record = record_commission(make_order("o-1", business.id))
        plan.commission_own_courier = Decimal("9")
        db.session.commit()
        db.session.expire_all()
        assert db.session.get(CommissionRecord, record.id).commission_rate == Decimal("5")

    def test_unknown_business(self, ctx):
        with pytest.raises(NotFound):
            record_commission(make_order("o-1", 999))

    def test_audit_entry_written(self, ctx, make_business):
        business = make_business()
        record = record_commission(make_order("o-1", business.id), actor="ops@lokma")
        entry = AuditLog.query.filter_by(action="commission_recorded").one()
        assert entry.entity_id == str(record.id)
        assert entry.performed_by == "ops@lokma"

    def test_collection_status_edges(self, ctx, make_business):
        business = make_business()
        cash = record_commission(make_order("o-1", business.id))
        card = record_commission(make_order("o-2", business.id, method="card"))
        set_collection_status(cash.id, "invoiced", actor="ops")
        set_collection_status(cash.id, "paid", actor="ops")
        with pytest.raises(InvalidStateTransition):
            set_collection_status(cash.id, "pending", actor="ops")
        with pytest.raises(InvalidStateTransition):
            set_collection_status(card.id, "paid", actor="ops")

    def test_summary_uses_live_business_name(self, ctx, make_business):
        business = make_business(name="Old Name", company_name=None)
        record_commission(make_order("o-1", business.id))
        record_commission(make_order("o-2", business.id, method="stripe"))
        business.name = "New Name"
        db.session.commit()

        summaries, totals = summarize_commissions(period="2026-09")
        assert len(summaries) == 1
        assert summaries[0].business_name == "New Name"
        assert summaries[0].total_orders == 2
        assert summaries[0].pending_amount == summaries[0].cash_commission
        assert summaries[0].collected_amount == summaries[0].card_commission
        assert totals["total_commission"] == summaries[0].total_commission


# ---------------------------------------------------------------------------
# Invoice numbering and issuing
# ---------------------------------------------------------------------------

class TestInvoiceNumbering:
    def test_numbers_are_sequential_and_gap_free(self, ctx):
        invoices = [create_invoice(counterparty(), "10.00", "STANDARD", actor="ops") for _ in range(5)]
        sequences = [inv.sequence_number for inv in invoices]
        assert sequences == [1, 2, 3, 4, 5]
        assert len({inv.invoice_number for inv in invoices}) == 5
        assert re.match(r"^LK-\d{4}-000001$", invoices[0].invoice_number)
        assert current_invoice_number() == 5

    def test_rolled_back_allocation_releases_number(self, ctx):
        assert get_next_invoice_number() == 1
        db.session.rollback()
        assert current_invoice_number() == 0
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        assert invoice.sequence_number == 1

    def test_validation_consumes_no_number(self, ctx):
        with pytest.raises(ValidationError):
            create_invoice(Counterparty(name="   "), "10.00", "STANDARD", actor="ops")
        with pytest.raises(ValidationError):
            create_invoice(counterparty(), "0", "STANDARD", actor="ops")
        with pytest.raises(ValidationError):
            create_invoice(counterparty(), "10.00", "LUXURY", actor="ops")
        assert current_invoice_number() == 0
        assert Invoice.query.count() == 0

    def test_vat_split(self, ctx):
        standard = create_invoice(counterparty(), "100.00", "STANDARD", actor="ops")
        reduced = create_invoice(counterparty(), "100.00", "REDUCED", actor="ops")
        assert standard.tax_amount == Decimal("19.00")
        assert standard.grand_total == Decimal("119.00")
        assert reduced.tax_amount == Decimal("7.00")
        assert reduced.grand_total == Decimal("107.00")

    def test_line_items_must_match_net(self, ctx):
        items = [LineItem("Setup", Decimal("40.00")), LineItem("Hours", Decimal("20.00"), quantity=2)]
        invoice = create_invoice(counterparty(), "80.00", "STANDARD", actor="ops", line_items=items)
        assert [item.total for item in invoice.items] == [Decimal("40.00"), Decimal("40.00")]
        with pytest.raises(ValidationError):
            create_invoice(counterparty(), "79.00", "STANDARD", actor="ops", line_items=items)

    def test_counter_failure_is_retried(self, ctx, monkeypatch):
        real = invoice_service.get_next_invoice_number
        calls = {"count": 0}

        def flaky():
            calls["count"] += 1
            if calls["count"] == 1:
                raise CounterAllocationFailure("contention")
            return real()

        monkeypatch.setattr(invoice_service, "get_next_invoice_number", flaky)
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        assert calls["count"] == 2
        assert invoice.sequence_number == 1

    def test_counter_failure_exhausts_retries(self, ctx, monkeypatch):
        def broken():
            raise CounterAllocationFailure("contention")

        monkeypatch.setattr(invoice_service, "get_next_invoice_number", broken)
        with pytest.raises(CounterAllocationFailure):
            create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        assert Invoice.query.count() == 0


class TestInvoiceImmutability:
    def test_amount_change_blocked(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        invoice.grand_total = Decimal("1.00")
        with pytest.raises(InvoiceImmutableError):
            db.session.commit()
        db.session.rollback()
        assert db.session.get(Invoice, invoice.id).grand_total == Decimal("11.90")

    def test_delete_blocked(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        db.session.delete(invoice)
        with pytest.raises(InvoiceImmutableError):
            db.session.commit()
        db.session.rollback()
        assert Invoice.query.count() == 1


class TestInvoiceStatus:
    def test_mark_paid_once(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        mark_invoice_paid(invoice.id, actor="ops")
        assert db.session.get(Invoice, invoice.id).status == "paid"
        with pytest.raises(AlreadyPaid):
            mark_invoice_paid(invoice.id, actor="ops")

    def test_cancelled_invoice_cannot_be_paid(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        assert storno_invoice(invoice.id, STORNO_REASON, "ops").success
        with pytest.raises(AlreadyCancelled):
            mark_invoice_paid(invoice.id, actor="ops")

    def test_overdue_sweep(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        due = invoice.due_date
        assert mark_overdue_invoices(due) == 0
        assert mark_overdue_invoices(due + datetime.timedelta(days=1)) == 1
        assert db.session.get(Invoice, invoice.id).status == "overdue"
        assert mark_overdue_invoices(due + datetime.timedelta(days=2)) == 0
        mark_invoice_paid(invoice.id, actor="ops")


# ---------------------------------------------------------------------------
# Storno
# ---------------------------------------------------------------------------

class TestStorno:
    def test_storno_leaves_original_untouched(self, ctx):
        invoice = create_invoice(counterparty(), "100.00", "STANDARD", actor="ops")
        before = (
            invoice.subtotal,
            invoice.tax_amount,
            invoice.grand_total,
            invoice.invoice_number,
            invoice.issue_date,
        )

        result = storno_invoice(invoice.id, STORNO_REASON, "ops")
        assert result.success
        db.session.expire_all()

        original = db.session.get(Invoice, invoice.id)
        after = (
            original.subtotal,
            original.tax_amount,
            original.grand_total,
            original.invoice_number,
            original.issue_date,
        )
        assert after == before
        assert original.status == "cancelled"
        assert original.is_cancelled
        assert original.storno_invoice_number == result.storno_invoice_number

        storno = db.session.get(Invoice, result.storno_invoice_id)
        assert storno.is_storno
        assert storno.grand_total == -original.grand_total
        assert storno.tax_amount == -original.tax_amount
        assert storno.sequence_number > original.sequence_number
        assert storno.original_invoice_number == original.invoice_number
        assert [item.total for item in storno.items] == [-item.total for item in original.items]

    def test_storno_is_audited(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        result = storno_invoice(invoice.id, f"  {STORNO_REASON}  ", "auditor")
        entry = AuditLog.query.filter_by(action="storno").one()
        assert entry.reason == STORNO_REASON
        assert entry.performed_by == "auditor"
        assert entry.new_data["storno_invoice_number"] == result.storno_invoice_number
        assert entry.new_data["invoice_number"] == invoice.invoice_number

    def test_second_storno_refused(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        assert storno_invoice(invoice.id, STORNO_REASON, "ops").success
        again = storno_invoice(invoice.id, STORNO_REASON, "ops")
        assert not again.success
        assert again.code == "already_cancelled"
        assert current_invoice_number() == 2

    def test_storno_of_storno_refused(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        result = storno_invoice(invoice.id, STORNO_REASON, "ops")
        nested = storno_invoice(result.storno_invoice_id, STORNO_REASON, "ops")
        assert nested.code == "validation_error"

    def test_short_reason_refused(self, ctx):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        result = storno_invoice(invoice.id, "  typo  ", "ops")
        assert not result.success
        assert result.code == "validation_error"
        assert current_invoice_number() == 1
        assert db.session.get(Invoice, invoice.id).status == "pending"

    def test_missing_invoice(self, ctx):
        result = storno_invoice(404, STORNO_REASON, "ops")
        assert result.code == "not_found"
        assert current_invoice_number() == 0

    def test_database_failure_reports_retryable_code(self, ctx, monkeypatch):
        invoice = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")

        def failing_mirror(original, reason, actor):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(storno_service, "_mirror_invoice", failing_mirror)
        result = storno_invoice(invoice.id, STORNO_REASON, "ops")
        assert not result.success
        assert result.code == CounterAllocationFailure.code
        assert db.session.get(Invoice, invoice.id).status == "pending"
        assert current_invoice_number() == 1

    def test_numbers_interleave_without_gaps(self, ctx):
        first = create_invoice(counterparty(), "10.00", "STANDARD", actor="ops")
        storno = storno_invoice(first.id, STORNO_REASON, "ops")
        second = create_invoice(counterparty(), "20.00", "STANDARD", actor="ops")
        sequences = [
            inv.sequence_number for inv in Invoice.query.order_by(Invoice.id).all()
        ]
        assert sequences == [1, 2, 3]
        assert second.sequence_number == 3
        assert storno.storno_invoice_number.endswith("000002")


# ---------------------------------------------------------------------------
# Concurrent writers (file-backed database, one app context per thread)
# ---------------------------------------------------------------------------

@pytest.fixture
def file_app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URI", f"sqlite:///{tmp_path / 'billing.db'}")
    application = create_app()
    application.config["TESTING"] = True
    application.config["BILLING_CONFIG"] = dataclasses.replace(
        application.config["BILLING_CONFIG"], counter_retry_attempts=10, counter_retry_backoff=0.005
    )
    yield application
    with application.app_context():
        db.engine.dispose()


def run_in_parallel(app, count, work):
    """Run ``work(i)`` in *count* threads released together; return (results, errors)."""
    barrier = threading.Barrier(count)
    results, errors = [], []
    lock = threading.Lock()

    def worker(index):
        with app.app_context():
            barrier.wait()
            try:
                value = work(index)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            else:
                with lock:
                    results.append(value)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results, errors


class TestConcurrentWrites:
    def test_parallel_invoices_get_consecutive_numbers(self, file_app):
        def issue(index):
            invoice = create_invoice(counterparty(), f"{10 + index}.00", "STANDARD", actor=f"worker-{index}")
            return invoice.sequence_number

        sequences, errors = run_in_parallel(file_app, 12, issue)
        assert errors == []
        assert sorted(sequences) == list(range(1, 13))
        with file_app.app_context():
            stored = sorted(inv.sequence_number for inv in Invoice.query.all())
            assert stored == list(range(1, 13))
            assert current_invoice_number() == 12

    def test_parallel_storno_succeeds_once(self, file_app):
        with file_app.app_context():
            invoice_id = create_invoice(counterparty(), "50.00", "STANDARD", actor="ops").id

        results, errors = run_in_parallel(
            file_app, 2, lambda index: storno_invoice(invoice_id, STORNO_REASON, f"clerk-{index}")
        )
        assert errors == []
        assert sorted(r.success for r in results) == [False, True]
        assert [r.code for r in results if not r.success] == ["already_cancelled"]
        with file_app.app_context():
            assert Invoice.query.filter_by(storno_of_id=invoice_id).count() == 1
            assert db.session.get(Invoice, invoice_id).status == "cancelled"
            assert current_invoice_number() == 2


# ---------------------------------------------------------------------------
# Monthly run
# ---------------------------------------------------------------------------

class TestMonthlyInvoices:
    def _setup(self, make_plan, make_business):
        plan = make_plan(
            "basic",
            monthly_fee=Decimal("29.99"),
            commission_own_courier=Decimal("4"),
        )
        business = make_business(plan=plan)
        record_commission(make_order("o-1", business.id))
        record_commission(make_order("o-2", business.id))
        record_commission(make_order("o-3", business.id, method="card"))
        return business

    def test_generates_subscription_and_commission(self, ctx, make_plan, make_business):
        business = self._setup(make_plan, make_business)
        stats = generate_monthly_invoices("2026-09", actor="cron")
        assert stats["subscription_generated"] == 1
        assert stats["commission_generated"] == 1
        assert stats["subscription_failed"] == stats["commission_failed"] == 0

        subscription = Invoice.query.filter_by(invoice_type="subscription").one()
        assert subscription.subtotal == Decimal("29.99")
        assert subscription.grand_total == Decimal("35.69")

        commission = Invoice.query.filter_by(invoice_type="commission").one()
        assert commission.subtotal == Decimal("8.00")
        assert commission.grand_total == Decimal("9.52")
        assert commission.business_id == business.id

        statuses = {
            r.order_id: (r.collection_status, r.invoice_id) for r in CommissionRecord.query.all()
        }
        assert statuses["o-1"] == ("invoiced", commission.id)
        assert statuses["o-2"] == ("invoiced", commission.id)
        assert statuses["o-3"] == ("auto_collected", None)

    def test_rerun_skips_existing(self, ctx, make_plan, make_business):
        self._setup(make_plan, make_business)
        generate_monthly_invoices("2026-09")
        stats = generate_monthly_invoices("2026-09")
        assert stats["skipped"] == 2
        assert stats["subscription_generated"] == stats["commission_generated"] == 0
        assert Invoice.query.count() == 2

    def test_overage_line(self, ctx, make_plan, make_business):
        plan = make_plan(
            "capped",
            monthly_fee=Decimal("10.00"),
            order_limit=1,
            order_overage_fee=Decimal("0.50"),
        )
        business = make_business(plan=plan)
        for i in range(3):
            record_commission(make_order(f"o-{i}", business.id, method="card"))
        generate_monthly_invoices("2026-09")
        invoice = Invoice.query.filter_by(invoice_type="subscription").one()
        assert [item.item_type for item in invoice.items] == ["subscription", "overage"]
        assert invoice.subtotal == Decimal("11.00")

    def test_invalid_period(self, ctx):
        with pytest.raises(ValidationError):
            generate_monthly_invoices("2026-13")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestBillingCli:
    def test_seed_plans(self, app):
        runner = CliRunner()
        result = runner.invoke(cli, ["seed-plans"], obj={"app": app})
        assert result.exit_code == 0
        assert "Seeded 3 plans" in result.output
        result = runner.invoke(cli, ["seed-plans"], obj={"app": app})
        assert "Seeded 0 plans" in result.output

    def test_monthly_invoices(self, app):
        result = CliRunner().invoke(cli, ["monthly-invoices", "--period", "2026-09"], obj={"app": app})
        assert result.exit_code == 0
        assert "subscription invoices: 0" in result.output

    def test_monthly_invoices_bad_period(self, app):
        result = CliRunner().invoke(cli, ["monthly-invoices", "--period", "09/2026"], obj={"app": app})
        assert result.exit_code == 1

    def test_mark_overdue(self, app):
        result = CliRunner().invoke(cli, ["mark-overdue", "--today", "2026-10-01"], obj={"app": app})
        assert result.exit_code == 0
        assert "Marked 0 invoices overdue" in result.output
