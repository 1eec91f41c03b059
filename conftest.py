"""Shared pytest fixtures: in-memory app, HTTP client and model factories."""

import dataclasses
import os
from decimal import Decimal

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["CONFIG_PATH"] = "config.test-missing.yaml"

from app import create_app
from extensions import db
from models import Business, SubscriptionPlan


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["BILLING_CONFIG"] = dataclasses.replace(
        application.config["BILLING_CONFIG"], counter_retry_backoff=0
    )
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def ctx(app):
    """Push an application context for service-level tests."""
    with app.app_context():
        yield app


@pytest.fixture
def make_plan():
    def _make(code="standard", **fields):
        values = {
            "name": code.title(),
            "monthly_fee": Decimal("0"),
            "per_order_fee_type": "none",
            "per_order_fee_amount": Decimal("0"),
            "free_order_count": 0,
            "vat_rate": Decimal("19"),
            "is_active": True,
        }
        values.update(fields)
        plan = SubscriptionPlan(code=code, **values)
        db.session.add(plan)
        db.session.commit()
        return plan

    return _make


@pytest.fixture
def make_business():
    def _make(name="Metzgerei Yilmaz", plan=None, **fields):
        values = {
            "company_name": f"{name} GmbH",
            "street": "Hauptstr. 1",
            "postal_code": "10115",
            "city": "Berlin",
            "max_tables": 10,
        }
        values.update(fields)
        business = Business(name=name, plan_id=plan.id if plan else None, **values)
        db.session.add(business)
        db.session.commit()
        return business

    return _make


@pytest.fixture
def sample_data(app):
    """Create sample data for route tests. Returns dict of IDs to avoid detached instance errors."""
    with app.app_context():
        plan = SubscriptionPlan(
            code="basic",
            name="Basic",
            monthly_fee=Decimal("29.99"),
            commission_click_collect=Decimal("5"),
            commission_own_courier=Decimal("4"),
            commission_lokma_courier=Decimal("7"),
            per_order_fee_type="fixed",
            per_order_fee_amount=Decimal("0.40"),
            free_order_count=0,
            vat_rate=Decimal("7"),
        )
        db.session.add(plan)
        db.session.flush()
        business = Business(
            name="Kasap Demir",
            company_name="Kasap Demir GmbH",
            street="Ringstr. 5",
            postal_code="50667",
            city="Köln",
            plan_id=plan.id,
            max_tables=6,
        )
        db.session.add(business)
        db.session.commit()
        return {"plan_id": plan.id, "business_id": business.id}

