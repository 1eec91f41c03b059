"""Billing error taxonomy.

Every error carries a stable ``code`` for callers and a human-readable
``message``.  Routes map the code to an HTTP status via ``http_status``.
"""

from __future__ import annotations


class BillingError(Exception):
    code = "billing_error"
    http_status = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(BillingError):
    """Malformed or out-of-range input.  Nothing was written."""
    code = "validation_error"
    http_status = 400


class NotFound(BillingError):
    code = "not_found"
    http_status = 404


class AlreadyCancelled(BillingError):
    """The invoice was cancelled (or stornoed) before this write landed."""
    code = "already_cancelled"
    http_status = 409


class AlreadyPaid(BillingError):
    code = "already_paid"
    http_status = 409


class InvalidStateTransition(BillingError):
    code = "invalid_state_transition"
    http_status = 409


class CounterAllocationFailure(BillingError):
    """The invoice-number increment did not complete; safe to retry from scratch."""
    code = "counter_allocation_failure"
    http_status = 503
