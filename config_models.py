from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_currency: str


@dataclass
class BillingConfig:
    invoice_prefix: str
    payment_due_days: int
    vat_standard: float
    vat_reduced: float
    storno_reason_min_length: int
    counter_retry_attempts: int
    counter_retry_backoff: float
