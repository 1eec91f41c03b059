"""Request helpers shared by the JSON blueprints."""

from __future__ import annotations

from flask import g, request

from errors import ValidationError
from utils import safe_decimal, safe_int


def get_actor() -> str:
    """Return the acting user set from the ``X-Actor`` header."""
    return getattr(g, "actor", None) or "system"


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def require_fields(data: dict, *names: str) -> None:
    missing = [name for name in names if data.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def decimal_field(data: dict, name: str):
    value = safe_decimal(data.get(name))
    if value is None:
        raise ValidationError(f"Field '{name}' must be a number.")
    return value


def int_arg(name: str):
    """Optional integer query-string argument."""
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    value = safe_int(raw, default=-1)
    if value < 0:
        raise ValidationError(f"Query parameter '{name}' must be a non-negative integer.")
    return value
