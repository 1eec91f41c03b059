"""Audit logging service.

Entries are written inside a SAVEPOINT of the caller's transaction: they
commit together with the financial change they describe, but a failure to
write the entry never rolls that change back.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import AuditLog

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = {
    "create",
    "status_change",
    "storno",
    "payment_received",
    "commission_recorded",
    "cancel",
}


def get_changed_fields(previous: dict, current: dict) -> list[str]:
    """Return the sorted keys whose values differ between *previous* and *current*."""
    changed = []
    for key in set(previous) | set(current):
        before = json.dumps(previous.get(key), sort_keys=True, default=str)
        after = json.dumps(current.get(key), sort_keys=True, default=str)
        if before != after:
            changed.append(key)
    return sorted(changed)


def _jsonable(data: Optional[dict]) -> Optional[dict]:
    if data is None:
        return None
    return json.loads(json.dumps(data, default=str))


def log_action(
    entity_type: str,
    entity_id,
    action: str,
    *,
    performed_by: Optional[str],
    old_data: Optional[dict] = None,
    new_data: Optional[dict] = None,
    reason: Optional[str] = None,
) -> Optional[AuditLog]:
    """Record an audit log entry.

    NOTE: This does NOT commit; the caller is responsible for committing
    the session.  Returns ``None`` when the entry could not be written.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    changed = None
    if old_data is not None and new_data is not None:
        changed = get_changed_fields(old_data, new_data)

    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        action=action,
        old_data=_jsonable(old_data),
        new_data=_jsonable(new_data),
        changed_fields=changed,
        reason=reason,
        performed_by=performed_by or "system",
    )
    # Pending changes of the caller must fail loudly, outside the savepoint.
    db.session.flush()
    try:
        with db.session.begin_nested():
            db.session.add(entry)
    except SQLAlchemyError:
        logger.warning(
            "Audit entry %s/%s (%s) could not be written",
            entity_type, entity_id, action, exc_info=True,
        )
        return None
    return entry
