from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from payfesa.extensions import db
from payfesa.models import AuditLog


def write_audit(action: str, *, target_type: str = "", target_id: int | None = None, meta: dict | None = None, actor_user_id: int | None = None) -> None:
    """Append an audit row in its own commit. Never raises."""
    try:
        db.session.add(AuditLog(
            actor_user_id=actor_user_id,
            action=action[:64],
            target_type=target_type or None,
            target_id=int(target_id) if target_id is not None else None,
            meta=json.dumps({**(meta or {}), "ts": datetime.utcnow().isoformat()}, default=str),
        ))
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("audit write failed action=%s target=%s:%s error=%s", action, target_type, target_id, e)


def escalate(reason: str, **context) -> None:
    """Money may have moved without a matching internal record; needs a human."""
    current_app.logger.critical("SETTLEMENT ESCALATION: %s %s", reason, json.dumps(context, default=str, sort_keys=True))
    write_audit("settlement_escalation", target_type="payout", target_id=context.get("payout_id"), meta={"reason": reason, **context})
