from __future__ import annotations

import hashlib

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from payfesa.errors import WebhookSignatureError
from payfesa.extensions import db
from payfesa.models import WebhookEvent
from payfesa.services.reconciler import reconcile
from payfesa.utils.paychangu_client import verify_signature

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _signature_header() -> str | None:
    return request.headers.get("Signature") or request.headers.get("X-Paychangu-Signature")


def _log_delivery(raw: bytes, event_type: str, charge_id: str, verified: bool) -> int:
    """Record the delivery; returns how many times this exact body has been seen."""
    event_id = hashlib.sha256(raw).hexdigest()
    try:
        db.session.add(WebhookEvent(provider="paychangu", event_id=event_id, event_type=event_type[:64] or None,
                                    charge_id=charge_id[:64] or None, verified=verified, deliveries=1))
        db.session.commit()
        return 1
    except IntegrityError:
        db.session.rollback()
    db.session.execute(
        update(WebhookEvent).where(WebhookEvent.event_id == event_id)
        .values(deliveries=WebhookEvent.deliveries + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return int(db.session.execute(select(WebhookEvent.deliveries).where(WebhookEvent.event_id == event_id)).scalar_one())


@webhooks_bp.post("/paychangu")
def paychangu_webhook():
    raw = request.get_data() or b""
    secret = (current_app.config.get("PAYCHANGU_WEBHOOK_SECRET") or "").strip()

    verified = False
    if secret:
        if not verify_signature(raw, _signature_header(), secret):
            current_app.logger.warning("paychangu webhook rejected: invalid or missing signature")
            raise WebhookSignatureError()
        verified = True
    else:
        current_app.logger.warning("PAYCHANGU_WEBHOOK_SECRET not set; webhook signature verification skipped")

    payload = request.get_json(silent=True) or {}
    event_type = str(payload.get("event_type") or "").strip()
    data = payload.get("data") or {}
    transaction = data.get("transaction") if isinstance(data, dict) else None
    if not isinstance(transaction, dict):
        return jsonify({"ok": False, "message": "Invalid webhook data"}), 400

    charge_id = str(transaction.get("charge_id") or "").strip()
    deliveries = _log_delivery(raw, event_type, charge_id, verified)

    # Idempotent: a replay finds nothing left to move.
    outcome = reconcile(event_type, transaction)
    current_app.logger.info(
        "paychangu webhook event=%s charge=%s deliveries=%s outcome=%s", event_type, charge_id, deliveries, outcome.to_dict()
    )
    return jsonify({"ok": True, "verified": verified, "replayed": deliveries > 1, **outcome.to_dict()}), 200
