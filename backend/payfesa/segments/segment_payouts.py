from __future__ import annotations

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from payfesa.extensions import db
from payfesa.models import Payout
from payfesa.services.instant_payout import process_instant_payout
from payfesa.utils.auth import current_user

payouts_bp = Blueprint("payouts_bp", __name__, url_prefix="/api/payouts")


@payouts_bp.get("")
def list_my_payouts():
    u = current_user()
    if not u:
        return jsonify({"message": "Unauthorized"}), 401
    rows = db.session.execute(
        select(Payout).where(Payout.recipient_id == u.id).order_by(Payout.created_at.desc()).limit(100)
    ).scalars().all()
    return jsonify({"ok": True, "items": [p.to_dict() for p in rows]}), 200


@payouts_bp.post("/<int:payout_id>/instant")
def instant_payout(payout_id: int):
    u = current_user()
    if not u:
        return jsonify({"message": "Unauthorized"}), 401

    data = request.get_json(silent=True) or {}
    pin = str(data.get("pin") or "").strip()
    if not pin:
        return jsonify({"ok": False, "message": "PIN is required"}), 400

    # SettlementError subclasses are rendered by the app-level handler.
    result = process_instant_payout(u.id, payout_id, pin)
    return jsonify(result), 200
