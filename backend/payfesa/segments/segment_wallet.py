from __future__ import annotations

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from payfesa.extensions import db
from payfesa.models import Transaction
from payfesa.services.ledger import transfer_escrow_to_wallet
from payfesa.utils.auth import current_user

wallet_bp = Blueprint("wallet_bp", __name__, url_prefix="/api/wallet")


@wallet_bp.get("")
def my_wallet():
    u = current_user()
    if not u:
        return jsonify({"message": "Unauthorized"}), 401
    db.session.refresh(u)
    return jsonify({
        "ok": True,
        "wallet_balance": int(u.wallet_balance or 0),
        "escrow_balance": int(u.escrow_balance or 0),
        "trust_score": int(u.trust_score or 0),
    }), 200


@wallet_bp.get("/transactions")
def my_transactions():
    u = current_user()
    if not u:
        return jsonify({"message": "Unauthorized"}), 401
    try:
        limit = min(max(int(request.args.get("limit", 50)), 1), 200)
    except ValueError:
        limit = 50
    rows = db.session.execute(
        select(Transaction).where(Transaction.user_id == u.id).order_by(Transaction.id.desc()).limit(limit)
    ).scalars().all()
    return jsonify({"ok": True, "items": [t.to_dict() for t in rows]}), 200


@wallet_bp.post("/transfer-escrow")
def transfer_escrow():
    u = current_user()
    if not u:
        return jsonify({"message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}
    result = transfer_escrow_to_wallet(u.id, data.get("amount"), str(data.get("pin") or ""))
    return jsonify({"ok": True, **result}), 200
