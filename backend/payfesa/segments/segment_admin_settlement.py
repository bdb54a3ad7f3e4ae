from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from payfesa.extensions import db
from payfesa.models import ManualIntervention, Payout, ReserveWallet, ReserveWalletEntry, SettlementIntent, Transaction
from payfesa.services import ledger
from payfesa.jobs.payout_verifier import verify_processing_payouts
from payfesa.jobs.settlement_runner import run_scheduled_settlement
from payfesa.utils.audit import write_audit
from payfesa.utils.auth import current_user, is_admin

admin_settlement_bp = Blueprint("admin_settlement_bp", __name__, url_prefix="/api/admin")


def _admin_or_error():
    u = current_user()
    if not u:
        return None, (jsonify({"message": "Unauthorized"}), 401)
    if not is_admin(u):
        return None, (jsonify({"message": "Forbidden"}), 403)
    return u, None


@admin_settlement_bp.post("/settlement/run")
def run_settlement():
    u, err = _admin_or_error()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    today = None
    if data.get("date"):
        try:
            today = datetime.strptime(str(data["date"]), "%Y-%m-%d").date()
        except ValueError:
            return jsonify({"ok": False, "message": "date must be YYYY-MM-DD"}), 400
    result = run_scheduled_settlement(today=today, cutoff=data.get("cutoff"))
    write_audit("settlement_run", target_type="settlement", actor_user_id=u.id, meta=result)
    return jsonify(result), 200


@admin_settlement_bp.post("/settlement/verify")
def run_verification():
    u, err = _admin_or_error()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    try:
        older_than = int(data.get("older_than_minutes", 15))
        limit = int(data.get("limit", 100))
    except (TypeError, ValueError):
        return jsonify({"ok": False, "message": "older_than_minutes and limit must be integers"}), 400
    return jsonify(verify_processing_payouts(older_than_minutes=older_than, limit=limit)), 200


@admin_settlement_bp.post("/payouts/<int:payout_id>/reverse-escrow")
def reverse_escrow(payout_id: int):
    """Credit back the escrow debit of a payout the gateway reported failed."""
    u, err = _admin_or_error()
    if err:
        return err
    p = db.session.get(Payout, int(payout_id))
    if not p:
        return jsonify({"ok": False, "message": "Payout not found"}), 404
    if p.status != "failed":
        return jsonify({"ok": False, "message": "Only failed payouts can be reversed"}), 409

    intent = db.session.execute(
        select(SettlementIntent).where(SettlementIntent.payout_id == p.id).order_by(SettlementIntent.id.desc())
    ).scalars().first()
    if not intent or intent.state != "settled":
        state = intent.state if intent else "none"
        return jsonify({"ok": False, "message": "No recorded debit to reverse", "intent_state": state}), 409

    if not ledger.reverse_settled(intent, reason=f"admin {u.id} reversal of failed payout {p.id}"):
        return jsonify({"ok": False, "message": "Reversal failed or already applied"}), 409

    db.session.add(Transaction(
        user_id=int(p.recipient_id),
        group_id=int(p.group_id),
        payout_id=int(p.id),
        type="escrow_reversal",
        amount=int(intent.amount),
        status="completed",
        charge_id=intent.charge_id,
    ))
    db.session.commit()
    write_audit("payout_escrow_reversed", target_type="payout", target_id=p.id, actor_user_id=u.id,
                meta={"charge_id": intent.charge_id, "amount": int(intent.amount)})
    return jsonify({"ok": True, "payout_id": int(p.id), "amount": int(intent.amount)}), 200


@admin_settlement_bp.post("/payouts/<int:payout_id>/interventions")
def open_intervention(payout_id: int):
    u, err = _admin_or_error()
    if err:
        return err
    p = db.session.get(Payout, int(payout_id))
    if not p:
        return jsonify({"ok": False, "message": "Payout not found"}), 404
    data = request.get_json(silent=True) or {}
    row = ManualIntervention(payout_id=int(p.id), opened_by=int(u.id), status="open", note=(data.get("note") or "")[:500])
    db.session.add(row)
    db.session.commit()
    write_audit("manual_intervention_opened", target_type="payout", target_id=p.id, actor_user_id=u.id,
                meta={"intervention_id": int(row.id), "payout_status": p.status})
    return jsonify({"ok": True, "intervention": row.to_dict()}), 201


@admin_settlement_bp.get("/reserve/<int:group_id>")
def reserve_overview(group_id: int):
    _u, err = _admin_or_error()
    if err:
        return err
    w = db.session.execute(select(ReserveWallet).where(ReserveWallet.group_id == int(group_id))).scalar_one_or_none()
    entries = db.session.execute(
        select(ReserveWalletEntry)
        .where(ReserveWalletEntry.group_id == int(group_id))
        .order_by(ReserveWalletEntry.id.desc())
        .limit(100)
    ).scalars().all()
    return jsonify({
        "ok": True,
        "group_id": int(group_id),
        "balance": int(w.balance) if w else 0,
        "entries": [e.to_dict() for e in entries],
    }), 200
