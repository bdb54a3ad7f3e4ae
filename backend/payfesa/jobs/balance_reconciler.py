from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy import func, select

from payfesa.extensions import db
from payfesa.models import AuditLog, SettlementIntent, Transaction, User

ESCROW_CREDIT_TYPES = ("contribution", "reserve_coverage")
ESCROW_DEBIT_TYPES = ("transfer",)
# Compensated intents were credited back, so they net to zero.
DEBITED_INTENT_STATES = ("debited", "settled")


def _sum_transactions(user_id: int, types) -> int:
    total = db.session.execute(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == int(user_id),
            Transaction.type.in_(list(types)),
            Transaction.status == "completed",
        )
    ).scalar_one()
    return int(total or 0)


def _sum_settlement_debits(user_id: int) -> int:
    total = db.session.execute(
        select(func.coalesce(func.sum(SettlementIntent.amount), 0)).where(
            SettlementIntent.user_id == int(user_id),
            SettlementIntent.state.in_(list(DEBITED_INTENT_STATES)),
        )
    ).scalar_one()
    return int(total or 0)


def expected_escrow(user_id: int) -> int:
    """Escrow implied by the records: credits in, settlement debits and transfers out."""
    credits = _sum_transactions(user_id, ESCROW_CREDIT_TYPES)
    debits = _sum_settlement_debits(user_id) + _sum_transactions(user_id, ESCROW_DEBIT_TYPES)
    return credits - debits


def reconcile_balances(*, limit: int = 500) -> dict:
    """Detect escrow anomalies (records vs stored balance).

    This does NOT auto-correct balances. It logs anomalies into AuditLog so they are visible.
    """
    checked = 0
    anomalies = 0
    now = datetime.utcnow()

    users = db.session.execute(select(User).order_by(User.id.asc()).limit(int(limit))).scalars().all()

    for u in users:
        checked += 1
        try:
            computed = expected_escrow(int(u.id))
            stored = int(u.escrow_balance or 0)

            issues = []
            if computed != stored:
                issues.append("ledger_mismatch")
            if stored < 0:
                issues.append("negative_escrow")

            if not issues:
                continue

            anomalies += 1
            meta = {
                "issues": issues,
                "user_id": int(u.id),
                "computed_balance": computed,
                "stored_balance": stored,
                "difference": stored - computed,
                "at": now.isoformat(),
            }
            db.session.add(AuditLog(
                actor_user_id=None,
                action="escrow_anomaly",
                target_type="user",
                target_id=int(u.id),
                meta=json.dumps(meta),
                created_at=now,
            ))
            db.session.commit()
            current_app.logger.warning("escrow anomaly user=%s stored=%s computed=%s", u.id, stored, computed)
        except Exception as e:
            db.session.rollback()
            current_app.logger.error("escrow reconciliation failed user=%s error=%s", u.id, e)

    current_app.logger.info("escrow reconciliation done checked=%s anomalies=%s", checked, anomalies)
    return {"ok": True, "checked": checked, "anomalies": anomalies, "ts": now.isoformat()}
