"""Downstream writes that follow a terminal settlement.

None of these may fail a settlement that already moved money: callers go
through ``best_effort`` which logs and swallows.
"""
from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import case, select, update

from payfesa.extensions import db
from payfesa.models import GroupMember, RevenueTransaction, TrustScoreEvent, User
from payfesa.utils.fees import FeeBreakdown, FeeSchedule
from payfesa.utils.notify import notify_users

TRUST_MIN = 0
TRUST_MAX = 100

PAYOUT_TRUST_BONUS = 2
CONTRIBUTION_TRUST_BONUS = 5

# Cause categories shown to users on a failed payout
FAILURE_MESSAGES = {
    "no_payment_method": "No payment method found. Please add a mobile money or bank account.",
    "insufficient_funds": "Insufficient funds were available for this payout.",
    "gateway_declined": "The payment provider declined the payout.",
    "processing_error": "The payout could not be processed.",
}


def best_effort(label: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("side effect %s failed: %s", label, e)
        return None


def record_revenue(
    *,
    user_id: int,
    breakdown: FeeBreakdown,
    schedule: FeeSchedule,
    group_id: int | None = None,
    payout_id: int | None = None,
    schedule_entry_id: int | None = None,
    charge_id: str = "",
) -> list[RevenueTransaction]:
    """Platform fee row, plus an instant fee row when a service fee was charged."""
    rows = [RevenueTransaction(
        user_id=int(user_id),
        group_id=group_id,
        payout_id=payout_id,
        schedule_entry_id=schedule_entry_id,
        revenue_type="fee",
        amount=breakdown.platform_fee,
        original_payout_amount=breakdown.gross_amount,
        net_payout=breakdown.net_amount,
        fee_percentage=(schedule.platform_rate * 100).quantize(Decimal("0.01")),
        charge_id=charge_id or None,
    )]
    if breakdown.service_fee > 0:
        rows.append(RevenueTransaction(
            user_id=int(user_id),
            group_id=group_id,
            payout_id=payout_id,
            schedule_entry_id=schedule_entry_id,
            revenue_type="instant_payout_fee",
            amount=breakdown.service_fee,
            original_payout_amount=breakdown.gross_amount,
            net_payout=breakdown.net_amount,
            fee_percentage=None,
            charge_id=charge_id or None,
        ))
    db.session.add_all(rows)
    db.session.commit()
    return rows


def bump_trust_score(user_id: int, delta: int, reason: str = "") -> int | None:
    """Atomic, clamped to [0, 100]. Returns the new score."""
    raw = User.trust_score + int(delta)
    clamped = case((raw > TRUST_MAX, TRUST_MAX), (raw < TRUST_MIN, TRUST_MIN), else_=raw)
    result = db.session.execute(
        update(User)
        .where(User.id == int(user_id))
        .values(trust_score=clamped)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        return None
    score = db.session.execute(select(User.trust_score).where(User.id == int(user_id))).scalar_one()
    db.session.add(TrustScoreEvent(user_id=int(user_id), change_amount=int(delta), score_after=int(score), reason=(reason or "")[:240]))
    db.session.commit()
    return int(score)


def group_member_ids(group_id: int, *, exclude: int | None = None) -> list[int]:
    ids = db.session.execute(select(GroupMember.user_id).where(GroupMember.group_id == int(group_id))).scalars().all()
    return [int(i) for i in ids if exclude is None or int(i) != int(exclude)]


def notify_failure(user_id: int, category: str, *, payout_id: int | None = None, schedule_entry_id: int | None = None) -> None:
    body = FAILURE_MESSAGES.get(category) or FAILURE_MESSAGES["processing_error"]
    data = {"type": "payout_failed", "reason": category}
    if payout_id:
        data["payout_id"] = int(payout_id)
    if schedule_entry_id:
        data["schedule_entry_id"] = int(schedule_entry_id)
    notify_users([user_id], "Payout Failed", body, data)
