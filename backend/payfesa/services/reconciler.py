"""
GATEWAY RECONCILIATION
======================

Applies an asynchronous gateway status to the record that owns the charge id.

Safe under at-least-once delivery: every move is a compare-and-swap from the
stored status, so a replayed callback finds nothing to move and has no effect
(no second credit, no second notification). Terminal statuses are never
changed. A failed payout is recorded and notified but escrow is NOT reversed
here; reversal is an administrative action.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import select, update

from payfesa.errors import LedgerError
from payfesa.extensions import db
from payfesa.models import Contribution, GroupMember, Payout, PayoutScheduleEntry, Transaction
from payfesa.services import ledger
from payfesa.services.payout_state import transition_entry, transition_payout
from payfesa.services.side_effects import CONTRIBUTION_TRUST_BONUS, best_effort, bump_trust_score, notify_failure
from payfesa.utils.audit import write_audit
from payfesa.utils.notify import notify_users
from payfesa.utils.paychangu_client import map_status

PAYOUT_EVENTS = {"api.payout", "payout"}
CONTRIBUTION_EVENTS = {"api.charge.payment", "charge.payment", "payment"}


@dataclass
class ReconcileOutcome:
    kind: str  # payout | contribution | ignored
    status: str = ""
    changed: bool = False
    reason: str = ""

    def to_dict(self) -> dict:
        return {"kind": self.kind, "status": self.status, "changed": self.changed, "reason": self.reason}


def reconcile(event_type: str, transaction: dict) -> ReconcileOutcome:
    event = (event_type or "").strip().lower()
    charge_id = str((transaction or {}).get("charge_id") or "").strip()
    if not charge_id:
        return ReconcileOutcome(kind="ignored", reason="missing charge_id")

    status = map_status(transaction.get("status"))
    if event in PAYOUT_EVENTS:
        return _reconcile_payout(charge_id, status, transaction)
    if event in CONTRIBUTION_EVENTS:
        return _reconcile_contribution(charge_id, status, transaction)
    return ReconcileOutcome(kind="ignored", status=status, reason=f"unhandled event {event or '-'}")


# ============================================================
# PAYOUTS
# ============================================================

def _payout_status_record(*, user_id: int, group_id: int, payout_id: int | None, amount: int, status: str, charge_id: str, transaction: dict, entry_id: int | None) -> None:
    supersedes = db.session.execute(
        select(Transaction.id)
        .where(Transaction.charge_id == charge_id, Transaction.type == "payout")
        .order_by(Transaction.id.asc())
    ).scalars().first()
    db.session.add(Transaction(
        user_id=int(user_id),
        group_id=int(group_id),
        payout_id=payout_id,
        type="payout_status",
        amount=int(amount or 0),
        status=status,
        charge_id=charge_id,
        details=json.dumps({
            "supersedes": supersedes,
            "schedule_entry_id": entry_id,
            "ref_id": transaction.get("ref_id") or "",
            "failure_reason": transaction.get("failure_reason") or "",
        }),
    ))
    db.session.commit()


def _reconcile_payout(charge_id: str, status: str, transaction: dict) -> ReconcileOutcome:
    payout = db.session.execute(select(Payout).where(Payout.external_reference == charge_id)).scalar_one_or_none()
    entry = db.session.execute(
        select(PayoutScheduleEntry).where(PayoutScheduleEntry.charge_id == charge_id)
    ).scalar_one_or_none()
    if entry and not payout and entry.payout_id:
        payout = db.session.get(Payout, int(entry.payout_id))

    if not payout and not entry:
        current_app.logger.warning("payout callback for unknown charge=%s status=%s", charge_id, status)
        return ReconcileOutcome(kind="ignored", status=status, reason="unknown charge_id")

    if status == "processing":
        return ReconcileOutcome(kind="payout", status=status, reason="still in flight")

    now = datetime.utcnow()
    fields = {"processed_at": now}
    if status == "failed":
        # The gateway text stays in the payout_status record; members only see the category.
        fields["failure_reason"] = "gateway_declined"

    moved = False
    if payout:
        payout_fields = dict(fields)
        if transaction.get("ref_id"):
            payout_fields["gateway_ref_id"] = str(transaction.get("ref_id"))[:128]
        moved = transition_payout(payout.id, "processing", status, **payout_fields)
    if entry:
        entry_moved = transition_entry(entry.id, "processing", status, **fields)
        moved = moved or entry_moved

    if not moved:
        stored = payout.status if payout else entry.status
        if stored in ("completed", "failed") and stored != status:
            current_app.logger.warning(
                "conflicting callback ignored charge=%s stored=%s reported=%s", charge_id, stored, status
            )
        return ReconcileOutcome(kind="payout", status=stored, reason="no transition")

    user_id = int(payout.recipient_id if payout else entry.user_id)
    group_id = int(payout.group_id if payout else entry.group_id)
    amount = int(payout.gross_amount if payout else entry.amount)
    payout_id = int(payout.id) if payout else None
    entry_id = int(entry.id) if entry else None

    _payout_status_record(
        user_id=user_id, group_id=group_id, payout_id=payout_id, amount=amount,
        status=status, charge_id=charge_id, transaction=transaction, entry_id=entry_id,
    )
    current_app.logger.info("payout reconciled charge=%s payout=%s entry=%s status=%s", charge_id, payout_id, entry_id, status)

    if status == "completed":
        best_effort("notify", notify_users, [user_id], "Payout Received",
                    "Your payout has been delivered.",
                    {"type": "payout_completed", "payout_id": payout_id, "schedule_entry_id": entry_id})
    else:
        write_audit("payout_failed_after_dispatch", target_type="payout", target_id=payout_id,
                    meta={"charge_id": charge_id, "schedule_entry_id": entry_id, "reason": (transaction.get("failure_reason") or "")[:240]})
        best_effort("notify", notify_failure, user_id, "gateway_declined", payout_id=payout_id, schedule_entry_id=entry_id)
    return ReconcileOutcome(kind="payout", status=status, changed=True)


# ============================================================
# CONTRIBUTIONS (money coming in)
# ============================================================

def _move_contribution(contribution_id: int, from_statuses, to_status: str, *, commit: bool = True, **fields) -> bool:
    result = db.session.execute(
        update(Contribution)
        .where(Contribution.id == int(contribution_id), Contribution.status.in_(list(from_statuses)))
        .values(status=to_status, **fields)
        .execution_options(synchronize_session=False)
    )
    if commit:
        db.session.commit()
    return result.rowcount == 1


def _reconcile_contribution(charge_id: str, status: str, transaction: dict) -> ReconcileOutcome:
    c = db.session.execute(select(Contribution).where(Contribution.charge_id == charge_id)).scalar_one_or_none()
    if not c:
        current_app.logger.warning("contribution callback for unknown charge=%s status=%s", charge_id, status)
        return ReconcileOutcome(kind="ignored", status=status, reason="unknown charge_id")
    if status == "processing":
        return ReconcileOutcome(kind="contribution", status=status, reason="still in flight")

    ref_id = str(transaction.get("ref_id") or "")[:128] or None
    if status == "failed":
        if not _move_contribution(c.id, ("pending", "processing"), "failed", gateway_ref_id=ref_id):
            return ReconcileOutcome(kind="contribution", status=c.status, reason="no transition")
        _contribution_record(c, "failed", transaction)
        current_app.logger.info("contribution failed charge=%s user=%s", charge_id, c.user_id)
        return ReconcileOutcome(kind="contribution", status="failed", changed=True)

    # One commit covers the status move and the escrow credit.
    try:
        moved = _move_contribution(
            c.id, ("pending", "processing"), "completed", commit=False,
            gateway_ref_id=ref_id, completed_at=datetime.utcnow(),
        )
        if not moved:
            db.session.rollback()
            return ReconcileOutcome(kind="contribution", status=c.status, reason="no transition")
        ledger.adjust_escrow(c.user_id, int(c.amount), reason=f"contribution:{charge_id}", commit=False)
        db.session.execute(
            update(GroupMember)
            .where(GroupMember.group_id == int(c.group_id), GroupMember.user_id == int(c.user_id))
            .values(has_contributed=True, contribution_amount=GroupMember.contribution_amount + int(c.amount))
            .execution_options(synchronize_session=False)
        )
        _contribution_record(c, "completed", transaction, commit=False)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error("contribution escrow credit failed charge=%s error=%s", charge_id, e)
        raise LedgerError()

    best_effort("trust", bump_trust_score, c.user_id, CONTRIBUTION_TRUST_BONUS, f"contribution {charge_id}")
    currency = current_app.config.get("PAYOUT_CURRENCY") or "MWK"
    best_effort("notify", notify_users, [c.user_id], "Contribution Successful",
                f"Your contribution of {currency} {int(c.amount):,} has been received.",
                {"type": "contribution_completed", "group_id": int(c.group_id), "contribution_id": int(c.id)})
    current_app.logger.info("contribution credited charge=%s user=%s amount=%s", charge_id, c.user_id, c.amount)
    return ReconcileOutcome(kind="contribution", status="completed", changed=True)


def _contribution_record(c: Contribution, status: str, transaction: dict, *, commit: bool = True) -> None:
    db.session.add(Transaction(
        user_id=int(c.user_id),
        group_id=int(c.group_id),
        type="contribution",
        amount=int(c.amount or 0),
        status=status,
        charge_id=c.charge_id,
        details=json.dumps({"contribution_id": int(c.id), "ref_id": transaction.get("ref_id") or ""}),
    ))
    if commit:
        db.session.commit()
