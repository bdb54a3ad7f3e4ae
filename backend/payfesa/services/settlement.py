"""
POST-DISPATCH SETTLEMENT
========================

Shared by the scheduled batch and the instant payout flow once the gateway has
accepted a dispatch:

  core (compensated on failure)
    1. record a SettlementIntent for the charge id
    2. debit escrow by the gross amount
    3. append the `payout` Transaction Record
    4. move payout / schedule entry out of processing (same commit as 3)

  best effort (logged, never fails the settlement)
    reserve slice, revenue rows, trust score, notifications

A refused debit after a real dispatch is the one case where money may have
left without an internal record; it is escalated, never silently retried.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import update

from payfesa.extensions import db
from payfesa.models import Payout, Transaction
from payfesa.services import ledger
from payfesa.services.payout_state import status_after_dispatch, transition_entry, transition_payout
from payfesa.services.reserve import add_to_reserve
from payfesa.services.side_effects import (
    PAYOUT_TRUST_BONUS,
    best_effort,
    bump_trust_score,
    notify_failure,
    record_revenue,
)
from payfesa.utils.audit import escalate
from payfesa.utils.fees import FeeBreakdown, FeeSchedule
from payfesa.utils.notify import notify_users


@dataclass
class SettlementTarget:
    user_id: int
    group_id: int
    charge_id: str
    payout_type: str  # scheduled | instant
    payout_id: int | None = None
    schedule_entry_id: int | None = None
    method: str = ""

    def log_context(self) -> str:
        return f"payout={self.payout_id} entry={self.schedule_entry_id} charge={self.charge_id}"


def fail_in_flight(target: SettlementTarget, category: str) -> None:
    """processing -> failed on whichever rows this settlement holds."""
    now = datetime.utcnow()
    if target.payout_id:
        transition_payout(target.payout_id, "processing", "failed", failure_reason=category, processed_at=now)
    if target.schedule_entry_id:
        transition_entry(target.schedule_entry_id, "processing", "failed", failure_reason=category, processed_at=now)


def _move_to(target: SettlementTarget, status: str, ref_id: str) -> None:
    """Stage the status move; the caller commits it together with the payout record."""
    if target.payout_id and ref_id:
        db.session.execute(
            update(Payout).where(Payout.id == int(target.payout_id)).values(gateway_ref_id=ref_id)
            .execution_options(synchronize_session=False)
        )
    if status == "processing":
        # In flight until the webhook or the verifier reports a terminal status.
        return
    now = datetime.utcnow()
    if target.payout_id and not transition_payout(target.payout_id, "processing", status, commit=False, processed_at=now):
        current_app.logger.info("payout already moved by another flow %s", target.log_context())
    if target.schedule_entry_id and not transition_entry(
        target.schedule_entry_id, "processing", status, commit=False, processed_at=now
    ):
        current_app.logger.info("schedule entry already moved by another flow %s", target.log_context())


def complete_dispatch(
    target: SettlementTarget,
    breakdown: FeeBreakdown,
    schedule: FeeSchedule,
    *,
    gateway_status: str,
    ref_id: str = "",
    trace_id: str = "",
) -> str:
    """Apply the ledger side of an accepted dispatch. Returns the resulting status."""
    status = status_after_dispatch(gateway_status)
    intent = ledger.record_intent(
        charge_id=target.charge_id,
        user_id=target.user_id,
        amount=breakdown.gross_amount,
        payout_id=target.payout_id,
        schedule_entry_id=target.schedule_entry_id,
    )

    try:
        ledger.debit_for_intent(intent)
    except Exception as e:
        ledger.mark_refused(intent, note=str(e))
        escalate(
            f"escrow debit refused after dispatch: {e}",
            charge_id=target.charge_id, payout_id=target.payout_id,
            schedule_entry_id=target.schedule_entry_id, user_id=target.user_id,
            amount=breakdown.gross_amount,
        )
        fail_in_flight(target, "processing_error")
        best_effort("notify", notify_failure, target.user_id, "processing_error",
                    payout_id=target.payout_id, schedule_entry_id=target.schedule_entry_id)
        return "failed"

    try:
        db.session.add(Transaction(
            user_id=int(target.user_id),
            group_id=int(target.group_id),
            payout_id=target.payout_id,
            type="payout",
            amount=breakdown.gross_amount,
            status=status,
            charge_id=target.charge_id,
            details=json.dumps({
                "payout_type": target.payout_type,
                "schedule_entry_id": target.schedule_entry_id,
                "ref_id": ref_id,
                "trace_id": trace_id,
                "method": target.method,
                "fees": breakdown.to_dict(),
            }),
        ))
        _move_to(target, status, ref_id)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error("post-dispatch record failed %s error=%s", target.log_context(), e)
        ledger.compensate(intent, reason=f"post-dispatch record failed: {e}")
        fail_in_flight(target, "processing_error")
        best_effort("notify", notify_failure, target.user_id, "processing_error",
                    payout_id=target.payout_id, schedule_entry_id=target.schedule_entry_id)
        return "failed"

    ledger.mark_settled(intent)
    current_app.logger.info(
        "settlement dispatched %s status=%s gross=%s net=%s", target.log_context(), status,
        breakdown.gross_amount, breakdown.net_amount,
    )

    if breakdown.reserve_routed > 0:
        best_effort("reserve", add_to_reserve, target.group_id, breakdown.reserve_routed,
                    user_id=target.user_id, reason=f"fee slice {target.charge_id}")
    best_effort("revenue", record_revenue, user_id=target.user_id, breakdown=breakdown, schedule=schedule,
                group_id=target.group_id, payout_id=target.payout_id,
                schedule_entry_id=target.schedule_entry_id, charge_id=target.charge_id)
    best_effort("trust", bump_trust_score, target.user_id, PAYOUT_TRUST_BONUS, f"payout {target.charge_id}")
    return status


def notify_success(target: SettlementTarget, breakdown: FeeBreakdown, status: str) -> None:
    currency = current_app.config.get("PAYOUT_CURRENCY") or "MWK"
    title = "Instant Payout Processed" if target.payout_type == "instant" else "Payout Received"
    verb = "is on its way" if status == "processing" else "has been sent"
    notify_users(
        [target.user_id],
        title,
        f"Your payout of {currency} {breakdown.net_amount:,} {verb}.",
        {
            "type": f"{target.payout_type}_payout",
            "payout_id": target.payout_id,
            "schedule_entry_id": target.schedule_entry_id,
            "net_amount": breakdown.net_amount,
            "status": status,
        },
    )
