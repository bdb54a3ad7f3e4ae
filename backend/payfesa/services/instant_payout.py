"""
INSTANT PAYOUT
==============

User-initiated, PIN-gated settlement of one pending Payout, charged the fixed
instant service fee on top of the standard fee breakdown.

Everything up to the claim is validation: a rejected request leaves the Payout
`pending` and mutates nothing. The claim itself is the pending -> processing
compare-and-swap, so of two concurrent requests exactly one dispatches and the
other gets AlreadyProcessedError.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import select

from payfesa.errors import (
    AlreadyProcessedError,
    GatewayError,
    InsufficientEscrowError,
    InvalidPinError,
    LedgerError,
    PayoutNotFoundError,
)
from payfesa.extensions import db
from payfesa.models import Payout, PayoutScheduleEntry, User
from payfesa.services import ledger
from payfesa.services.destinations import resolve_destination
from payfesa.services.payout_state import transition_entry, transition_payout
from payfesa.services.settlement import SettlementTarget, complete_dispatch, fail_in_flight, notify_success
from payfesa.services.side_effects import best_effort, group_member_ids, notify_failure
from payfesa.utils.fees import calculate_fees, schedule_from_config
from payfesa.utils.notify import notify_users
from payfesa.utils.paychangu_client import PaychanguClient, PayoutRequest, generate_charge_id


def _skip_schedule_entries(payout_id: int) -> None:
    """The batch must not pick up a payout the user settled instantly."""
    ids = db.session.execute(
        select(PayoutScheduleEntry.id).where(
            PayoutScheduleEntry.payout_id == int(payout_id),
            PayoutScheduleEntry.status == "pending",
        )
    ).scalars().all()
    for entry_id in ids:
        transition_entry(entry_id, "pending", "skipped", failure_reason="settled by instant payout")


def _notify_group(payout: Payout, user: User) -> None:
    notify_users(
        group_member_ids(payout.group_id, exclude=user.id),
        "Group Member Payout",
        f"{user.name or 'A member'} received their payout for cycle {payout.cycle_number}.",
        {"type": "group_payout", "group_id": int(payout.group_id), "payout_id": int(payout.id)},
    )


def process_instant_payout(user_id: int, payout_id: int, pin: str, *, gateway=None) -> dict:
    cfg = current_app.config
    user = db.session.get(User, int(user_id))
    if not user or not user.check_pin(pin):
        raise InvalidPinError()

    payout = db.session.get(Payout, int(payout_id))
    if not payout or int(payout.recipient_id) != int(user.id):
        raise PayoutNotFoundError()
    if payout.status != "pending":
        raise AlreadyProcessedError()

    schedule = schedule_from_config(cfg)
    breakdown = calculate_fees(payout.gross_amount, instant=True, schedule=schedule)

    escrow = ledger.get_escrow_balance(user.id) or 0
    if escrow < breakdown.gross_amount:
        current_app.logger.info(
            "instant payout refused payout=%s user=%s escrow=%s gross=%s", payout.id, user.id, escrow, breakdown.gross_amount
        )
        raise InsufficientEscrowError()

    destination = resolve_destination(user.id)

    charge_id = generate_charge_id("IPO")
    claimed = transition_payout(
        payout.id, "pending", "processing",
        external_reference=charge_id, payout_type="instant",
        fee_amount=breakdown.total_fees, net_amount=breakdown.net_amount,
    )
    if not claimed:
        raise AlreadyProcessedError()
    best_effort("schedule", _skip_schedule_entries, payout.id)

    target = SettlementTarget(
        user_id=int(user.id),
        group_id=int(payout.group_id),
        charge_id=charge_id,
        payout_type="instant",
        payout_id=int(payout.id),
        method=destination.method,
    )

    gateway = gateway or PaychanguClient.from_app()
    try:
        result = gateway.dispatch_payout(PayoutRequest(
            amount=breakdown.net_amount,
            charge_id=charge_id,
            currency=cfg.get("PAYOUT_CURRENCY") or "MWK",
            **destination.request_fields(),
        ))
    except Exception as e:
        current_app.logger.error("gateway dispatch raised %s error=%s", target.log_context(), e)
        result = None

    if not result or not result.success:
        current_app.logger.warning("instant payout declined %s error=%s", target.log_context(), getattr(result, "error", "exception"))
        fail_in_flight(target, "gateway_declined")
        best_effort("notify", notify_failure, user.id, "gateway_declined", payout_id=payout.id)
        raise GatewayError()

    status = complete_dispatch(
        target, breakdown, schedule,
        gateway_status=result.status, ref_id=result.ref_id, trace_id=result.trace_id,
    )
    if status == "failed":
        raise LedgerError("Payout could not be processed")

    best_effort("notify", notify_success, target, breakdown, status)
    best_effort("notify", _notify_group, payout, user)

    db.session.refresh(payout)
    return {
        "ok": True,
        "status": status,
        "payout": payout.to_dict(),
        "fees": breakdown.to_dict(),
        "charge_id": charge_id,
    }
