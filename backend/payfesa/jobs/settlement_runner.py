from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, time

from flask import current_app
from sqlalchemy import select

from payfesa.errors import InvalidAmountError, SettlementError
from payfesa.extensions import db
from payfesa.models import Payout, PayoutScheduleEntry
from payfesa.services import ledger
from payfesa.services.destinations import resolve_destination
from payfesa.services.payout_state import transition_entry, transition_payout
from payfesa.services.reserve import ReserveFundService
from payfesa.services.settlement import SettlementTarget, complete_dispatch, fail_in_flight, notify_success
from payfesa.services.side_effects import best_effort, notify_failure
from payfesa.utils.fees import calculate_fees, schedule_from_config, to_units
from payfesa.utils.paychangu_client import PaychanguClient, PayoutRequest, generate_charge_id


def _now():
    return datetime.utcnow()


def parse_cutoff(value) -> time:
    if isinstance(value, time):
        return value
    raw = (value or "17:00:00").strip()
    fmt = "%H:%M:%S" if raw.count(":") == 2 else "%H:%M"
    return datetime.strptime(raw, fmt).time()


def due_entry_ids(today: date, cutoff: time) -> list[int]:
    rows = db.session.execute(
        select(PayoutScheduleEntry.id)
        .where(
            PayoutScheduleEntry.status == "pending",
            PayoutScheduleEntry.scheduled_date == today,
            PayoutScheduleEntry.payout_time <= cutoff,
        )
        .order_by(PayoutScheduleEntry.payout_time.asc(), PayoutScheduleEntry.id.asc())
    ).scalars().all()
    return [int(r) for r in rows]


def _fail_before_dispatch(entry: PayoutScheduleEntry, category: str) -> str:
    """Funding or destination failure: no gateway call was made."""
    now = _now()
    transition_entry(entry.id, "processing", "failed", failure_reason=category, processed_at=now)
    if entry.payout_id:
        transition_payout(entry.payout_id, "pending", "failed", failure_reason=category, processed_at=now)
    best_effort("notify", notify_failure, entry.user_id, category, payout_id=entry.payout_id, schedule_entry_id=entry.id)
    current_app.logger.info("scheduled payout failed entry=%s payout=%s reason=%s", entry.id, entry.payout_id, category)
    return "failed"


def settle_entry(entry_id: int, *, gateway, reserve, schedule, currency: str) -> str:
    """Drive one schedule entry through funding -> dispatch -> ledger. Returns processed|failed|skipped."""
    entry = db.session.get(PayoutScheduleEntry, int(entry_id))
    if not entry or entry.status != "pending":
        return "skipped"

    # Already taken by the instant flow (or an operator).
    if entry.payout_id:
        payout = db.session.get(Payout, int(entry.payout_id))
        if payout and payout.status != "pending":
            transition_entry(entry.id, "pending", "skipped", failure_reason=f"payout {payout.status}")
            return "skipped"

    charge_id = generate_charge_id("SPO")
    if not transition_entry(entry.id, "pending", "processing", charge_id=charge_id):
        return "skipped"
    db.session.refresh(entry)

    # Malformed amounts fail the entry and its payout, they never crash the run.
    try:
        amount = to_units(entry.amount)
        breakdown = calculate_fees(amount, schedule=schedule)
    except InvalidAmountError:
        current_app.logger.warning("schedule entry has unusable amount entry=%s amount=%r", entry.id, entry.amount)
        return _fail_before_dispatch(entry, "processing_error")

    # funding check, reserve coverage on shortfall
    escrow = ledger.get_escrow_balance(entry.user_id) or 0
    if escrow < amount:
        try:
            coverage = reserve.cover_shortfall(entry.group_id, entry.user_id, amount)
        except SettlementError as e:
            db.session.rollback()
            current_app.logger.error("reserve coverage failed entry=%s error=%s", entry.id, e)
            return _fail_before_dispatch(entry, "processing_error")
        if not coverage.covered:
            return _fail_before_dispatch(entry, "insufficient_funds")

    # destination
    try:
        destination = resolve_destination(entry.user_id)
    except SettlementError:
        return _fail_before_dispatch(entry, "no_payment_method")

    target = SettlementTarget(
        user_id=int(entry.user_id),
        group_id=int(entry.group_id),
        charge_id=charge_id,
        payout_type="scheduled",
        payout_id=int(entry.payout_id) if entry.payout_id else None,
        schedule_entry_id=int(entry.id),
        method=destination.method,
    )

    if target.payout_id:
        claimed = transition_payout(
            target.payout_id, "pending", "processing",
            external_reference=charge_id, payout_type="scheduled",
            fee_amount=breakdown.total_fees, net_amount=breakdown.net_amount,
        )
        if not claimed:
            transition_entry(entry.id, "processing", "skipped", failure_reason="payout claimed by another flow")
            return "skipped"

    # dispatch with the idempotent charge id
    try:
        result = gateway.dispatch_payout(PayoutRequest(
            amount=breakdown.net_amount,
            charge_id=charge_id,
            currency=currency,
            **destination.request_fields(),
        ))
    except Exception as e:
        current_app.logger.error("gateway dispatch raised %s error=%s", target.log_context(), e)
        result = None

    if not result or not result.success:
        current_app.logger.warning(
            "gateway declined %s error=%s", target.log_context(), getattr(result, "error", "exception")
        )
        fail_in_flight(target, "gateway_declined")
        best_effort("notify", notify_failure, target.user_id, "gateway_declined",
                    payout_id=target.payout_id, schedule_entry_id=target.schedule_entry_id)
        return "failed"

    # ledger, records, side effects
    status = complete_dispatch(
        target, breakdown, schedule,
        gateway_status=result.status, ref_id=result.ref_id, trace_id=result.trace_id,
    )
    if status == "failed":
        return "failed"
    best_effort("notify", notify_success, target, breakdown, status)
    return "processed"


def _settle_guarded(entry_id: int, **kwargs) -> tuple[str, bool]:
    """(outcome, crashed). A crash never escapes into the run."""
    try:
        return settle_entry(entry_id, **kwargs), False
    except Exception as e:
        db.session.rollback()
        current_app.logger.exception("scheduled settlement crashed entry=%s error=%s", entry_id, e)
        try:
            _fail_crashed(entry_id)
        except Exception as undo_err:
            db.session.rollback()
            current_app.logger.error("could not fail crashed entry=%s error=%s", entry_id, undo_err)
        return "failed", True


def _fail_crashed(entry_id: int) -> None:
    """Never leave a crashed entry claimed; no debit happens outside complete_dispatch."""
    if not transition_entry(entry_id, "processing", "failed", failure_reason="processing_error", processed_at=_now()):
        return
    entry = db.session.get(PayoutScheduleEntry, int(entry_id))
    if entry.payout_id:
        transition_payout(entry.payout_id, "pending", "failed", failure_reason="processing_error", processed_at=_now())
    best_effort("notify", notify_failure, entry.user_id, "processing_error",
                payout_id=entry.payout_id, schedule_entry_id=entry.id)


def _settle_in_worker(app, entry_id: int, **kwargs) -> tuple[str, bool]:
    with app.app_context():
        try:
            return _settle_guarded(entry_id, **kwargs)
        finally:
            db.session.remove()


def run_scheduled_settlement(*, today=None, cutoff=None, max_workers=None, gateway=None, reserve=None) -> dict:
    """Settle every pending schedule entry due today at or before the cutoff.

    Entries are independent: one raising entry is counted and the run goes on.
    With max_workers > 1 entries are settled on a bounded thread pool; escrow
    mutations for one user still serialize in the ledger.
    """
    app = current_app._get_current_object()
    cfg = app.config

    today = today or _now().date()
    cutoff = parse_cutoff(cutoff or cfg.get("PAYOUT_CUTOFF_TIME"))
    workers = max(1, int(max_workers or cfg.get("SETTLEMENT_MAX_WORKERS") or 1))

    kwargs = {
        "gateway": gateway or PaychanguClient.from_app(app),
        "reserve": reserve or ReserveFundService(),
        "schedule": schedule_from_config(cfg),
        "currency": cfg.get("PAYOUT_CURRENCY") or "MWK",
    }

    ids = due_entry_ids(today, cutoff)
    counts = {"processed": 0, "failed": 0, "skipped": 0}
    errors = 0

    app.logger.info("scheduled settlement start date=%s cutoff=%s entries=%s workers=%s", today, cutoff, len(ids), workers)

    if workers == 1:
        results = [_settle_guarded(entry_id, **kwargs) for entry_id in ids]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_settle_in_worker, app, entry_id, **kwargs) for entry_id in ids]
            results = [fut.result() for fut in as_completed(futures)]

    for outcome, crashed in results:
        counts[outcome] += 1
        errors += int(crashed)

    app.logger.info(
        "scheduled settlement done total=%s processed=%s failed=%s skipped=%s",
        len(ids), counts["processed"], counts["failed"], counts["skipped"],
    )
    return {
        "ok": True,
        "total": len(ids),
        "processed": counts["processed"],
        "failed": counts["failed"],
        "skipped": counts["skipped"],
        "errors": errors,
        "ts": _now().isoformat(),
    }
