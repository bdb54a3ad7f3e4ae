from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select

from payfesa.extensions import db
from payfesa.models import Payout, PayoutScheduleEntry
from payfesa.services.reconciler import reconcile
from payfesa.utils.paychangu_client import PaychanguClient


def _stale_charge_ids(older_than_minutes: int, limit: int) -> list[str]:
    cutoff = datetime.utcnow() - timedelta(minutes=int(older_than_minutes))
    payout_refs = db.session.execute(
        select(Payout.external_reference)
        .where(Payout.status == "processing", Payout.external_reference.is_not(None), Payout.updated_at <= cutoff)
        .order_by(Payout.updated_at.asc())
        .limit(int(limit))
    ).scalars().all()
    # Entries with no linked payout are tracked on their own charge id.
    entry_refs = db.session.execute(
        select(PayoutScheduleEntry.charge_id)
        .where(
            PayoutScheduleEntry.status == "processing",
            PayoutScheduleEntry.payout_id.is_(None),
            PayoutScheduleEntry.charge_id.is_not(None),
        )
        .order_by(PayoutScheduleEntry.id.asc())
        .limit(int(limit))
    ).scalars().all()
    return list(dict.fromkeys([*payout_refs, *entry_refs]))[: int(limit)]


def verify_processing_payouts(*, older_than_minutes: int = 15, limit: int = 100, gateway=None) -> dict:
    """Fallback to the webhook: ask the gateway about payouts stuck in processing.

    "Still pending" and unreachable gateway answers leave the row as it is; a
    payout is never failed just because it has been in flight for a long time.
    """
    gateway = gateway or PaychanguClient.from_app()

    checked = 0
    updated = 0
    pending = 0
    errors = 0

    for charge_id in _stale_charge_ids(older_than_minutes, limit):
        checked += 1
        try:
            status = gateway.verify(charge_id)
            if status not in ("completed", "failed"):
                pending += 1
                continue
            outcome = reconcile("api.payout", {"charge_id": charge_id, "status": status})
            if outcome.changed:
                updated += 1
        except Exception as e:
            errors += 1
            db.session.rollback()
            current_app.logger.warning("payout verification failed charge=%s error=%s", charge_id, e)

    current_app.logger.info("payout verification checked=%s updated=%s pending=%s errors=%s", checked, updated, pending, errors)
    return {
        "ok": True,
        "checked": checked,
        "updated": updated,
        "pending": pending,
        "errors": errors,
        "ts": datetime.utcnow().isoformat(),
    }
