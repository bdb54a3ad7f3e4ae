"""Payout status transitions.

pending -> processing -> completed
pending -> failed
processing -> failed

Every move is a compare-and-swap on the stored status, so for one payout only
one of {scheduled settlement, instant payout, webhook} can win a transition.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import update

from payfesa.errors import InvalidTransitionError
from payfesa.extensions import db
from payfesa.models import Payout, PayoutScheduleEntry

TERMINAL = frozenset({"completed", "failed"})

ALLOWED = {
    "pending": {"processing", "failed"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

# Schedule entries are queue rows: the batch claims one before checking funds, and
# steps it aside when another flow already took the linked payout.
ENTRY_ALLOWED = {
    **ALLOWED,
    "pending": {"processing", "failed", "skipped"},
    "processing": {"completed", "failed", "skipped"},
    "skipped": set(),
}


def assert_transition(old: str, new: str, *, allowed: dict = ALLOWED) -> None:
    if new not in allowed.get(old, set()):
        raise InvalidTransitionError(f"Illegal payout transition: {old} -> {new}")


def _cas(model, row_id: int, from_status: str, to_status: str, allowed: dict, commit: bool, **fields) -> bool:
    assert_transition(from_status, to_status, allowed=allowed)
    values = {"status": to_status, **fields}
    if hasattr(model, "updated_at"):
        values.setdefault("updated_at", datetime.utcnow())
    result = db.session.execute(
        update(model)
        .where(model.id == int(row_id), model.status == from_status)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if commit:
        db.session.commit()
    return result.rowcount == 1


def transition_payout(payout_id: int, from_status: str, to_status: str, *, commit: bool = True, **fields) -> bool:
    """Move a payout if and only if it is still in ``from_status``.

    With ``commit=False`` the UPDATE joins the caller's transaction.
    """
    return _cas(Payout, payout_id, from_status, to_status, ALLOWED, commit, **fields)


def transition_entry(entry_id: int, from_status: str, to_status: str, *, commit: bool = True, **fields) -> bool:
    return _cas(PayoutScheduleEntry, entry_id, from_status, to_status, ENTRY_ALLOWED, commit, **fields)


IN_FLIGHT = frozenset({"pending", "processing"})


def status_after_dispatch(gateway_status: str) -> str:
    """An accepted dispatch still in flight stays processing; anything else the gateway accepted is done."""
    return "processing" if (gateway_status or "").strip().lower() in IN_FLIGHT else "completed"
