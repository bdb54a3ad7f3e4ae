"""
ESCROW LEDGER - ATOMIC BALANCE MUTATION
=======================================

Every change to users.escrow_balance, users.wallet_balance and
reserve_wallets.balance goes through this module. Each adjustment is a single
conditional UPDATE (compare-and-swap on the resulting balance), so concurrent
settlements targeting the same user serialize in the database and a balance
can never be driven below zero. A refused adjustment mutates nothing.

Escrow debits made by a settlement are paired with a SettlementIntent so that
a failure after the debit can be compensated exactly once.
"""
from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy import select, update

from payfesa.errors import InsufficientEscrowError, InvalidAmountError, InvalidPinError, LedgerError
from payfesa.extensions import db
from payfesa.models import ReserveWallet, SettlementIntent, Transaction, User
from payfesa.utils.audit import escalate
from payfesa.utils.fees import to_units


# ============================================================
# BALANCE ADJUSTMENTS
# ============================================================

def _adjust_user_column(column_name: str, user_id: int, delta: int, *, commit: bool = True) -> int:
    """Conditional UPDATE of one user balance column.

    With ``commit=False`` the UPDATE joins the caller's transaction; a refusal
    still rolls back everything staged so far.
    """
    column = getattr(User, column_name)
    try:
        result = db.session.execute(
            update(User)
            .where(User.id == int(user_id), column + delta >= 0)
            .values({column_name: column + delta})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            exists = db.session.execute(select(User.id).where(User.id == int(user_id))).first()
            if not exists:
                current_app.logger.error("balance update for unknown user=%s column=%s", user_id, column_name)
                raise LedgerError()
            if column_name == "wallet_balance":
                raise InsufficientEscrowError("Insufficient wallet balance")
            raise InsufficientEscrowError()
        new_balance = db.session.execute(select(column).where(User.id == int(user_id))).scalar_one()
        if commit:
            db.session.commit()
    except (InsufficientEscrowError, LedgerError):
        raise
    except Exception as e:
        db.session.rollback()
        current_app.logger.error("balance update failed user=%s column=%s error=%s", user_id, column_name, e)
        raise LedgerError()
    return int(new_balance)


def adjust_escrow(user_id: int, delta: int, *, reason: str = "", commit: bool = True) -> int:
    """Atomically add ``delta`` to the user's escrow balance; returns the new balance."""
    delta = to_units(delta)
    new_balance = _adjust_user_column("escrow_balance", user_id, delta, commit=commit)
    current_app.logger.info("escrow adjusted user=%s delta=%s balance=%s reason=%s", user_id, delta, new_balance, reason)
    return new_balance


def adjust_wallet(user_id: int, delta: int, *, reason: str = "") -> int:
    delta = to_units(delta)
    new_balance = _adjust_user_column("wallet_balance", user_id, delta)
    current_app.logger.info("wallet adjusted user=%s delta=%s balance=%s reason=%s", user_id, delta, new_balance, reason)
    return new_balance


def get_escrow_balance(user_id: int) -> int | None:
    value = db.session.execute(select(User.escrow_balance).where(User.id == int(user_id))).scalar_one_or_none()
    return int(value) if value is not None else None


def adjust_reserve(group_id: int, delta: int) -> int:
    """Same discipline as escrow, against the group's reserve wallet.

    The wallet row must already exist; see services.reserve.get_or_create_reserve_wallet.
    """
    delta = to_units(delta)
    try:
        result = db.session.execute(
            update(ReserveWallet)
            .where(ReserveWallet.group_id == int(group_id), ReserveWallet.balance + delta >= 0)
            .values(balance=ReserveWallet.balance + delta, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise InsufficientEscrowError("Insufficient reserve balance")
        new_balance = db.session.execute(
            select(ReserveWallet.balance).where(ReserveWallet.group_id == int(group_id))
        ).scalar_one()
        db.session.commit()
    except InsufficientEscrowError:
        raise
    except Exception as e:
        db.session.rollback()
        current_app.logger.error("reserve update failed group=%s error=%s", group_id, e)
        raise LedgerError()
    return int(new_balance)


# ============================================================
# SETTLEMENT INTENTS (COMPENSATION)
# ============================================================

def record_intent(*, charge_id: str, user_id: int, amount: int, payout_id: int | None = None, schedule_entry_id: int | None = None) -> SettlementIntent:
    intent = SettlementIntent(
        charge_id=charge_id,
        user_id=int(user_id),
        amount=int(amount),
        payout_id=payout_id,
        schedule_entry_id=schedule_entry_id,
        state="dispatched",
    )
    db.session.add(intent)
    db.session.commit()
    return intent


def _move_intent(intent_id: int, from_state: str, to_state: str, note: str = "") -> bool:
    values = {"state": to_state, "updated_at": datetime.utcnow()}
    if note:
        values["note"] = note[:240]
    result = db.session.execute(
        update(SettlementIntent)
        .where(SettlementIntent.id == int(intent_id), SettlementIntent.state == from_state)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def debit_for_intent(intent: SettlementIntent) -> int:
    """Debit escrow for a dispatched settlement and mark the intent debited."""
    new_balance = adjust_escrow(intent.user_id, -int(intent.amount), reason=f"settlement:{intent.charge_id}")
    if not _move_intent(intent.id, "dispatched", "debited"):
        # Someone else already moved this intent; undo our debit right away.
        adjust_escrow(intent.user_id, int(intent.amount), reason=f"duplicate-debit:{intent.charge_id}")
        current_app.logger.error("settlement intent not dispatched charge=%s", intent.charge_id)
        raise LedgerError()
    return new_balance


def mark_settled(intent: SettlementIntent) -> bool:
    return _move_intent(intent.id, "debited", "settled")


def mark_refused(intent: SettlementIntent, note: str) -> bool:
    return _move_intent(intent.id, "dispatched", "failed", note=note)


def compensate(intent: SettlementIntent, reason: str) -> bool:
    """Credit back a recorded debit. Idempotent: only a ``debited`` intent is credited.

    Always escalates, since a real transfer may have been initiated.
    """
    context = {
        "charge_id": intent.charge_id,
        "user_id": intent.user_id,
        "payout_id": intent.payout_id,
        "schedule_entry_id": intent.schedule_entry_id,
        "amount": intent.amount,
    }
    try:
        claimed = _move_intent(intent.id, "debited", "compensated", note=reason)
    except Exception as e:
        db.session.rollback()
        escalate(f"compensation could not be claimed: {reason}: {e}", **context)
        return False
    if not claimed:
        escalate(f"compensation skipped, intent not debited: {reason}", **context)
        return False
    try:
        adjust_escrow(intent.user_id, int(intent.amount), reason=f"compensation:{intent.charge_id}")
    except Exception as e:
        _move_intent(intent.id, "compensated", "debited", note=f"compensation failed: {e}")
        escalate(f"compensating credit failed: {reason}: {e}", **context)
        return False
    escalate(f"escrow debit compensated: {reason}", **context)
    return True


def reverse_settled(intent: SettlementIntent, reason: str) -> bool:
    """Administrative reversal of a settled debit, e.g. after a gateway failure callback.

    settled -> debited -> compensated, so the credit is applied at most once.
    """
    if not _move_intent(intent.id, "settled", "debited", note=reason):
        return False
    return compensate(intent, reason)


# ============================================================
# ESCROW -> WALLET
# ============================================================

def transfer_escrow_to_wallet(user_id: int, amount, pin: str) -> dict:
    """User-initiated move of released escrow funds into the spendable wallet."""
    units = to_units(amount)
    if units <= 0:
        raise InvalidAmountError()
    user = db.session.get(User, int(user_id))
    if not user:
        raise LedgerError()
    if not user.check_pin(pin):
        raise InvalidPinError()

    escrow_after = adjust_escrow(user.id, -units, reason="transfer-to-wallet")
    try:
        wallet_after = adjust_wallet(user.id, units, reason="transfer-from-escrow")
    except Exception as e:
        adjust_escrow(user.id, units, reason="transfer-to-wallet-rollback")
        current_app.logger.error("escrow->wallet transfer failed user=%s amount=%s error=%s", user.id, units, e)
        raise LedgerError("Transfer failed")

    db.session.add(Transaction(
        user_id=int(user.id),
        type="transfer",
        amount=units,
        status="completed",
        details=json.dumps({"from": "escrow", "to": "wallet"}),
    ))
    db.session.commit()
    return {"escrow_balance": escrow_after, "wallet_balance": wallet_after, "amount": units}
