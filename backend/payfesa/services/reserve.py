"""Per-group reserve fund.

Financed by the reserve slice of every settlement fee; drawn on when a due
scheduled payout finds the recipient's escrow short.
"""
from __future__ import annotations

import json
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from payfesa.errors import InsufficientEscrowError, InvalidAmountError
from payfesa.extensions import db
from payfesa.models import ReserveWallet, ReserveWalletEntry, Transaction
from payfesa.services import ledger
from payfesa.utils.audit import escalate
from payfesa.utils.fees import to_units
from payfesa.utils.notify import notify_users


@dataclass(frozen=True)
class ReserveCoverage:
    covered: bool
    shortfall: int = 0
    reserve_balance: int = 0


def get_or_create_reserve_wallet(group_id: int) -> ReserveWallet:
    w = db.session.execute(select(ReserveWallet).where(ReserveWallet.group_id == int(group_id))).scalar_one_or_none()
    if w:
        return w
    try:
        w = ReserveWallet(group_id=int(group_id), balance=0)
        db.session.add(w)
        db.session.commit()
    except IntegrityError:
        # Created concurrently by another settlement.
        db.session.rollback()
        w = db.session.execute(select(ReserveWallet).where(ReserveWallet.group_id == int(group_id))).scalar_one()
    return w


def get_reserve_balance(group_id: int) -> int:
    value = db.session.execute(select(ReserveWallet.balance).where(ReserveWallet.group_id == int(group_id))).scalar_one_or_none()
    return int(value or 0)


def _entry(group_id: int, user_id: int | None, amount: int, balance_after: int, reason: str) -> None:
    db.session.add(ReserveWalletEntry(
        group_id=int(group_id),
        user_id=int(user_id) if user_id else None,
        amount=int(amount),
        balance_after=int(balance_after),
        reason=(reason or "")[:240],
    ))
    db.session.commit()


def add_to_reserve(group_id: int, amount, *, user_id: int | None = None, reason: str = "") -> int:
    units = to_units(amount)
    if units <= 0:
        raise InvalidAmountError()
    get_or_create_reserve_wallet(group_id)
    balance = ledger.adjust_reserve(group_id, units)
    _entry(group_id, user_id, units, balance, reason or "settlement reserve fee")
    current_app.logger.info("reserve credited group=%s amount=%s balance=%s", group_id, units, balance)
    return balance


class ReserveFundService:
    def cover_shortfall(self, group_id: int, user_id: int, expected_amount: int) -> ReserveCoverage:
        expected = to_units(expected_amount)
        escrow = ledger.get_escrow_balance(user_id) or 0
        shortfall = expected - escrow
        if shortfall <= 0:
            return ReserveCoverage(covered=True, shortfall=0, reserve_balance=get_reserve_balance(group_id))

        get_or_create_reserve_wallet(group_id)
        try:
            reserve_after = ledger.adjust_reserve(group_id, -shortfall)
        except InsufficientEscrowError:
            balance = get_reserve_balance(group_id)
            current_app.logger.info(
                "reserve declined group=%s user=%s shortfall=%s reserve=%s", group_id, user_id, shortfall, balance
            )
            return ReserveCoverage(covered=False, shortfall=shortfall, reserve_balance=balance)

        try:
            ledger.adjust_escrow(user_id, shortfall, reason=f"reserve-coverage:group:{group_id}")
        except Exception as e:
            try:
                ledger.adjust_reserve(group_id, shortfall)
            except Exception as undo_err:
                escalate(
                    f"reserve debit could not be restored: {undo_err}",
                    group_id=group_id, user_id=user_id, amount=shortfall,
                )
            current_app.logger.error("reserve coverage credit failed group=%s user=%s error=%s", group_id, user_id, e)
            return ReserveCoverage(covered=False, shortfall=shortfall, reserve_balance=get_reserve_balance(group_id))

        _entry(group_id, user_id, -shortfall, reserve_after, "shortfall coverage")
        db.session.add(Transaction(
            user_id=int(user_id),
            group_id=int(group_id),
            type="reserve_coverage",
            amount=shortfall,
            status="completed",
            details=json.dumps({"expected_amount": expected, "escrow_before": escrow}),
        ))
        db.session.commit()
        current_app.logger.info("reserve covered group=%s user=%s shortfall=%s", group_id, user_id, shortfall)

        notify_users(
            [user_id],
            "Payout Guaranteed",
            f"Your payout of MWK {expected:,} is guaranteed by the group reserve fund.",
            {"type": "reserve_coverage", "group_id": int(group_id)},
        )
        return ReserveCoverage(covered=True, shortfall=shortfall, reserve_balance=reserve_after)
