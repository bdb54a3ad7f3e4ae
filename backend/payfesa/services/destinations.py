from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select

from payfesa.errors import IncompleteDestinationError, MissingDestinationError
from payfesa.extensions import db
from payfesa.models import BankAccount, MobileMoneyAccount


@dataclass(frozen=True)
class Destination:
    method: str  # mobile_money | bank_transfer
    account_name: str
    phone_number: str = ""
    provider: str = ""
    account_number: str = ""
    bank_name: str = ""

    def request_fields(self) -> dict:
        return {
            "method": self.method,
            "account_name": self.account_name,
            "phone_number": self.phone_number,
            "provider": self.provider,
            "account_number": self.account_number,
            "bank_name": self.bank_name,
        }


def _blank(*values) -> bool:
    return any(not (v or "").strip() for v in values)


def resolve_destination(user_id: int) -> Destination:
    """Primary active mobile money account wins over the primary bank account."""
    mm = db.session.execute(
        select(MobileMoneyAccount)
        .where(
            MobileMoneyAccount.user_id == int(user_id),
            MobileMoneyAccount.is_primary.is_(True),
            MobileMoneyAccount.is_active.is_(True),
        )
        .order_by(MobileMoneyAccount.id.desc())
    ).scalars().first()
    if mm:
        if _blank(mm.phone_number, mm.provider):
            raise IncompleteDestinationError()
        return Destination(
            method="mobile_money",
            account_name=(mm.account_name or "").strip(),
            phone_number=mm.phone_number.strip(),
            provider=mm.provider.strip().lower(),
        )

    bank = db.session.execute(
        select(BankAccount)
        .where(BankAccount.user_id == int(user_id), BankAccount.is_primary.is_(True))
        .order_by(BankAccount.id.desc())
    ).scalars().first()
    if bank:
        if _blank(bank.account_number, bank.account_name, bank.bank_name):
            raise IncompleteDestinationError()
        return Destination(
            method="bank_transfer",
            account_name=bank.account_name.strip(),
            account_number=bank.account_number.strip(),
            bank_name=bank.bank_name.strip(),
        )

    raise MissingDestinationError()
