from __future__ import annotations

import threading
from datetime import date, time

import pytest

from payfesa import create_app
from payfesa.extensions import db
from payfesa.models import (
    BankAccount,
    Group,
    GroupMember,
    MobileMoneyAccount,
    Payout,
    PayoutScheduleEntry,
    ReserveWallet,
    User,
)
from payfesa.utils.jwt_utils import create_access_token
from payfesa.utils.paychangu_client import DispatchResult

TODAY = date(2026, 10, 18)

BASE_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key-0123456789",
    "PAYCHANGU_SECRET_KEY": "",
    "PAYCHANGU_WEBHOOK_SECRET": "",
    "PUSH_NOTIFY_URL": "",
    "PAYOUT_CUTOFF_TIME": "17:00:00",
    "SETTLEMENT_MAX_WORKERS": 1,
}


def _build(overrides):
    app = create_app({**BASE_CONFIG, **overrides})
    with app.app_context():
        db.create_all()
    return app


@pytest.fixture
def app():
    app = _build({"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """File-backed SQLite so worker threads get their own connections."""
    app = _build({
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'settlement.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 30}},
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


class FakeGateway:
    """In-process stand-in for the disbursement API."""

    def __init__(self, *, success=True, status="success", error="declined", raises=None, verify_status=None, fail_for=()):
        self.success = success
        self.status = status
        self.error = error
        self.raises = raises
        self.verify_status = dict(verify_status or {})
        self.fail_for = set(fail_for)
        self.calls = []
        self.verified = []
        self._lock = threading.Lock()

    def dispatch_payout(self, req):
        with self._lock:
            self.calls.append(req)
            n = len(self.calls)
        if self.raises:
            raise self.raises
        if not self.success or req.phone_number in self.fail_for:
            return DispatchResult(success=False, charge_id=req.charge_id, error=self.error)
        return DispatchResult(success=True, charge_id=req.charge_id, status=self.status, ref_id=f"REF-{n}", trace_id=f"TR-{n}")

    def verify(self, charge_id):
        self.verified.append(charge_id)
        return self.verify_status.get(charge_id)


@pytest.fixture
def gateway():
    return FakeGateway()


# ============================================================
# SEED HELPERS
# ============================================================

_seq = {"n": 0}


def _next():
    _seq["n"] += 1
    return _seq["n"]


def make_user(*, escrow=0, wallet=0, pin="1234", role="member", name=None, mobile=True, bank=False, trust=50):
    n = _next()
    u = User(
        name=name or f"Member {n}",
        email=f"member{n}@example.com",
        role=role,
        escrow_balance=escrow,
        wallet_balance=wallet,
        trust_score=trust,
    )
    u.set_pin(pin)
    db.session.add(u)
    db.session.commit()
    if mobile:
        db.session.add(MobileMoneyAccount(
            user_id=u.id, provider="airtel", phone_number=f"0991{n:06d}", account_name=u.name, is_primary=True,
        ))
    if bank:
        db.session.add(BankAccount(
            user_id=u.id, bank_name="National Bank of Malawi", account_number=f"100{n:07d}", account_name=u.name,
            is_primary=True,
        ))
    db.session.commit()
    return u


def make_group(*members, reserve=None):
    g = Group(name=f"Group {_next()}", contribution_amount=10000)
    db.session.add(g)
    db.session.commit()
    for pos, m in enumerate(members, start=1):
        db.session.add(GroupMember(group_id=g.id, user_id=m.id, payout_position=pos))
    if reserve is not None:
        db.session.add(ReserveWallet(group_id=g.id, balance=reserve))
    db.session.commit()
    return g


def make_payout(group, user, *, gross=50000, status="pending", cycle=None, external_reference=None):
    p = Payout(
        group_id=group.id,
        recipient_id=user.id,
        cycle_number=cycle or _next(),
        gross_amount=gross,
        net_amount=0,
        fee_amount=0,
        status=status,
        scheduled_date=TODAY,
        external_reference=external_reference,
    )
    db.session.add(p)
    db.session.commit()
    return p


def make_entry(group, user, *, amount=50000, payout=None, day=TODAY, at=time(9, 0)):
    e = PayoutScheduleEntry(
        payout_id=payout.id if payout else None,
        group_id=group.id,
        user_id=user.id,
        amount=amount,
        scheduled_date=day,
        payout_time=at,
        status="pending",
    )
    db.session.add(e)
    db.session.commit()
    return e


def auth_header(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
