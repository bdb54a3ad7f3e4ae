import pytest
from sqlalchemy import select

from payfesa.errors import InvalidAmountError
from payfesa.extensions import db
from payfesa.models import Notification, ReserveWalletEntry, User
from payfesa.services.reserve import ReserveFundService, add_to_reserve, get_reserve_balance

from conftest import make_group, make_user


def test_add_to_reserve_creates_wallet_and_entry(app):
    u = make_user()
    g = make_group(u)

    assert add_to_reserve(g.id, 500, user_id=u.id) == 500
    assert add_to_reserve(g.id, 250) == 750

    assert get_reserve_balance(g.id) == 750
    entries = db.session.execute(select(ReserveWalletEntry).order_by(ReserveWalletEntry.id)).scalars().all()
    assert [(e.amount, e.balance_after) for e in entries] == [(500, 500), (250, 750)]


def test_add_to_reserve_rejects_non_positive(app):
    g = make_group()
    with pytest.raises(InvalidAmountError):
        add_to_reserve(g.id, 0)


def test_cover_shortfall_moves_reserve_into_escrow(app):
    u = make_user(escrow=30000)
    g = make_group(u, reserve=25000)

    cov = ReserveFundService().cover_shortfall(g.id, u.id, 50000)

    assert cov.covered is True
    assert cov.shortfall == 20000
    assert cov.reserve_balance == 5000
    db.session.expire_all()
    assert db.session.get(User, u.id).escrow_balance == 50000
    assert get_reserve_balance(g.id) == 5000
    titles = db.session.execute(select(Notification.title).where(Notification.user_id == u.id)).scalars().all()
    assert titles == ["Payout Guaranteed"]


def test_cover_shortfall_declined_when_reserve_too_small(app):
    u = make_user(escrow=30000)
    g = make_group(u, reserve=1000)

    cov = ReserveFundService().cover_shortfall(g.id, u.id, 50000)

    assert cov.covered is False
    assert cov.shortfall == 20000
    assert cov.reserve_balance == 1000
    db.session.expire_all()
    assert db.session.get(User, u.id).escrow_balance == 30000


def test_cover_shortfall_without_shortfall_is_a_no_op(app):
    u = make_user(escrow=60000)
    g = make_group(u)

    cov = ReserveFundService().cover_shortfall(g.id, u.id, 50000)

    assert cov.covered is True
    assert cov.shortfall == 0
    assert db.session.execute(select(ReserveWalletEntry)).first() is None


def test_cover_shortfall_without_reserve_wallet(app):
    u = make_user(escrow=0)
    g = make_group(u)

    cov = ReserveFundService().cover_shortfall(g.id, u.id, 10000)

    assert cov.covered is False
    assert cov.reserve_balance == 0
