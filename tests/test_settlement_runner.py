from datetime import time, timedelta

from sqlalchemy import func, select

from payfesa.extensions import db
from payfesa.jobs.settlement_runner import run_scheduled_settlement
from payfesa.models import (
    AuditLog,
    MobileMoneyAccount,
    Notification,
    Payout,
    PayoutScheduleEntry,
    ReserveWallet,
    RevenueTransaction,
    SettlementIntent,
    Transaction,
    User,
)
from payfesa.services import ledger
from payfesa.services import settlement as settlement_module
from payfesa.services.reserve import ReserveFundService

from conftest import TODAY, FakeGateway, make_entry, make_group, make_payout, make_user


def _run(gateway, **kwargs):
    return run_scheduled_settlement(today=TODAY, cutoff="17:00:00", gateway=gateway, **kwargs)


def _user(uid):
    db.session.expire_all()
    return db.session.get(User, uid)


def _titles(uid):
    return db.session.execute(select(Notification.title).where(Notification.user_id == uid)).scalars().all()


def test_end_to_end_successful_settlement(app, gateway):
    u = make_user(escrow=50000)
    g = make_group(u)
    p = make_payout(g, u, gross=50000)
    e = make_entry(g, u, amount=50000, payout=p)

    result = _run(gateway)

    assert result["ok"] is True
    assert (result["total"], result["processed"], result["failed"], result["skipped"]) == (1, 1, 0, 0)
    user = _user(u.id)
    assert user.escrow_balance == 0
    assert user.trust_score == 52

    payout = db.session.get(Payout, p.id)
    assert payout.status == "completed"
    assert payout.net_amount == 44500
    assert payout.fee_amount == 5500
    assert payout.external_reference.startswith("SPO-")
    assert db.session.get(PayoutScheduleEntry, e.id).status == "completed"

    txns = db.session.execute(select(Transaction).where(Transaction.type == "payout")).scalars().all()
    assert len(txns) == 1
    assert txns[0].amount == 50000
    assert txns[0].details_dict()["fees"]["net_amount"] == 44500

    revenue = db.session.execute(select(RevenueTransaction)).scalars().all()
    assert [(r.revenue_type, r.amount) for r in revenue] == [("fee", 5000)]

    reserve = db.session.execute(select(ReserveWallet).where(ReserveWallet.group_id == g.id)).scalar_one()
    assert reserve.balance == 500

    assert len(gateway.calls) == 1
    assert gateway.calls[0].amount == 44500
    assert gateway.calls[0].method == "mobile_money"
    assert "Payout Received" in _titles(u.id)

    intent = db.session.execute(select(SettlementIntent)).scalar_one()
    assert intent.state == "settled"


def test_insufficient_escrow_without_reserve_fails_without_debit(app, gateway):
    u = make_user(escrow=10000)
    g = make_group(u)
    p = make_payout(g, u, gross=50000)
    e = make_entry(g, u, amount=50000, payout=p)

    result = _run(gateway)

    assert result["failed"] == 1
    assert _user(u.id).escrow_balance == 10000
    assert db.session.get(Payout, p.id).status == "failed"
    entry = db.session.get(PayoutScheduleEntry, e.id)
    assert entry.status == "failed"
    assert entry.failure_reason == "insufficient_funds"
    assert gateway.calls == []
    assert "Payout Failed" in _titles(u.id)


def test_reserve_covers_shortfall(app, gateway):
    u = make_user(escrow=40000)
    g = make_group(u, reserve=20000)
    make_entry(g, u, amount=50000)

    result = _run(gateway)

    assert result["processed"] == 1
    assert _user(u.id).escrow_balance == 0
    reserve = db.session.execute(select(ReserveWallet).where(ReserveWallet.group_id == g.id)).scalar_one()
    # 20000 - 10000 coverage + 500 fee slice
    assert reserve.balance == 10500
    coverage = db.session.execute(select(Transaction).where(Transaction.type == "reserve_coverage")).scalar_one()
    assert coverage.amount == 10000
    assert "Payout Guaranteed" in _titles(u.id)


def test_reserve_too_small_is_declined(app, gateway):
    u = make_user(escrow=40000)
    g = make_group(u, reserve=5000)
    make_entry(g, u, amount=50000)

    result = _run(gateway)

    assert result["failed"] == 1
    assert _user(u.id).escrow_balance == 40000
    reserve = db.session.execute(select(ReserveWallet).where(ReserveWallet.group_id == g.id)).scalar_one()
    assert reserve.balance == 5000
    assert gateway.calls == []


def test_gateway_decline_leaves_escrow_untouched(app):
    gw = FakeGateway(success=False)
    u = make_user(escrow=50000)
    g = make_group(u)
    p = make_payout(g, u)
    e = make_entry(g, u, payout=p)

    result = _run(gw)

    assert result["failed"] == 1
    assert _user(u.id).escrow_balance == 50000
    assert db.session.get(Payout, p.id).status == "failed"
    assert db.session.get(PayoutScheduleEntry, e.id).failure_reason == "gateway_declined"
    assert db.session.execute(select(func.count(Transaction.id)).where(Transaction.type == "payout")).scalar_one() == 0
    assert db.session.execute(select(func.count(SettlementIntent.id))).scalar_one() == 0


def test_gateway_exception_is_treated_as_decline(app):
    gw = FakeGateway(raises=TimeoutError("read timed out"))
    u = make_user(escrow=50000)
    g = make_group(u)
    make_entry(g, u)

    result = _run(gw)

    assert result["failed"] == 1
    assert result["errors"] == 0
    assert _user(u.id).escrow_balance == 50000


def test_missing_destination_fails_before_dispatch(app, gateway):
    u = make_user(escrow=50000, mobile=False)
    g = make_group(u)
    e = make_entry(g, u)

    result = _run(gateway)

    assert result["failed"] == 1
    assert db.session.get(PayoutScheduleEntry, e.id).failure_reason == "no_payment_method"
    assert gateway.calls == []
    assert _user(u.id).escrow_balance == 50000


def test_incomplete_destination_fails_before_dispatch(app, gateway):
    u = make_user(escrow=50000)
    acct = db.session.execute(select(MobileMoneyAccount).where(MobileMoneyAccount.user_id == u.id)).scalar_one()
    acct.phone_number = "  "
    db.session.commit()
    g = make_group(u)
    make_entry(g, u)

    assert _run(gateway)["failed"] == 1
    assert gateway.calls == []


def test_bank_destination_used_without_mobile_money(app, gateway):
    u = make_user(escrow=50000, mobile=False, bank=True)
    g = make_group(u)
    make_entry(g, u)

    assert _run(gateway)["processed"] == 1
    assert gateway.calls[0].method == "bank_transfer"
    assert gateway.calls[0].bank_name == "National Bank of Malawi"


def test_only_due_entries_are_selected(app, gateway):
    u = make_user(escrow=200000)
    g = make_group(u)
    make_entry(g, u, amount=10000, at=time(9, 0))
    make_entry(g, u, amount=10000, at=time(18, 30))
    make_entry(g, u, amount=10000, day=TODAY + timedelta(days=1))

    result = _run(gateway)

    assert result["total"] == 1
    assert len(gateway.calls) == 1


def test_rerun_does_not_dispatch_twice(app, gateway):
    u = make_user(escrow=50000)
    g = make_group(u)
    make_entry(g, u)

    _run(gateway)
    second = _run(gateway)

    assert second["total"] == 0
    assert len(gateway.calls) == 1
    assert _user(u.id).escrow_balance == 0


def test_entry_skipped_when_payout_taken_elsewhere(app, gateway):
    u = make_user(escrow=50000)
    g = make_group(u)
    p = make_payout(g, u, status="processing", external_reference="IPO-elsewhere")
    e = make_entry(g, u, payout=p)

    result = _run(gateway)

    assert result["skipped"] == 1
    assert db.session.get(PayoutScheduleEntry, e.id).status == "skipped"
    assert gateway.calls == []
    assert _user(u.id).escrow_balance == 50000


def test_pending_gateway_status_keeps_payout_processing(app):
    gw = FakeGateway(status="pending")
    u = make_user(escrow=50000)
    g = make_group(u)
    p = make_payout(g, u)
    make_entry(g, u, payout=p)

    result = _run(gw)

    assert result["processed"] == 1
    assert db.session.get(Payout, p.id).status == "processing"
    assert _user(u.id).escrow_balance == 0
    txn = db.session.execute(select(Transaction).where(Transaction.type == "payout")).scalar_one()
    assert txn.status == "processing"


class ExplodingReserve(ReserveFundService):
    def __init__(self, user_id):
        self.user_id = user_id

    def cover_shortfall(self, group_id, user_id, expected_amount):
        if user_id == self.user_id:
            raise RuntimeError("reserve store unavailable")
        return super().cover_shortfall(group_id, user_id, expected_amount)


def test_crashing_entry_does_not_abort_the_run(app, gateway):
    bad = make_user(escrow=0)
    good = make_user(escrow=50000)
    g = make_group(bad, good)
    bad_payout = make_payout(g, bad, gross=50000)
    bad_entry = make_entry(g, bad, amount=50000, payout=bad_payout, at=time(8, 0))
    make_entry(g, good, amount=50000, at=time(9, 0))

    result = _run(gateway, reserve=ExplodingReserve(bad.id))

    assert result["total"] == 2
    assert result["processed"] == 1
    assert result["failed"] == 1
    assert result["errors"] == 1
    assert db.session.get(PayoutScheduleEntry, bad_entry.id).status == "failed"
    assert db.session.get(Payout, bad_payout.id).status == "failed"
    assert "Payout Failed" in _titles(bad.id)
    assert _user(good.id).escrow_balance == 0


def test_worker_pool_settles_independent_entries(file_app):
    gw = FakeGateway()
    members = [make_user(escrow=20000) for _ in range(6)]
    g = make_group(*members)
    for m in members:
        make_entry(g, m, amount=20000)

    result = run_scheduled_settlement(today=TODAY, cutoff="17:00:00", max_workers=3, gateway=gw)

    assert result["processed"] == 6
    assert len({c.charge_id for c in gw.calls}) == 6
    for m in members:
        assert _user(m.id).escrow_balance == 0


def test_worker_pool_serializes_one_users_escrow(file_app):
    gw = FakeGateway()
    u = make_user(escrow=30000)
    g = make_group(u)
    first = make_entry(g, u, amount=20000, at=time(9, 0))
    second = make_entry(g, u, amount=20000, at=time(9, 0))

    result = run_scheduled_settlement(today=TODAY, cutoff="17:00:00", max_workers=2, gateway=gw)

    assert result["processed"] == 1
    assert result["failed"] == 1
    assert _user(u.id).escrow_balance == 10000
    statuses = sorted(db.session.get(PayoutScheduleEntry, e.id).status for e in (first, second))
    assert statuses == ["completed", "failed"]


def test_unusable_amount_fails_entry_and_payout(app, gateway):
    u = make_user(escrow=50000)
    g = make_group(u)
    p = make_payout(g, u, gross=0)
    e = make_entry(g, u, amount=0, payout=p)

    result = _run(gateway)

    assert result["failed"] == 1
    assert result["errors"] == 0
    entry = db.session.get(PayoutScheduleEntry, e.id)
    assert entry.status == "failed"
    assert entry.failure_reason == "processing_error"
    payout = db.session.get(Payout, p.id)
    assert payout.status == "failed"
    assert payout.failure_reason == "processing_error"
    assert gateway.calls == []
    assert "Payout Failed" in _titles(u.id)


class DrainingGateway(FakeGateway):
    """Accepts the dispatch but empties part of the escrow while the call is in flight."""

    def __init__(self, user_id, drain, **kwargs):
        super().__init__(**kwargs)
        self.user_id = user_id
        self.drain = drain

    def dispatch_payout(self, req):
        ledger.adjust_escrow(self.user_id, -self.drain, reason="concurrent withdrawal")
        return super().dispatch_payout(req)


def _escalations():
    return db.session.execute(
        select(AuditLog).where(AuditLog.action == "settlement_escalation")
    ).scalars().all()


def test_debit_refused_after_dispatch_is_escalated(app):
    u = make_user(escrow=50000)
    g = make_group(u)
    p = make_payout(g, u, gross=50000)
    e = make_entry(g, u, amount=50000, payout=p)
    gw = DrainingGateway(u.id, 20000)

    result = _run(gw)

    assert result["failed"] == 1
    assert result["errors"] == 0
    assert len(gw.calls) == 1
    assert _user(u.id).escrow_balance == 30000
    payout = db.session.get(Payout, p.id)
    assert payout.status == "failed"
    assert payout.failure_reason == "processing_error"
    assert db.session.get(PayoutScheduleEntry, e.id).status == "failed"
    intent = db.session.execute(select(SettlementIntent)).scalar_one()
    assert intent.state == "failed"
    assert db.session.execute(select(func.count(Transaction.id)).where(Transaction.type == "payout")).scalar_one() == 0
    assert len(_escalations()) == 1
    assert "Payout Failed" in _titles(u.id)


def test_record_failure_after_debit_compensates_once(app, gateway, monkeypatch):
    u = make_user(escrow=50000)
    g = make_group(u)
    p = make_payout(g, u, gross=50000)
    e = make_entry(g, u, amount=50000, payout=p)
    real_transition = settlement_module.transition_entry

    def fail_on_completion(entry_id, from_status, to_status, **kwargs):
        if to_status == "completed":
            raise RuntimeError("schedule table locked")
        return real_transition(entry_id, from_status, to_status, **kwargs)

    monkeypatch.setattr(settlement_module, "transition_entry", fail_on_completion)

    result = _run(gateway)

    assert result["failed"] == 1
    assert len(gateway.calls) == 1
    db.session.expire_all()
    # The payout move was staged with the record, so it rolled back with it.
    payout = db.session.get(Payout, p.id)
    assert payout.status == "failed"
    assert payout.failure_reason == "processing_error"
    assert db.session.get(PayoutScheduleEntry, e.id).status == "failed"
    assert _user(u.id).escrow_balance == 50000
    assert db.session.execute(select(func.count(Transaction.id)).where(Transaction.type == "payout")).scalar_one() == 0
    intent = db.session.execute(select(SettlementIntent)).scalar_one()
    assert intent.state == "compensated"
    assert len(_escalations()) == 1
    assert "Payout Failed" in _titles(u.id)
