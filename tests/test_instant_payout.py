import threading

import pytest
from sqlalchemy import func, select

from payfesa.errors import (
    AlreadyProcessedError,
    GatewayError,
    InsufficientEscrowError,
    InvalidPinError,
    LedgerError,
    MissingDestinationError,
    PayoutNotFoundError,
)
from payfesa.extensions import db
from payfesa.models import (
    AuditLog,
    Notification,
    Payout,
    PayoutScheduleEntry,
    RevenueTransaction,
    SettlementIntent,
    Transaction,
    User,
)
from payfesa.services import ledger
from payfesa.services import instant_payout as instant_module
from payfesa.services.instant_payout import process_instant_payout

from conftest import FakeGateway, auth_header, make_entry, make_group, make_payout, make_user


def _escrow(uid):
    db.session.expire_all()
    return db.session.get(User, uid).escrow_balance


def test_instant_payout_success(app, gateway):
    u = make_user(escrow=50000, pin="2468", name="Chikondi")
    other = make_user()
    g = make_group(u, other)
    p = make_payout(g, u, gross=50000)

    result = process_instant_payout(u.id, p.id, "2468", gateway=gateway)

    assert result["ok"] is True
    assert result["status"] == "completed"
    assert result["fees"]["service_fee"] == 1500
    assert result["fees"]["net_amount"] == 43000
    assert result["charge_id"].startswith("IPO-")
    assert _escrow(u.id) == 0

    payout = db.session.get(Payout, p.id)
    assert payout.status == "completed"
    assert payout.payout_type == "instant"
    assert gateway.calls[0].amount == 43000

    revenue = db.session.execute(select(RevenueTransaction).order_by(RevenueTransaction.id)).scalars().all()
    assert [(r.revenue_type, r.amount) for r in revenue] == [("fee", 5000), ("instant_payout_fee", 1500)]

    other_titles = db.session.execute(select(Notification.title).where(Notification.user_id == other.id)).scalars().all()
    assert other_titles == ["Group Member Payout"]
    mine = db.session.execute(select(Notification.title).where(Notification.user_id == u.id)).scalars().all()
    assert "Instant Payout Processed" in mine


def test_wrong_pin_has_no_side_effects(app, gateway):
    u = make_user(escrow=50000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u)

    with pytest.raises(InvalidPinError):
        process_instant_payout(u.id, p.id, "1111", gateway=gateway)

    assert db.session.execute(select(func.count(Transaction.id))).scalar_one() == 0
    assert _escrow(u.id) == 50000
    assert db.session.get(Payout, p.id).status == "pending"
    assert gateway.calls == []


def test_payout_of_another_user_is_not_found(app, gateway):
    owner = make_user(escrow=50000)
    intruder = make_user(escrow=50000, pin="9999")
    g = make_group(owner, intruder)
    p = make_payout(g, owner)

    with pytest.raises(PayoutNotFoundError):
        process_instant_payout(intruder.id, p.id, "9999", gateway=gateway)
    assert db.session.get(Payout, p.id).status == "pending"


def test_insufficient_escrow_keeps_payout_pending(app, gateway):
    u = make_user(escrow=1000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u, gross=50000)

    with pytest.raises(InsufficientEscrowError):
        process_instant_payout(u.id, p.id, "2468", gateway=gateway)
    assert db.session.get(Payout, p.id).status == "pending"
    assert gateway.calls == []


def test_missing_destination_is_rejected_before_claim(app, gateway):
    u = make_user(escrow=50000, pin="2468", mobile=False)
    g = make_group(u)
    p = make_payout(g, u)

    with pytest.raises(MissingDestinationError):
        process_instant_payout(u.id, p.id, "2468", gateway=gateway)
    assert db.session.get(Payout, p.id).status == "pending"


def test_gateway_failure_marks_failed_without_debit(app):
    gw = FakeGateway(success=False)
    u = make_user(escrow=50000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u)

    with pytest.raises(GatewayError):
        process_instant_payout(u.id, p.id, "2468", gateway=gw)

    payout = db.session.get(Payout, p.id)
    assert payout.status == "failed"
    assert payout.failure_reason == "gateway_declined"
    assert _escrow(u.id) == 50000


def test_completed_payout_is_already_processed(app, gateway):
    u = make_user(escrow=50000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u, status="completed")

    with pytest.raises(AlreadyProcessedError):
        process_instant_payout(u.id, p.id, "2468", gateway=gateway)


def test_instant_payout_skips_the_scheduled_entry(app, gateway):
    u = make_user(escrow=50000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u)
    e = make_entry(g, u, payout=p)

    process_instant_payout(u.id, p.id, "2468", gateway=gateway)

    assert db.session.get(PayoutScheduleEntry, e.id).status == "skipped"


def test_concurrent_requests_dispatch_once(file_app):
    gw = FakeGateway()
    u = make_user(escrow=100000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u, gross=50000)
    uid, pid = u.id, p.id

    start = threading.Barrier(2)
    outcomes = []

    def attempt():
        with file_app.app_context():
            start.wait()
            try:
                process_instant_payout(uid, pid, "2468", gateway=gw)
                outcomes.append("ok")
            except AlreadyProcessedError:
                outcomes.append("already_processed")
            finally:
                db.session.remove()

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["already_processed", "ok"]
    assert len(gw.calls) == 1
    assert _escrow(uid) == 50000


# ============================================================
# HTTP
# ============================================================

@pytest.fixture
def patched_gateway(monkeypatch):
    gw = FakeGateway()
    monkeypatch.setattr(instant_module.PaychanguClient, "from_app", classmethod(lambda cls, app=None: gw))
    return gw


def test_endpoint_requires_token(client):
    res = client.post("/api/payouts/1/instant", json={"pin": "1234"})
    assert res.status_code == 401


def test_endpoint_settles_payout(app, client, patched_gateway):
    u = make_user(escrow=50000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u)

    res = client.post(f"/api/payouts/{p.id}/instant", json={"pin": "2468"}, headers=auth_header(u))

    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    assert body["payout"]["status"] == "completed"
    assert len(patched_gateway.calls) == 1


def test_endpoint_wrong_pin_is_401_with_category(app, client, patched_gateway):
    u = make_user(escrow=50000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u)

    res = client.post(f"/api/payouts/{p.id}/instant", json={"pin": "0000"}, headers=auth_header(u))

    assert res.status_code == 401
    body = res.get_json()
    assert body["ok"] is False
    assert body["category"] == "invalid_pin"


def test_endpoint_second_request_is_conflict(app, client, patched_gateway):
    u = make_user(escrow=100000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u)

    first = client.post(f"/api/payouts/{p.id}/instant", json={"pin": "2468"}, headers=auth_header(u))
    second = client.post(f"/api/payouts/{p.id}/instant", json={"pin": "2468"}, headers=auth_header(u))

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.get_json()["category"] == "already_processed"


def test_debit_refused_after_dispatch_fails_the_request(app, gateway, monkeypatch):
    u = make_user(escrow=50000, pin="2468")
    g = make_group(u)
    p = make_payout(g, u)
    real_dispatch = gateway.dispatch_payout

    def dispatch_while_draining(req):
        ledger.adjust_escrow(u.id, -20000, reason="concurrent withdrawal")
        return real_dispatch(req)

    monkeypatch.setattr(gateway, "dispatch_payout", dispatch_while_draining)

    with pytest.raises(LedgerError):
        process_instant_payout(u.id, p.id, "2468", gateway=gateway)

    assert len(gateway.calls) == 1
    assert _escrow(u.id) == 30000
    payout = db.session.get(Payout, p.id)
    assert payout.status == "failed"
    assert payout.failure_reason == "processing_error"
    intent = db.session.execute(select(SettlementIntent)).scalar_one()
    assert intent.state == "failed"
    assert db.session.execute(
        select(func.count(AuditLog.id)).where(AuditLog.action == "settlement_escalation")
    ).scalar_one() == 1
