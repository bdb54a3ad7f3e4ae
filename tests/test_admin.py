from sqlalchemy import select

from payfesa.extensions import db
from payfesa.jobs.settlement_runner import run_scheduled_settlement
from payfesa.models import AuditLog, Payout, SettlementIntent, Transaction, User
from payfesa.services.reconciler import reconcile

from conftest import TODAY, FakeGateway, auth_header, make_entry, make_group, make_payout, make_user


def _admin():
    return make_user(role="admin", mobile=False)


def test_admin_routes_require_token(client):
    assert client.post("/api/admin/settlement/run").status_code == 401


def test_admin_routes_forbid_members(app, client):
    member = make_user()
    res = client.post("/api/admin/settlement/run", headers=auth_header(member))
    assert res.status_code == 403


def test_manual_run_with_nothing_due(app, client):
    admin = _admin()

    res = client.post("/api/admin/settlement/run", json={"date": "2026-10-18"}, headers=auth_header(admin))

    assert res.status_code == 200
    assert res.get_json()["total"] == 0
    actions = db.session.execute(select(AuditLog.action)).scalars().all()
    assert "settlement_run" in actions


def test_manual_run_rejects_bad_date(app, client):
    res = client.post("/api/admin/settlement/run", json={"date": "18/10/2026"}, headers=auth_header(_admin()))
    assert res.status_code == 400


def test_reverse_escrow_after_failed_callback(app, client):
    admin = _admin()
    u = make_user(escrow=50000)
    g = make_group(u)
    p = make_payout(g, u, gross=50000)
    make_entry(g, u, amount=50000, payout=p)
    run_scheduled_settlement(today=TODAY, cutoff="17:00:00", gateway=FakeGateway(status="pending"))

    charge_id = db.session.get(Payout, p.id).external_reference
    early = client.post(f"/api/admin/payouts/{p.id}/reverse-escrow", headers=auth_header(admin))
    assert early.status_code == 409

    reconcile("api.payout", {"charge_id": charge_id, "status": "failed"})
    db.session.expire_all()
    assert db.session.get(User, u.id).escrow_balance == 0

    res = client.post(f"/api/admin/payouts/{p.id}/reverse-escrow", headers=auth_header(admin))

    assert res.status_code == 200
    assert res.get_json()["amount"] == 50000
    db.session.expire_all()
    assert db.session.get(User, u.id).escrow_balance == 50000
    intent = db.session.execute(select(SettlementIntent).where(SettlementIntent.payout_id == p.id)).scalar_one()
    assert intent.state == "compensated"
    assert db.session.execute(select(Transaction).where(Transaction.type == "escrow_reversal")).scalar_one().amount == 50000

    again = client.post(f"/api/admin/payouts/{p.id}/reverse-escrow", headers=auth_header(admin))
    assert again.status_code == 409
    db.session.expire_all()
    assert db.session.get(User, u.id).escrow_balance == 50000


def test_reverse_unknown_payout(app, client):
    res = client.post("/api/admin/payouts/999/reverse-escrow", headers=auth_header(_admin()))
    assert res.status_code == 404


def test_open_intervention(app, client):
    admin = _admin()
    u = make_user()
    g = make_group(u)
    p = make_payout(g, u, status="processing", external_reference="SPO-stuck-1")

    res = client.post(f"/api/admin/payouts/{p.id}/interventions", json={"note": "member says funds never arrived"},
                      headers=auth_header(admin))

    assert res.status_code == 201
    body = res.get_json()["intervention"]
    assert body["payout_id"] == p.id
    assert body["status"] == "open"
    assert body["opened_by"] == admin.id


def test_reserve_overview(app, client):
    u = make_user()
    g = make_group(u, reserve=4200)

    res = client.get(f"/api/admin/reserve/{g.id}", headers=auth_header(_admin()))

    assert res.status_code == 200
    body = res.get_json()
    assert body["balance"] == 4200
    assert body["entries"] == []
