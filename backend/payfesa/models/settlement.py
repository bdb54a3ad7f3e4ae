from datetime import datetime

from payfesa.extensions import db


class SettlementIntent(db.Model):
    """Recorded before an escrow debit so a failed follow-up step can be compensated.

    state: dispatched -> debited -> settled | compensated
           dispatched -> failed  (debit refused, nothing to credit back)
           settled -> debited -> compensated  (administrative reversal)
    """

    __tablename__ = "settlement_intents"

    id = db.Column(db.Integer, primary_key=True)
    charge_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    payout_id = db.Column(db.Integer, db.ForeignKey("payouts.id"), nullable=True, index=True)
    schedule_entry_id = db.Column(db.Integer, db.ForeignKey("payout_schedule.id"), nullable=True, index=True)

    amount = db.Column(db.Integer, nullable=False, default=0)
    state = db.Column(db.String(16), nullable=False, default="dispatched")
    note = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "charge_id": self.charge_id,
            "user_id": int(self.user_id),
            "payout_id": int(self.payout_id) if self.payout_id else None,
            "schedule_entry_id": int(self.schedule_entry_id) if self.schedule_entry_id else None,
            "amount": int(self.amount or 0),
            "state": self.state,
            "note": self.note or "",
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ManualIntervention(db.Model):
    __tablename__ = "manual_interventions"

    id = db.Column(db.Integer, primary_key=True)
    payout_id = db.Column(db.Integer, db.ForeignKey("payouts.id"), nullable=False, index=True)
    opened_by = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="open")  # open | resolved
    note = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "payout_id": int(self.payout_id),
            "opened_by": int(self.opened_by) if self.opened_by else None,
            "status": self.status,
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
