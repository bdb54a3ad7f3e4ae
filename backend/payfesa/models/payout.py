from datetime import datetime

from payfesa.extensions import db


class Payout(db.Model):
    """One member's turn to receive the pooled funds for one group cycle.

    Never deleted. Status only moves through services.payout_state.
    """

    __tablename__ = "payouts"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=False, index=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    cycle_number = db.Column(db.Integer, nullable=False, default=1)

    gross_amount = db.Column(db.Integer, nullable=False, default=0)
    net_amount = db.Column(db.Integer, nullable=False, default=0)
    fee_amount = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending/processing/completed/failed
    payout_type = db.Column(db.String(16), nullable=True)  # scheduled/instant
    scheduled_date = db.Column(db.Date, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    # Caller-generated charge id sent to the gateway
    external_reference = db.Column(db.String(64), nullable=True, unique=True, index=True)
    gateway_ref_id = db.Column(db.String(128), nullable=True)
    failure_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint("group_id", "cycle_number", name="uq_payouts_group_cycle"),)

    def to_dict(self):
        return {
            "id": int(self.id),
            "group_id": int(self.group_id),
            "recipient_id": int(self.recipient_id),
            "cycle_number": int(self.cycle_number or 0),
            "gross_amount": int(self.gross_amount or 0),
            "net_amount": int(self.net_amount or 0),
            "fee_amount": int(self.fee_amount or 0),
            "status": self.status,
            "payout_type": self.payout_type or "",
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "external_reference": self.external_reference or "",
            "failure_reason": self.failure_reason or "",
        }


class PayoutScheduleEntry(db.Model):
    __tablename__ = "payout_schedule"

    id = db.Column(db.Integer, primary_key=True)
    payout_id = db.Column(db.Integer, db.ForeignKey("payouts.id"), nullable=True, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount = db.Column(db.Integer, nullable=False, default=0)
    scheduled_date = db.Column(db.Date, nullable=False, index=True)
    payout_time = db.Column(db.Time, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending/processing/completed/failed/skipped
    charge_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    failure_reason = db.Column(db.String(240), nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "payout_id": int(self.payout_id) if self.payout_id else None,
            "group_id": int(self.group_id),
            "user_id": int(self.user_id),
            "amount": int(self.amount or 0),
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "payout_time": self.payout_time.isoformat() if self.payout_time else None,
            "status": self.status,
            "charge_id": self.charge_id or "",
            "failure_reason": self.failure_reason or "",
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
