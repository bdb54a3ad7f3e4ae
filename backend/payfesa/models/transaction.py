import json
from datetime import datetime

from payfesa.extensions import db


class Transaction(db.Model):
    """Append-only money movement record shown in user history.

    Rows are never updated; a later status change is a new row whose details
    point at the row it supersedes.
    """

    __tablename__ = "transactions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=True, index=True)
    payout_id = db.Column(db.Integer, db.ForeignKey("payouts.id"), nullable=True, index=True)

    # contribution | payout | payout_status | reserve_coverage | transfer | escrow_reversal
    type = db.Column(db.String(32), nullable=False)
    amount = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="completed")

    charge_id = db.Column(db.String(64), nullable=True, index=True)
    details = db.Column(db.Text, nullable=True)  # JSON string

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def details_dict(self):
        raw = (self.details or "").strip()
        if not raw:
            return {}
        try:
            d = json.loads(raw)
            return d if isinstance(d, dict) else {}
        except Exception:
            return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "group_id": int(self.group_id) if self.group_id else None,
            "payout_id": int(self.payout_id) if self.payout_id else None,
            "type": self.type,
            "amount": int(self.amount or 0),
            "status": self.status,
            "charge_id": self.charge_id or "",
            "details": self.details_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RevenueTransaction(db.Model):
    __tablename__ = "revenue_transactions"

    id = db.Column(db.Integer, primary_key=True)
    payout_id = db.Column(db.Integer, db.ForeignKey("payouts.id"), nullable=True, index=True)
    schedule_entry_id = db.Column(db.Integer, db.ForeignKey("payout_schedule.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=True)

    revenue_type = db.Column(db.String(32), nullable=False, default="fee")  # fee | instant_payout_fee
    amount = db.Column(db.Integer, nullable=False, default=0)
    original_payout_amount = db.Column(db.Integer, nullable=False, default=0)
    net_payout = db.Column(db.Integer, nullable=False, default=0)
    fee_percentage = db.Column(db.Numeric(5, 2), nullable=True)
    charge_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "payout_id": int(self.payout_id) if self.payout_id else None,
            "schedule_entry_id": int(self.schedule_entry_id) if self.schedule_entry_id else None,
            "user_id": int(self.user_id),
            "revenue_type": self.revenue_type,
            "amount": int(self.amount or 0),
            "original_payout_amount": int(self.original_payout_amount or 0),
            "net_payout": int(self.net_payout or 0),
            "fee_percentage": float(self.fee_percentage) if self.fee_percentage is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
