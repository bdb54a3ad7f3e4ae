from datetime import datetime

from payfesa.extensions import db


class Contribution(db.Model):
    __tablename__ = "contributions"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending/processing/completed/failed

    # Charge id the collection was initialized with
    charge_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    gateway_ref_id = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "group_id": int(self.group_id),
            "user_id": int(self.user_id),
            "amount": int(self.amount or 0),
            "status": self.status,
            "charge_id": self.charge_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
