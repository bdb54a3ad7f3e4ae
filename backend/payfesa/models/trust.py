from datetime import datetime

from payfesa.extensions import db


class TrustScoreEvent(db.Model):
    __tablename__ = "trust_score_events"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    change_amount = db.Column(db.Integer, nullable=False, default=0)
    score_after = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "user_id": int(self.user_id),
            "change_amount": int(self.change_amount),
            "score_after": int(self.score_after),
            "reason": self.reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
