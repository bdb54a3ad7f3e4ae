from datetime import datetime

from payfesa.extensions import db


class Group(db.Model):
    __tablename__ = "rosca_groups"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, default="")
    contribution_amount = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "name": self.name,
            "contribution_amount": int(self.contribution_amount or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class GroupMember(db.Model):
    __tablename__ = "group_members"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    payout_position = db.Column(db.Integer, nullable=True)
    has_contributed = db.Column(db.Boolean, nullable=False, default=False)
    contribution_amount = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (db.UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),)

    def to_dict(self):
        return {
            "group_id": int(self.group_id),
            "user_id": int(self.user_id),
            "payout_position": self.payout_position,
            "has_contributed": bool(self.has_contributed),
            "contribution_amount": int(self.contribution_amount or 0),
        }
