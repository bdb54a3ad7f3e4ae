from datetime import datetime

from payfesa.extensions import db


class ReserveWallet(db.Model):
    __tablename__ = "reserve_wallets"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=False, unique=True, index=True)
    balance = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (db.CheckConstraint("balance >= 0", name="ck_reserve_wallets_non_negative"),)

    def to_dict(self):
        return {
            "group_id": int(self.group_id),
            "balance": int(self.balance or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ReserveWalletEntry(db.Model):
    __tablename__ = "reserve_wallet_entries"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    amount = db.Column(db.Integer, nullable=False)  # signed: + fee slice, - shortfall coverage
    balance_after = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "group_id": int(self.group_id),
            "user_id": int(self.user_id) if self.user_id else None,
            "amount": int(self.amount),
            "balance_after": int(self.balance_after or 0),
            "reason": self.reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
