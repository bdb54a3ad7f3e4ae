from datetime import datetime

from payfesa.extensions import db


class MobileMoneyAccount(db.Model):
    __tablename__ = "mobile_money_accounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    provider = db.Column(db.String(32), nullable=True)  # airtel | tnm
    phone_number = db.Column(db.String(32), nullable=True)
    account_name = db.Column(db.String(120), nullable=True)

    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class BankAccount(db.Model):
    __tablename__ = "bank_accounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    bank_name = db.Column(db.String(80), nullable=True)
    account_number = db.Column(db.String(32), nullable=True)
    account_name = db.Column(db.String(120), nullable=True)

    is_primary = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
