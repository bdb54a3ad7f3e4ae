from datetime import datetime

from werkzeug.security import generate_password_hash, check_password_hash

from payfesa.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), unique=True, index=True, nullable=True)

    role = db.Column(db.String(32), nullable=False, default="member")

    # Salted hash of the 4-6 digit transaction PIN
    pin_hash = db.Column(db.String(255), nullable=True)

    # Two-bucket balance, whole currency units. Mutated only through services.ledger.
    wallet_balance = db.Column(db.Integer, nullable=False, default=0)
    escrow_balance = db.Column(db.Integer, nullable=False, default=0)

    trust_score = db.Column(db.Integer, nullable=False, default=50)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint("wallet_balance >= 0", name="ck_users_wallet_non_negative"),
        db.CheckConstraint("escrow_balance >= 0", name="ck_users_escrow_non_negative"),
    )

    def set_pin(self, raw_pin: str) -> None:
        self.pin_hash = generate_password_hash(raw_pin)

    def check_pin(self, raw_pin: str) -> bool:
        if not self.pin_hash or not raw_pin:
            return False
        return check_password_hash(self.pin_hash, str(raw_pin))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role or "member",
            "wallet_balance": int(self.wallet_balance or 0),
            "escrow_balance": int(self.escrow_balance or 0),
            "trust_score": int(self.trust_score or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
