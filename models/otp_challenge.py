from datetime import datetime
from models.db import db

OTP_PENDING = "PENDING"
OTP_CONSUMED = "CONSUMED"
OTP_SUPERSEDED = "SUPERSEDED"
OTP_EXHAUSTED = "EXHAUSTED"
OTP_VOID = "VOID"  # delivery failed, the code never reached the user

_PENDING_ONLY = db.text("status = 'PENDING'")


class OTPChallenge(db.Model):
    __tablename__ = "otp_challenges"

    id = db.Column(db.Integer, primary_key=True)
    identifier = db.Column(db.String(255), nullable=False, index=True)  # normalized email
    purpose = db.Column(db.String(32), nullable=False, default="login")

    # HMAC of the code, never the code itself
    code_hash = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=OTP_PENDING)
    attempts = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=True)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    __table_args__ = (
        # At most one live challenge per (identifier, purpose)
        db.Index(
            "uq_otp_challenges_pending",
            "identifier",
            "purpose",
            unique=True,
            sqlite_where=_PENDING_ONLY,
            postgresql_where=_PENDING_ONLY,
        ),
    )
