from datetime import datetime
from models.db import db

class LoginAttempt(db.Model):
    """One row per login decision. Rows are never updated or deleted."""
    __tablename__ = "login_attempts"

    id = db.Column(db.Integer, primary_key=True)

    # null when the request never got as far as a parsed email
    email = db.Column(db.String(255), nullable=True, index=True)
    ip = db.Column(db.String(64), nullable=False)
    user_agent = db.Column(db.String(255), nullable=True)

    stage = db.Column(db.String(16), nullable=False, default="password")  # password, otp
    success = db.Column(db.Boolean, default=False, nullable=False)
    failure_reason = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        # Lockout looks up recent failures per IP
        db.Index("ix_login_attempts_ip_created", "ip", "created_at"),
    )
