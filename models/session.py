import uuid
from datetime import datetime
from models.db import db

SESSION_ACTIVE = "ACTIVE"
SESSION_EXPIRED = "EXPIRED"
SESSION_KICKED = "KICKED"
SESSION_BANNED = "BANNED"
SESSION_LOGGED_OUT = "LOGGED_OUT"


def _new_session_id() -> str:
    return str(uuid.uuid4())


class Session(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.String(36), primary_key=True, default=_new_session_id)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # store only hashed token in DB (never store raw token)
    token_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    device_info = db.Column(db.String(120), nullable=True)

    login_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    last_activity_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    # is_active only ever goes True -> False
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    status = db.Column(db.String(16), default=SESSION_ACTIVE, nullable=False)

    revoked_at = db.Column(db.DateTime, nullable=True)
    revoked_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    revoke_reason = db.Column(db.String(255), nullable=True)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("sessions", lazy="dynamic"))
