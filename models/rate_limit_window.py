from datetime import datetime
from models.db import db

class RateLimitWindow(db.Model):
    __tablename__ = "rate_limit_windows"

    id = db.Column(db.Integer, primary_key=True)
    # e.g. "login:10.0.0.1", "otp-resend:login:a@b.com"
    identifier = db.Column(db.String(320), unique=True, nullable=False, index=True)

    window_start = db.Column(db.DateTime, nullable=False)
    count = db.Column(db.Integer, default=0, nullable=False)
    max_requests = db.Column(db.Integer, nullable=False)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
