from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .login_attempt import LoginAttempt
from .rate_limit_window import RateLimitWindow
from .otp_challenge import OTPChallenge
