import logging
from logging.handlers import RotatingFileHandler

from flask import Flask, request, g, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from routes import health_bp, auth_bp, sessions_bp, audit_bp

from models import db
from flask_migrate import Migrate
from utils.seed import seed_roles
from utils.auth_context import load_current_user
from security.csrf import require_csrf
from security.errors import AuthError, GENERIC_SERVER_MESSAGE
from security.settings import init_settings


def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app)

    # Client IP comes from the trusted proxies only
    hops = app.config.get("TRUSTED_PROXY_HOPS", 0)
    if hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)

    # Auth settings are built once here; security.settings.reload_settings() rebuilds them
    init_settings(app)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(sessions_bp)
    app.register_blueprint(audit_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Seed default roles at startup (safe & idempotent)
    if app.config.get("SEED_ROLES_ON_STARTUP", True):
        with app.app_context():
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    CSRF_EXEMPT_PATHS = {
        "/auth/login-request",
        "/auth/verify-otp",
        "/auth/resend-otp",
        "/health",
    }

    @app.before_request
    def _csrf_protect():
        # Only protect state-changing requests
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Exempt auth bootstrap endpoints
            if request.path in CSRF_EXEMPT_PATHS:
                return None

            # Only enforce CSRF if user is already authenticated (cookie session)
            if getattr(g, "user", None) is not None:
                failure = require_csrf()
                if failure:
                    return failure

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_error_handlers(app)
    register_cli(app)

    return app


def configure_logging(app):
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    log_file = app.config.get("LOG_FILE")
    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=1024 * 1024, backupCount=10)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"
        ))
        file_handler.setLevel(app.logger.level)
        app.logger.addHandler(file_handler)

    app.logger.info("Portal auth service startup")


def register_error_handlers(app):
    @app.errorhandler(AuthError)
    def _auth_error(exc):
        resp = jsonify(exc.to_dict())
        retry_after = exc.payload.get("retry_after_seconds")
        if exc.status_code == 429 and retry_after:
            resp.headers["Retry-After"] = str(retry_after)
        if exc.status_code >= 500:
            app.logger.error("%s: %s", type(exc).__name__, exc.reason)
        return resp, exc.status_code

    @app.errorhandler(SQLAlchemyError)
    def _db_error(exc):
        db.session.rollback()
        app.logger.exception("Database error on %s %s", request.method, request.path)
        return jsonify(error=GENERIC_SERVER_MESSAGE), 500

#-------------------------
import click
from models.user import User, Role
from security.otp import purge_expired_challenges
from security.password import PASSWORD_MIN_LEN, hash_password
from security.session import expire_stale_sessions
from security.settings import get_settings

def _get_or_create_role(name: str) -> Role:
    role = Role.query.filter_by(name=name).first()
    if not role:
        role = Role(name=name)
        db.session.add(role)
        db.session.flush()
    return role

def register_cli(app):
    @app.cli.command("create-user")
    @click.argument("email")
    @click.argument("password")
    @click.option("--name", default=None)
    @click.option("--role", "role_name", default="EDITOR", show_default=True)
    def create_user(email, password, name, role_name):
        """Create an account in the local user directory."""
        if len(password) < PASSWORD_MIN_LEN:
            click.echo(f"Password must be at least {PASSWORD_MIN_LEN} characters")
            return

        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            click.echo("User already exists")
            return

        user = User(
            email=email,
            name=name,
            password_hash=hash_password(password, rounds=get_settings().bcrypt_rounds),
        )
        user.roles.append(_get_or_create_role(role_name.upper()))
        db.session.add(user)
        db.session.commit()
        click.echo(f"{user.email} created with role {role_name.upper()}")

    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        admin_role = _get_or_create_role("ADMIN")
        if admin_role not in user.roles:
            user.roles.append(admin_role)
        db.session.commit()

        click.echo(f"{user.email} promoted to ADMIN")

    @app.cli.command("cleanup")
    def cleanup():
        """Expire stale sessions and purge old OTP challenges."""
        expired = expire_stale_sessions()
        purged = purge_expired_challenges()
        click.echo(f"Expired {expired} sessions, purged {purged} OTP challenges")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
