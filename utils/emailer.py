import smtplib
from email.message import EmailMessage
from email.utils import formataddr

from flask import current_app


def mail_outbox() -> list:
    """Messages kept back while MAIL_SUPPRESS_SEND is on (tests, local dev)."""
    return current_app.extensions.setdefault("mail_outbox", [])


def send_email(to_email: str, subject: str, body: str):
    """
    Returns (sent, error). The caller decides what a failed send means.
    """
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    from_name = current_app.config.get("SMTP_FROM_NAME")
    use_tls = current_app.config.get("SMTP_USE_TLS", True)

    msg = EmailMessage()
    msg["From"] = formataddr((from_name, from_email)) if from_name and from_email else (from_email or "")
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    if current_app.config.get("MAIL_SUPPRESS_SEND"):
        mail_outbox().append(msg)
        return True, None

    if not host or not from_email:
        return False, "Email not configured"

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)
