from flask import current_app

from models import db
from models.user import Role

# Newsroom roles; only ADMIN may manage sessions and read the audit trail
DEFAULT_ROLES = ("ADMIN", "EDITOR", "AUTHOR")


def seed_roles() -> list:
    """Creates any missing default role. Returns the names it added."""
    existing = {r.name for r in Role.query.all()}
    missing = [name for name in DEFAULT_ROLES if name not in existing]
    for name in missing:
        db.session.add(Role(name=name))
    db.session.commit()

    if missing:
        current_app.logger.info("Seeded roles: %s", ", ".join(missing))
    return missing
