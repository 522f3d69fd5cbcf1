import json
from models import db
from models.audit_log import AuditLog
from security.attempts import client_ip, client_user_agent

def log_event(action: str, user_id=None, entity=None, entity_id=None, metadata=None):
    row = AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=client_ip(),
        user_agent=client_user_agent(),
        metadata_json=json.dumps(metadata) if metadata else None
    )
    db.session.add(row)
    db.session.commit()
