import json
from flask import request, has_request_context
from models import db
from models.activity_log import ActivityLog
from security.rate_limit import client_ip

def log_event(action_type: str, user_id=None, entity=None, entity_id=None, details=None, commit=True):
    ip = None
    user_agent = ""
    if has_request_context():
        ip = client_ip()
        user_agent = request.headers.get("User-Agent", "")

    row = ActivityLog(
        user_id=user_id,
        action_type=action_type,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=ip,
        user_agent=user_agent[:255] if user_agent else None,
        details_json=json.dumps(details, default=str) if details else None
    )
    db.session.add(row)
    if commit:
        db.session.commit()
    return row
