from __future__ import annotations
from typing import Any, Dict, Optional, Tuple
from flask_jwt_extended import get_jwt_identity, get_jwt
from pgben import get_db
from pgben.models.audit import AuditLog


def _current_actor() -> Tuple[int, Optional[str]]:
    """(user id, role name) of the token holder; (0, None) outside an authenticated request."""
    try:
        claims = get_jwt() or {}
        ident = get_jwt_identity()
    except RuntimeError:
        # no verified JWT in this context (seed scripts, tests)
        return 0, None
    return (int(ident) if ident is not None else 0), claims.get('role')


def add_audit(action: str, entity: Optional[str] = None, entity_id: Optional[str] = None, meta: Optional[Dict[str, Any]] = None):
    """Persist an audit log entry within the current DB session.

    Parameters:
      action: short action code e.g. PERMISSION.GRANT, PERMISSION.REVOKE, USER.ROLE.SET
      entity: optional entity name (Role, User, Permission)
      entity_id: optional primary key string
      meta: additional JSON-safe dictionary (will be shallow copied)
    """
    actor, role = _current_actor()
    log = AuditLog(
        actor_user_id=actor,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        role=role,
        meta=dict(meta or {}),
    )
    get_db().add(log)
    # No commit here; caller's transaction boundary controls durability.
    return log
