from __future__ import annotations
"""Audit logging decorator to keep add_audit() calls out of route handlers.

Usage examples:

@audit_log('PERMISSION.GRANT', entity='User', entity_id_key='user_id', meta_keys=['permission', 'scope_type'])
def grant(user_id): ...

@audit_log('ROLE.PERM.REPLACE', entity='Role', entity_id_key='id',
           meta_builder=lambda data, rv, args, kwargs: {'count': len(data.get('permissions', []))})
def replace_role_permissions(role_id): ...

Parameters:
  action: required audit action code (e.g. PERMISSION.REVOKE)
  entity: optional entity label (Role, User, Permission)
  entity_id_key: key in the returned JSON object whose value becomes entity_id.
  entity_id_arg: name of the path parameter to use for entity_id (fallback if entity_id_key absent).
  meta_keys: list of keys to project from returned JSON into meta dict (shallow copy).
  meta_builder: callable returning a meta dict; receives (data, original_return_value, args, kwargs).
    If provided it overrides meta_keys.

Only successful responses (status < 400) are audited. Flask view functions commonly return
dict, (dict, status) or (dict, status, headers); the first element is inspected.
"""

from functools import wraps
from typing import Any, Callable, Iterable, Optional
import logging

from pgben.services.audit import add_audit
from pgben import get_db

logger = logging.getLogger(__name__)


def _extract_payload(rv: Any):
    """Return (data, status) for the JSON-able payload of a view return value."""
    if isinstance(rv, tuple) and rv:
        status = rv[1] if len(rv) > 1 and isinstance(rv[1], int) else 200
        return rv[0], status
    return rv, 200


def audit_log(
    action: str,
    *,
    entity: Optional[str] = None,
    entity_id_key: Optional[str] = None,
    entity_id_arg: Optional[str] = None,
    meta_keys: Optional[Iterable[str]] = None,
    meta_builder: Optional[Callable[[dict, Any, tuple, dict], dict]] = None,
    commit: bool = True,
):
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            rv = fn(*args, **kwargs)
            data, status = _extract_payload(rv)
            if status >= 400:
                return rv
            try:
                if not isinstance(data, dict):
                    add_audit(action, entity, kwargs.get(entity_id_arg) if entity_id_arg else None, None)
                else:
                    entity_id = None
                    if entity_id_key and entity_id_key in data:
                        entity_id = data.get(entity_id_key)
                    elif entity_id_arg and entity_id_arg in kwargs:
                        entity_id = kwargs.get(entity_id_arg)
                    meta = None
                    if meta_builder:
                        meta = meta_builder(data, rv, args, kwargs)
                    elif meta_keys:
                        meta = {k: data.get(k) for k in meta_keys if k in data}
                    add_audit(action, entity, entity_id, meta)
                if commit:
                    get_db().commit()
            except Exception:
                # audit must not interfere with the main response
                logger.exception('audit write failed for %s', action)
                get_db().rollback()
            return rv
        return wrapper
    return outer
