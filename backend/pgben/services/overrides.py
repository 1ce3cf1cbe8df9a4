from __future__ import annotations
"""Administrative writes: per-user grants/revocations, role defaults, role assignment, activation.

Every write goes through the last-administrator guard and invalidates the cached
permission sets it can affect. Callers own the commit.
"""
from datetime import datetime
from typing import Iterable, List, Optional
import logging

from sqlalchemy import delete, select

from pgben.models.authz import Permission, PermissionScope, Role, RolePermission, User, UserPermission
from pgben.services.catalog import is_composite, validate_permission_name
from pgben.services.errors import NotFound, ValidationError
from pgben.services.policy import get_permission_cache, get_user_or_404, last_administrator_guard
from pgben.services.resolver import as_aware, utcnow
from pgben.services.scope import ScopeType

logger = logging.getLogger(__name__)


def get_permission_or_404(session, name: str) -> Permission:
    perm = session.execute(select(Permission).where(Permission.name == name)).scalar_one_or_none()
    if not perm:
        raise NotFound(f"Unknown permission '{name}'")
    return perm


def get_role_or_404(session, role_id: int) -> Role:
    role = session.execute(select(Role).where(Role.id == role_id)).scalar_one_or_none()
    if not role:
        raise NotFound(f'Unknown role {role_id}')
    return role


def _normalize_scope(perm: Permission, scope_type, scope_id):
    if scope_type is None:
        scope = ScopeType.parse(perm.scope.default_scope_type) if perm.scope else ScopeType.GLOBAL
    else:
        scope = ScopeType.parse(scope_type)
    if scope == ScopeType.UNIT:
        if scope_id is None:
            raise ValidationError('UNIT scope requires scope_id')
        return scope, int(scope_id)
    # GLOBAL has no target and SELF always binds to the user at resolution time
    return scope, None


def _find_live_override(session, user_id: int, perm_id: int, scope: ScopeType, scope_id: Optional[int]):
    return session.execute(
        select(UserPermission).where(
            UserPermission.user_id == user_id,
            UserPermission.permission_id == perm_id,
            UserPermission.scope_type == scope.value,
            UserPermission.scope_id.is_(None) if scope_id is None else UserPermission.scope_id == scope_id,
            UserPermission.deleted_at.is_(None),
        )
    ).scalar_one_or_none()


def grant_permission(session, user_id: int, name: str, scope_type=None, scope_id=None,
                     valid_until: Optional[datetime] = None, actor_id: Optional[int] = None) -> UserPermission:
    """Grant a permission to a user. Idempotent; re-granting can only extend validity."""
    user = get_user_or_404(session, user_id)
    perm = get_permission_or_404(session, name)
    scope, scope_id = _normalize_scope(perm, scope_type, scope_id)
    valid_until = as_aware(valid_until)
    if valid_until is not None and valid_until <= utcnow():
        raise ValidationError('valid_until must be in the future')

    row = _find_live_override(session, user.id, perm.id, scope, scope_id)
    if row is None:
        row = UserPermission(
            user_id=user.id, permission_id=perm.id, granted=True,
            scope_type=scope.value, scope_id=scope_id, valid_until=valid_until, created_by=actor_id,
        )
        session.add(row)
        logger.info('granted %s to user %s scope=%s:%s by %s', name, user.id, scope.value, scope_id, actor_id)
    elif not row.granted:
        row.granted = True
        row.valid_until = valid_until
        row.updated_by = actor_id
        logger.info('re-activated %s for user %s scope=%s:%s by %s', name, user.id, scope.value, scope_id, actor_id)
    else:
        current = as_aware(row.valid_until)
        if current is not None and (valid_until is None or valid_until > current):
            row.valid_until = valid_until
            row.updated_by = actor_id
            logger.info('extended %s for user %s until %s', name, user.id, valid_until)
    session.flush()
    get_permission_cache().invalidate_user(user.id)
    return row


def revoke_permission(session, user_id: int, name: str, scope_type=None, scope_id=None,
                      valid_until: Optional[datetime] = None, actor_id: Optional[int] = None) -> UserPermission:
    """Record an explicit revocation. Works for role-default permissions too; idempotent."""
    user = get_user_or_404(session, user_id)
    perm = get_permission_or_404(session, name)
    scope, scope_id = _normalize_scope(perm, scope_type, scope_id)
    valid_until = as_aware(valid_until)
    if valid_until is not None and valid_until <= utcnow():
        raise ValidationError('valid_until must be in the future')

    with last_administrator_guard(session):
        row = _find_live_override(session, user.id, perm.id, scope, scope_id)
        if row is None:
            row = UserPermission(
                user_id=user.id, permission_id=perm.id, granted=False,
                scope_type=scope.value, scope_id=scope_id, valid_until=valid_until, created_by=actor_id,
            )
            session.add(row)
        elif row.granted:
            row.granted = False
            row.valid_until = valid_until
            row.updated_by = actor_id
        else:
            current = as_aware(row.valid_until)
            lapsed = current is not None and current <= utcnow()
            if not lapsed and (current is None or (valid_until is not None and valid_until <= current)):
                logger.info('%s already revoked for user %s', name, user.id)
                return row
            # a lapsed revocation is renewed; a live one can only be extended
            row.valid_until = valid_until
            row.updated_by = actor_id
        logger.info('revoked %s from user %s scope=%s:%s by %s', name, user.id, scope.value, scope_id, actor_id)
    get_permission_cache().invalidate_user(user.id)
    return row


def remove_override(session, user_id: int, override_id: int, actor_id: Optional[int] = None) -> UserPermission:
    """Soft-delete an override so the user falls back to role defaults for it."""
    row = session.execute(
        select(UserPermission).where(
            UserPermission.id == override_id,
            UserPermission.user_id == user_id,
            UserPermission.deleted_at.is_(None),
        )
    ).scalar_one_or_none()
    if not row:
        raise NotFound(f'Unknown override {override_id} for user {user_id}')
    with last_administrator_guard(session):
        row.deleted_at = utcnow()
        row.updated_by = actor_id
    get_permission_cache().invalidate_user(user_id)
    return row


def list_overrides(session, user_id: int, include_inactive: bool = False) -> List[UserPermission]:
    get_user_or_404(session, user_id)
    rows = session.execute(
        select(UserPermission)
        .where(UserPermission.user_id == user_id, UserPermission.deleted_at.is_(None))
        .order_by(UserPermission.id.asc())
    ).scalars().all()
    if include_inactive:
        return list(rows)
    now = utcnow()
    return [r for r in rows if r.valid_until is None or as_aware(r.valid_until) > now]


def set_user_role(session, user_id: int, role_id: int) -> User:
    user = get_user_or_404(session, user_id)
    role = get_role_or_404(session, role_id)
    previous = user.role_id
    with last_administrator_guard(session):
        user.role_id = role.id
    get_permission_cache().invalidate_user(user.id)
    logger.info('user %s role changed %s -> %s', user.id, previous, role.id)
    return user


def set_user_active(session, user_id: int, active: bool) -> User:
    user = get_user_or_404(session, user_id)
    with last_administrator_guard(session):
        user.is_active = bool(active)
    get_permission_cache().invalidate_user(user.id)
    return user


def replace_role_permissions(session, role_id: int, names: Iterable[str]) -> Role:
    role = get_role_or_404(session, role_id)
    names = sorted(set(names))
    perms = session.execute(select(Permission).where(Permission.name.in_(names))).scalars().all() if names else []
    missing = set(names) - {p.name for p in perms}
    if missing:
        raise ValidationError(f'Unknown permission codes: {sorted(missing)}')
    with last_administrator_guard(session):
        session.execute(delete(RolePermission).where(RolePermission.role_id == role.id))
        for p in perms:
            session.add(RolePermission(role_id=role.id, permission_id=p.id))
    # bulk delete bypasses the loaded collection
    session.expire(role, ['permissions'])
    cache = get_permission_cache()
    cache.invalidate_role(role.id)
    cache.invalidate_role(role.name)
    return role


def create_permission(session, name: str, description: Optional[str] = None,
                      default_scope=None) -> Permission:
    """Create a catalog entry; returns the existing one when the name is taken."""
    validate_permission_name(name)
    existing = session.execute(select(Permission).where(Permission.name == name)).scalar_one_or_none()
    if existing:
        return existing
    scope = ScopeType.parse(default_scope) if default_scope is not None else ScopeType.GLOBAL
    parent = None
    if not is_composite(name):
        module = name.split('.', 1)[0]
        parent = session.execute(select(Permission).where(Permission.name == f'{module}.*')).scalar_one_or_none()
    perm = Permission(
        name=name,
        description=description or f'Permissão {name}',
        is_composite=is_composite(name),
        parent_id=parent.id if parent else None,
        scope=PermissionScope(default_scope_type=scope.value),
    )
    session.add(perm)
    session.flush()
    # composites already granted may now expand to the new leaf
    get_permission_cache().clear()
    logger.info('permission %s created (scope %s)', name, scope.value)
    return perm


__all__ = [
    'get_permission_or_404', 'get_role_or_404', 'grant_permission', 'revoke_permission', 'remove_override',
    'list_overrides', 'set_user_role', 'set_user_active', 'replace_role_permissions', 'create_permission',
]
