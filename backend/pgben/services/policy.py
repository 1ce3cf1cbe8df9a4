from __future__ import annotations
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Set
import logging

from flask import abort, current_app
from flask_jwt_extended import get_jwt, get_jwt_identity
from sqlalchemy import select

from pgben import get_db
from pgben.constants.permissions import ADMIN_PERMISSION
from pgben.models.authz import Permission, PermissionScope, Role, RolePermission, Unit, User, UserPermission
from pgben.services.cache import PermissionCache
from pgben.services.catalog import Catalog, PermissionDef, matches
from pgben.services.errors import LastAdministratorError, NotFound
from pgben.services.resolver import (
    AuthzSnapshot, EffectivePermissions, Override, RoleDef,
    has_permission, resolve_effective_permissions, role_default_permissions, utcnow,
)
from pgben.services.scope import ResourceRef, ScopeType, UnitTree
from pgben.services.tokens import effective_from_claims, is_legacy_claims

logger = logging.getLogger(__name__)

CACHE_EXTENSION = 'pgben.permission_cache'

# Feature flag names (must align with config)
FLAG_LEGACY_TOKENS = 'AUTHZ_ACCEPT_LEGACY_TOKENS'


def get_permission_cache() -> PermissionCache:
    return current_app.extensions[CACHE_EXTENSION]


# --- Snapshot loading ---

def load_catalog(session) -> Catalog:
    defaults = {
        ps.permission_id: ps.default_scope_type
        for ps in session.execute(select(PermissionScope)).scalars()
    }
    return Catalog(
        PermissionDef(
            name=p.name,
            description=p.description or '',
            default_scope=ScopeType.parse(defaults.get(p.id, 'GLOBAL')),
        )
        for p in session.execute(select(Permission)).scalars()
    )


def load_roles(session) -> Dict[int, RoleDef]:
    codes: Dict[int, Set[str]] = {}
    rows = session.execute(
        select(RolePermission.role_id, Permission.name).join(Permission, Permission.id == RolePermission.permission_id)
    ).all()
    for role_id, name in rows:
        codes.setdefault(role_id, set()).add(name)
    return {
        r.id: RoleDef(id=r.id, name=r.name, permissions=frozenset(codes.get(r.id, ())))
        for r in session.execute(select(Role)).scalars()
    }


def load_units(session) -> UnitTree:
    return UnitTree.from_pairs(session.execute(select(Unit.id, Unit.parent_id)).all())


def load_overrides(session, user_ids: Optional[Iterable[int]] = None) -> tuple:
    q = (
        select(UserPermission, Permission.name)
        .join(Permission, Permission.id == UserPermission.permission_id)
        .where(UserPermission.deleted_at.is_(None))
    )
    if user_ids is not None:
        q = q.where(UserPermission.user_id.in_(list(user_ids)))
    return tuple(
        Override(
            user_id=up.user_id,
            permission=name,
            granted=up.granted,
            scope_type=ScopeType.parse(up.scope_type) if up.scope_type else None,
            scope_id=up.scope_id,
            valid_until=up.valid_until,
        )
        for up, name in session.execute(q).all()
    )


def load_snapshot(session, user_ids: Optional[Iterable[int]] = None) -> AuthzSnapshot:
    return AuthzSnapshot(
        catalog=load_catalog(session),
        roles=load_roles(session),
        overrides=load_overrides(session, user_ids),
        units=load_units(session),
    )


def get_user_or_404(session, user_id: int) -> User:
    user = session.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
    if not user:
        raise NotFound(f'Unknown user {user_id}')
    return user


# --- Resolution ---

def compute_effective_permissions(user_id: int, session=None) -> EffectivePermissions:
    """Resolve a user's effective permissions through the (user_id, role_id) cache."""
    session = session or get_db()
    user = get_user_or_404(session, user_id)
    key = (user.id, user.role_id)
    now = utcnow()
    cache = get_permission_cache()

    def compute():
        snapshot = load_snapshot(session, [user.id])
        return resolve_effective_permissions(snapshot, user.id, user.role_id, user.unit_id, now=now)

    eff = cache.get_or_compute(key, compute)
    if _is_stale(eff, user, now):
        logger.debug('permission cache entry for user %s is stale, recomputing', user.id)
        eff = compute()
        cache.set(key, eff)
    return eff


def _is_stale(eff: EffectivePermissions, user: User, now) -> bool:
    # UNIT defaults are bound to the unit the user had at resolution time
    if eff.unit_id != user.unit_id:
        return True
    return eff.expires_at is not None and eff.expires_at <= now


def user_can(user_id: int, code: str, resource: Optional[ResourceRef] = None, session=None) -> bool:
    session = session or get_db()
    catalog = load_catalog(session)
    for alt in (c.strip() for c in code.split(',')):
        catalog.require(alt)
    eff = compute_effective_permissions(user_id, session)
    units = load_units(session) if resource is not None else UnitTree()
    return has_permission(eff, code, resource, units)


# --- Request-time (token based) ---

def current_permissions() -> EffectivePermissions:
    claims = get_jwt()
    user_id = int(get_jwt_identity())
    if not is_legacy_claims(claims):
        return effective_from_claims(user_id, claims)
    if not current_app.config.get(FLAG_LEGACY_TOKENS, True):
        abort(401, description='Legacy role-only token no longer accepted')
    role_name = claims['role']
    unit_id = claims.get('unit_id')

    def compute():
        return role_default_permissions(load_snapshot(get_db(), []), user_id, role_name, unit_id)

    # keyed by role name so invalidate_role(name) drops it
    return get_permission_cache().get_or_compute((('legacy', user_id), role_name), compute)


def has_permissions(*codes: str) -> bool:
    eff = current_permissions()
    return all(has_permission(eff, c) for c in codes)


def assert_in_scope(code: str, unit_id: Optional[int] = None, owner_id: Optional[int] = None):
    """Abort 403 unless the current token authorizes ``code`` on the given resource."""
    eff = current_permissions()
    resource = ResourceRef(unit_id=unit_id, owner_id=owner_id)
    if not has_permission(eff, code, resource, load_units(get_db())):
        abort(403, description='Resource outside permitted scope')


# --- Self-lockout guard ---

def _admin_candidates(snapshot: AuthzSnapshot, users: List[User]) -> List[User]:
    granting = {o.user_id for o in snapshot.overrides if o.granted and matches(o.permission, ADMIN_PERMISSION)}
    role_ids = {
        rid for rid, r in snapshot.roles.items()
        if any(matches(code, ADMIN_PERMISSION) for code in r.permissions)
    }
    return [u for u in users if u.role_id in role_ids or u.id in granting]


def count_administrators(session) -> int:
    """Active users holding the admin-granting permission without resource restriction."""
    session.flush()
    users = list(session.execute(select(User).where(User.is_active.is_(True))).scalars())
    if not users:
        return 0
    snapshot = load_snapshot(session)
    now = utcnow()
    total = 0
    for u in _admin_candidates(snapshot, users):
        eff = resolve_effective_permissions(snapshot, u.id, u.role_id, u.unit_id, now=now)
        # an empty resource is only covered by GLOBAL entries
        if has_permission(eff, ADMIN_PERMISSION, ResourceRef()):
            total += 1
    return total


@contextmanager
def last_administrator_guard(session):
    """Refuse (and roll back) a mutation that would leave the system without administrators."""
    before = count_administrators(session)
    yield
    if before and not count_administrators(session):
        session.rollback()
        logger.warning('refused mutation: would remove the last administrator')
        raise LastAdministratorError('Operation would remove the last administrator')


__all__ = [
    'get_permission_cache', 'load_catalog', 'load_roles', 'load_units', 'load_overrides', 'load_snapshot',
    'get_user_or_404', 'compute_effective_permissions', 'user_can', 'current_permissions', 'has_permissions',
    'assert_in_scope', 'count_administrators', 'last_administrator_guard',
]
