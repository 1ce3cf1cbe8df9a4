from __future__ import annotations
"""Pure permission resolution over an immutable snapshot.

effective = (role defaults + user grants) - user revocations, where expired
overrides are ignored and, for any required code, the most specific matching
grant must be strictly more specific than the most specific matching
revocation. Equal specificity resolves to the revocation.

No database, Flask or cache access happens here; ``pgben.services.policy`` builds
the snapshot and caches results.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from pgben.services.catalog import Catalog, matches, specificity
from pgben.services.errors import NotFound
from pgben.services.scope import EMPTY_TREE, ResourceRef, ScopeType, UnitTree, is_in_scope


@dataclass(frozen=True)
class RoleDef:
    id: int
    name: str
    permissions: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Override:
    user_id: int
    permission: str
    granted: bool = True
    scope_type: Optional[ScopeType] = None
    scope_id: Optional[int] = None
    valid_until: Optional[datetime] = None


@dataclass(frozen=True)
class Entry:
    """A permission pattern bound to the scope it applies in."""
    code: str
    scope_type: ScopeType = ScopeType.GLOBAL
    scope_id: Optional[int] = None


@dataclass(frozen=True)
class AuthzSnapshot:
    catalog: Catalog
    roles: Mapping[int, RoleDef]
    overrides: Tuple[Override, ...] = ()
    units: UnitTree = EMPTY_TREE

    def role(self, role_id: int) -> RoleDef:
        role = self.roles.get(role_id)
        if role is None:
            raise NotFound(f'Unknown role {role_id}')
        return role

    def role_by_name(self, name: str) -> RoleDef:
        for r in self.roles.values():
            if r.name == name:
                return r
        raise NotFound(f"Unknown role '{name}'")

    def overrides_for(self, user_id: int) -> List[Override]:
        return [o for o in self.overrides if o.user_id == user_id]


@dataclass(frozen=True)
class EffectivePermissions:
    user_id: int
    role_id: Optional[int]
    role_name: Optional[str]
    unit_id: Optional[int]
    grants: FrozenSet[Entry]
    revocations: FrozenSet[Entry] = frozenset()
    codes: FrozenSet[str] = frozenset()
    expires_at: Optional[datetime] = None
    legacy: bool = False

    def __contains__(self, code: str) -> bool:
        return has_permission(self, code)

    def __iter__(self):
        return iter(sorted(self.codes))

    def __len__(self) -> int:
        return len(self.codes)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def is_active(override: Override, now: datetime) -> bool:
    until = as_aware(override.valid_until)
    return until is None or until > now


def bind_entry(code: str, scope_type: ScopeType, scope_id: Optional[int],
               user_id: int, unit_id: Optional[int]) -> Entry:
    if scope_type == ScopeType.UNIT:
        return Entry(code, ScopeType.UNIT, scope_id if scope_id is not None else unit_id)
    if scope_type == ScopeType.SELF:
        return Entry(code, ScopeType.SELF, user_id)
    return Entry(code, ScopeType.GLOBAL, None)


def _best_match(entries: Iterable[Entry], code: str, applies: Callable[[Entry], bool]) -> int:
    best = -1
    for e in entries:
        if matches(e.code, code) and applies(e):
            best = max(best, specificity(e.code))
    return best


def _decide(user_id: int, grants: Iterable[Entry], revocations: Iterable[Entry], code: str,
            resource: Optional[ResourceRef], units: UnitTree) -> bool:
    def in_scope(e: Entry) -> bool:
        return is_in_scope(user_id, e.scope_type, e.scope_id, resource, units)

    if resource is None:
        grant_applies = lambda e: True
        revoke_applies = lambda e: e.scope_type == ScopeType.GLOBAL
    else:
        grant_applies = revoke_applies = in_scope
    best_grant = _best_match(grants, code, grant_applies)
    if best_grant < 0:
        return False
    return best_grant > _best_match(revocations, code, revoke_applies)


def resolve_effective_permissions(snapshot: AuthzSnapshot, user_id: int, role_id: int,
                                  unit_id: Optional[int] = None,
                                  now: Optional[datetime] = None) -> EffectivePermissions:
    now = as_aware(now) or utcnow()
    catalog = snapshot.catalog
    role = snapshot.role(role_id)

    grants = set()
    for code in role.permissions:
        catalog.require(code)
        grants.add(bind_entry(code, catalog.default_scope(code), None, user_id, unit_id))

    revocations = set()
    expiries = []
    for ov in snapshot.overrides_for(user_id):
        catalog.require(ov.permission)
        if not is_active(ov, now):
            continue
        scope = ov.scope_type or catalog.default_scope(ov.permission)
        entry = bind_entry(ov.permission, scope, ov.scope_id, user_id, unit_id)
        (grants if ov.granted else revocations).add(entry)
        if ov.valid_until is not None:
            expiries.append(as_aware(ov.valid_until))

    codes = frozenset(
        c for c in catalog.leaves
        if _decide(user_id, grants, revocations, c, None, snapshot.units)
    )
    return EffectivePermissions(
        user_id=user_id,
        role_id=role.id,
        role_name=role.name,
        unit_id=unit_id,
        grants=frozenset(grants),
        revocations=frozenset(revocations),
        codes=codes,
        expires_at=min(expiries) if expiries else None,
    )


def role_default_permissions(snapshot: AuthzSnapshot, user_id: int, role_name: str,
                             unit_id: Optional[int] = None) -> EffectivePermissions:
    """Permissions derived from role defaults alone (role-only legacy tokens)."""
    role = snapshot.role_by_name(role_name)
    bare = AuthzSnapshot(catalog=snapshot.catalog, roles={role.id: role}, units=snapshot.units)
    return replace(resolve_effective_permissions(bare, user_id, role.id, unit_id), legacy=True)


def has_permission(effective: EffectivePermissions, required: str,
                   resource: Optional[ResourceRef] = None, units: UnitTree = EMPTY_TREE) -> bool:
    """True when the effective set authorizes ``required``.

    ``required`` may list alternatives separated by commas; any one suffices.
    Without a resource the check asks whether the permission is held anywhere,
    so only GLOBAL revocations can defeat it.
    """
    for code in (c.strip() for c in required.split(',')):
        if code and _decide(effective.user_id, effective.grants, effective.revocations,
                            code, resource, units):
            return True
    return False


__all__ = [
    'RoleDef', 'Override', 'Entry', 'AuthzSnapshot', 'EffectivePermissions',
    'utcnow', 'as_aware', 'is_active', 'bind_entry',
    'resolve_effective_permissions', 'role_default_permissions', 'has_permission',
]
