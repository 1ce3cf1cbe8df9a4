from __future__ import annotations
"""Serialization of effective permissions into JWT claims, and the token blocklist.

Claim layout (all values JSON-safe):
  role           role name
  unit_id        user's unit (nullable)
  perms          sorted leaf codes held without resource restriction
  grants         scoped grant entries
  perms_revoked  scoped revocation entries

An entry is ``code`` for GLOBAL scope, ``code@unit:<id>`` or ``code@self:<id>``.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from pgben.models.authz import RevokedToken
from pgben.services.errors import ValidationError
from pgben.services.resolver import EffectivePermissions, Entry, as_aware, utcnow
from pgben.services.scope import ScopeType

logger = logging.getLogger(__name__)

CLAIM_VERSION = 2


def entry_to_claim(entry: Entry) -> str:
    if entry.scope_type == ScopeType.GLOBAL:
        return entry.code
    scope_id = '' if entry.scope_id is None else entry.scope_id
    return f"{entry.code}@{entry.scope_type.value.lower()}:{scope_id}"


def entry_from_claim(raw: str) -> Entry:
    if '@' not in raw:
        return Entry(raw)
    code, _, scope = raw.partition('@')
    kind, _, ident = scope.partition(':')
    try:
        scope_type = ScopeType(kind.upper())
        scope_id = int(ident) if ident else None
    except ValueError:
        raise ValidationError(f"Malformed permission claim '{raw}'")
    return Entry(code, scope_type, scope_id)


def _sorted_claims(entries: Iterable[Entry]) -> List[str]:
    return sorted(entry_to_claim(e) for e in entries)


def build_claims(eff: EffectivePermissions) -> Dict[str, Any]:
    return {
        'pv': CLAIM_VERSION,
        'role': eff.role_name,
        'unit_id': eff.unit_id,
        'perms': sorted(eff.codes),
        'grants': _sorted_claims(eff.grants),
        'perms_revoked': _sorted_claims(eff.revocations),
    }


def is_legacy_claims(claims: Dict[str, Any]) -> bool:
    """Role-only tokens issued before per-user permissions existed."""
    return 'grants' not in claims and bool(claims.get('role'))


def effective_from_claims(user_id: int, claims: Dict[str, Any]) -> EffectivePermissions:
    return EffectivePermissions(
        user_id=user_id,
        role_id=None,
        role_name=claims.get('role'),
        unit_id=claims.get('unit_id'),
        grants=frozenset(entry_from_claim(c) for c in claims.get('grants') or []),
        revocations=frozenset(entry_from_claim(c) for c in claims.get('perms_revoked') or []),
        codes=frozenset(claims.get('perms') or []),
    )


def token_expires_delta(eff: EffectivePermissions, default: timedelta,
                        now: Optional[datetime] = None) -> timedelta:
    """Token lifetime capped so it never outlives the earliest expiring override."""
    if eff.expires_at is None:
        return default
    now = as_aware(now) or utcnow()
    remaining = as_aware(eff.expires_at) - now
    return max(min(default, remaining), timedelta(seconds=1))


# --- Blocklist ---

def revoke_token(session, jti: str, token_type: str, user_id: Optional[int], expires_at: Optional[datetime]) -> None:
    if session.execute(select(RevokedToken).where(RevokedToken.jti == jti)).scalar_one_or_none():
        return
    session.add(RevokedToken(jti=jti, token_type=token_type, user_id=user_id, expires_at=expires_at))
    session.flush()
    logger.info('token %s (%s) revoked for user %s', jti, token_type, user_id)


def is_token_revoked(session, jti: str) -> bool:
    return session.execute(select(RevokedToken.id).where(RevokedToken.jti == jti)).first() is not None


def purge_expired_tokens(session, now: Optional[datetime] = None) -> int:
    """Drop blocklist rows whose token would have expired anyway."""
    now = as_aware(now) or utcnow()
    rows = session.execute(select(RevokedToken).where(RevokedToken.expires_at.is_not(None))).scalars().all()
    purged = 0
    for row in rows:
        if as_aware(row.expires_at) <= now:
            session.delete(row)
            purged += 1
    return purged


__all__ = [
    'CLAIM_VERSION', 'entry_to_claim', 'entry_from_claim', 'build_claims', 'is_legacy_claims',
    'effective_from_claims', 'token_expires_delta', 'revoke_token', 'is_token_revoked',
    'purge_expired_tokens',
]
