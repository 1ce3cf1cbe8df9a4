from datetime import datetime, timedelta, timezone
import pytest
from pgben import get_db
from pgben.models.authz import RevokedToken
from pgben.services.catalog import Catalog
from pgben.services.errors import ValidationError
from pgben.services.resolver import AuthzSnapshot, Entry, Override, RoleDef, has_permission, resolve_effective_permissions
from pgben.services.scope import ResourceRef, ScopeType
from pgben.services.tokens import (
    CLAIM_VERSION, build_claims, effective_from_claims, entry_from_claim, entry_to_claim, is_legacy_claims,
    is_token_revoked, purge_expired_tokens, revoke_token, token_expires_delta,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CATALOG = Catalog.from_names(['cidadao.ler', 'cidadao.excluir', 'cidadao.*', 'solicitacao.status.avaliar'])
ROLES = {1: RoleDef(1, 'GESTOR', frozenset({'cidadao.*'}))}


def test_entry_claim_format():
    assert entry_to_claim(Entry('cidadao.ler')) == 'cidadao.ler'
    assert entry_to_claim(Entry('cidadao.ler', ScopeType.UNIT, 7)) == 'cidadao.ler@unit:7'
    assert entry_to_claim(Entry('usuario.senha.alterar', ScopeType.SELF, 3)) == 'usuario.senha.alterar@self:3'
    assert entry_from_claim('cidadao.ler@unit:7') == Entry('cidadao.ler', ScopeType.UNIT, 7)
    assert entry_from_claim('cidadao.*') == Entry('cidadao.*')


@pytest.mark.parametrize('raw', ['cidadao.ler@region:7', 'cidadao.ler@unit:x'])
def test_malformed_claim_rejected(raw):
    with pytest.raises(ValidationError):
        entry_from_claim(raw)


def test_claims_round_trip_preserves_decisions():
    snap = AuthzSnapshot(catalog=CATALOG, roles=ROLES, overrides=(
        Override(5, 'cidadao.excluir', False),
        Override(5, 'solicitacao.status.avaliar', True, ScopeType.UNIT, 7),
    ))
    eff = resolve_effective_permissions(snap, 5, 1, unit_id=7, now=NOW)
    claims = build_claims(eff)
    assert claims['pv'] == CLAIM_VERSION
    assert claims['role'] == 'GESTOR'
    assert claims['perms'] == ['cidadao.ler', 'solicitacao.status.avaliar']
    assert claims['perms_revoked'] == ['cidadao.excluir']
    assert 'solicitacao.status.avaliar@unit:7' in claims['grants']
    assert not is_legacy_claims(claims)

    restored = effective_from_claims(5, claims)
    assert not has_permission(restored, 'cidadao.excluir')
    assert has_permission(restored, 'cidadao.ler')
    assert has_permission(restored, 'solicitacao.status.avaliar', ResourceRef(unit_id=7))
    assert not has_permission(restored, 'solicitacao.status.avaliar', ResourceRef(unit_id=8))


def test_legacy_claims_detection():
    assert is_legacy_claims({'role': 'TECNICO'})
    assert not is_legacy_claims({'role': 'TECNICO', 'grants': []})
    assert not is_legacy_claims({})


def test_token_lifetime_capped_by_override_expiry():
    default = timedelta(minutes=15)
    snap = AuthzSnapshot(catalog=CATALOG, roles=ROLES, overrides=(
        Override(5, 'cidadao.excluir', True, valid_until=NOW + timedelta(minutes=5)),
    ))
    eff = resolve_effective_permissions(snap, 5, 1, now=NOW)
    assert token_expires_delta(eff, default, now=NOW) == timedelta(minutes=5)
    assert token_expires_delta(eff, timedelta(minutes=1), now=NOW) == timedelta(minutes=1)
    # never zero or negative
    assert token_expires_delta(eff, default, now=NOW + timedelta(hours=1)) == timedelta(seconds=1)

    unlimited = resolve_effective_permissions(AuthzSnapshot(catalog=CATALOG, roles=ROLES), 5, 1, now=NOW)
    assert token_expires_delta(unlimited, default, now=NOW) == default


def test_blocklist(app_ctx):
    session = get_db()
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    future = datetime.now(timezone.utc) + timedelta(hours=1)
    revoke_token(session, 'jti-old', 'access', 1, past)
    revoke_token(session, 'jti-new', 'refresh', 1, future)
    revoke_token(session, 'jti-new', 'refresh', 1, future)
    session.commit()
    assert session.query(RevokedToken).count() == 2
    assert is_token_revoked(session, 'jti-old')
    assert not is_token_revoked(session, 'jti-unknown')

    assert purge_expired_tokens(session) == 1
    session.commit()
    assert not is_token_revoked(session, 'jti-old')
    assert is_token_revoked(session, 'jti-new')
