from pgben import get_db
from pgben.constants.permissions import ALL_PERMISSION_CODES
from pgben.models.authz import Permission
from pgben.services.policy import compute_effective_permissions
from tests.test_utils_seed import seed_catalog, ensure_user, login, auth, role_id


def _admin(client):
    seed_catalog()
    ensure_user('admin@example.com', role='ADMIN')
    return auth(login(client, 'admin@example.com'))


def test_list_permissions_paginated_with_etag(client):
    headers = _admin(client)
    first = client.get('/iam/permissions?limit=10&offset=0', headers=headers)
    assert first.status_code == 200
    body = first.get_json()
    assert body['pagination'] == {'total': len(ALL_PERMISSION_CODES), 'limit': 10, 'offset': 0, 'returned': 10}
    names = [p['name'] for p in body['data']]
    assert names == sorted(names)
    etag = first.headers.get('ETag')
    assert etag
    second = client.get('/iam/permissions?limit=10&offset=0', headers={**headers, 'If-None-Match': etag})
    assert second.status_code == 304
    assert second.headers.get('ETag') == etag
    assert client.get('/iam/permissions?limit=abc', headers=headers).status_code == 400


def test_default_scope_exposed(client):
    headers = _admin(client)
    body = client.get('/iam/permissions?limit=200', headers=headers).get_json()
    by_name = {p['name']: p for p in body['data']}
    assert by_name['solicitacao.status.avaliar']['default_scope'] == 'UNIT'
    assert by_name['usuario.senha.alterar']['default_scope'] == 'SELF'
    assert by_name['cidadao.*']['is_composite'] is True


def test_create_permission_is_validated_and_idempotent(client):
    headers = _admin(client)
    resp = client.post('/iam/permissions', json={'name': 'cidadao.historico.ler', 'default_scope': 'UNIT'}, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    created = resp.get_json()
    assert created['is_composite'] is False
    again = client.post('/iam/permissions', json={'name': 'cidadao.historico.ler'}, headers=headers)
    assert again.status_code == 200
    assert again.get_json()['id'] == created['id']

    perm = get_db().query(Permission).filter_by(name='cidadao.historico.ler').one()
    parent = get_db().query(Permission).filter_by(name='cidadao.*').one()
    assert perm.parent_id == parent.id
    assert perm.scope.default_scope_type == 'UNIT'

    for bad in ['Cidadao.Ler', '*', 'cidadao..ler', 'cid*.ler']:
        r = client.post('/iam/permissions', json={'name': bad}, headers=headers)
        assert r.status_code == 400, bad
        assert r.get_json()['error']['title'] == 'Bad Request'
    assert client.post('/iam/permissions', json={'name': 'x.y', 'default_scope': 'REGION'}, headers=headers).status_code == 400


def test_new_leaf_reaches_holders_of_module_wildcard(client):
    headers = _admin(client)
    gestor = ensure_user('gestor@example.com', role='GESTOR')
    assert 'cidadao.historico.ler' not in compute_effective_permissions(gestor.id).codes
    client.post('/iam/permissions', json={'name': 'cidadao.historico.ler'}, headers=headers)
    assert 'cidadao.historico.ler' in compute_effective_permissions(gestor.id).codes


def test_roles_listing_and_replace_permissions(client):
    headers = _admin(client)
    roles = client.get('/iam/roles', headers=headers).get_json()['data']
    assert [r['name'] for r in roles] == ['ADMIN', 'GESTOR', 'COORDENADOR', 'TECNICO', 'CIDADAO']

    tec = ensure_user('tec@example.com', role='TECNICO')
    assert 'beneficio.excluir' not in compute_effective_permissions(tec.id).codes
    tecnico = role_id('TECNICO')
    resp = client.put(f'/iam/roles/{tecnico}/permissions', json={'permissions': ['beneficio.*', 'cidadao.ler']}, headers=headers)
    assert resp.status_code == 200, resp.get_json()
    assert resp.get_json() == {'id': tecnico, 'permissions': ['beneficio.*', 'cidadao.ler']}
    eff = compute_effective_permissions(tec.id)
    assert 'beneficio.excluir' in eff.codes
    assert 'cidadao.listar' not in eff.codes

    assert client.put(f'/iam/roles/{tecnico}/permissions', json={'permissions': ['nao.existe']}, headers=headers).status_code == 400
    assert client.put(f'/iam/roles/{tecnico}/permissions', json={'permissions': 'cidadao.ler'}, headers=headers).status_code == 400
    assert client.put('/iam/roles/999/permissions', json={'permissions': []}, headers=headers).status_code == 404


def test_role_change_takes_effect(client):
    headers = _admin(client)
    tec = ensure_user('tec2@example.com', role='TECNICO')
    assert 'relatorio.exportar' not in compute_effective_permissions(tec.id).codes
    resp = client.put(f'/iam/users/{tec.id}/role', json={'role_id': role_id('GESTOR')}, headers=headers)
    assert resp.status_code == 200
    assert 'relatorio.exportar' in compute_effective_permissions(tec.id).codes
    assert client.put(f'/iam/users/{tec.id}/role', json={'role_id': 999}, headers=headers).status_code == 404
    assert client.put(f'/iam/users/{tec.id}/role', json={}, headers=headers).status_code == 400
    assert client.put(f'/iam/users/{tec.id}/status', json={'is_active': 'no'}, headers=headers).status_code == 400


def test_catalog_endpoints_require_permission(client):
    seed_catalog()
    ensure_user('cidadao@example.com', role='CIDADAO')
    headers = auth(login(client, 'cidadao@example.com'))
    assert client.get('/iam/permissions', headers=headers).status_code == 403
    assert client.get('/iam/roles', headers=headers).status_code == 403
    assert client.post('/iam/permissions', json={'name': 'a.b'}, headers=headers).status_code == 403
