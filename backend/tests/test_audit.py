from pgben import get_db
from pgben.models.audit import AuditLog
from pgben.services.audit import add_audit
from tests.test_utils_seed import seed_catalog, ensure_user, login, auth


def test_admin_writes_are_audited_and_listed(client):
    seed_catalog()
    admin = ensure_user('admin@example.com', role='ADMIN')
    tec = ensure_user('tec@example.com')
    headers = auth(login(client, 'admin@example.com'))
    client.post(f'/iam/users/{tec.id}/permissions/grant', json={'permission': 'cidadao.excluir'}, headers=headers)
    client.post(f'/iam/users/{tec.id}/permissions/revoke', json={'permission': 'cidadao.ler'}, headers=headers)
    client.put(f'/iam/users/{tec.id}/status', json={'is_active': False}, headers=headers)

    resp = client.get('/iam/audit/logs', headers=headers)
    assert resp.status_code == 200
    rows = resp.get_json()['data']
    assert [r['action'] for r in rows] == ['USER.STATUS.SET', 'PERMISSION.REVOKE', 'PERMISSION.GRANT']
    assert all(r['actor_user_id'] == admin.id for r in rows)
    assert rows[0]['meta'] == {'is_active': False}

    filtered = client.get('/iam/audit/logs?action=PERMISSION.GRANT', headers=headers).get_json()
    assert filtered['pagination']['total'] == 1
    assert filtered['data'][0]['entity_id'] == str(tec.id)
    assert get_db().query(AuditLog).filter_by(action='PERMISSION.GRANT').one().role == 'ADMIN'


def test_failed_writes_are_not_audited(client):
    seed_catalog()
    ensure_user('admin@example.com', role='ADMIN')
    headers = auth(login(client, 'admin@example.com'))
    client.post('/iam/users/9999/permissions/grant', json={'permission': 'cidadao.excluir'}, headers=headers)
    assert get_db().query(AuditLog).count() == 0


def test_audit_logs_require_permission(client):
    seed_catalog()
    ensure_user('tec@example.com')
    headers = auth(login(client, 'tec@example.com'))
    assert client.get('/iam/audit/logs', headers=headers).status_code == 403


def test_add_audit_outside_request(app_ctx):
    session = get_db()
    add_audit('SEED.RUN', meta={'roles': 5})
    session.commit()
    log = session.query(AuditLog).one()
    assert log.actor_user_id == 0
    assert log.role is None
    assert log.meta == {'roles': 5}
