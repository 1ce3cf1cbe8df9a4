from datetime import datetime, timezone
from flask import Blueprint, request, abort, current_app
from flask_jwt_extended import (
    create_access_token, create_refresh_token, jwt_required, get_jwt, get_jwt_identity,
)
from sqlalchemy import select
from pgben.models.authz import User, Role, Permission
from pgben.models.audit import AuditLog
from pgben import get_db
from pgben.constants.permissions import ADMIN_PERMISSION
from pgben.services.policy import compute_effective_permissions, current_permissions, load_units
from pgben.services.resolver import has_permission
from pgben.services.scope import EMPTY_TREE, ResourceRef
from pgben.services.tokens import build_claims, entry_to_claim, token_expires_delta, revoke_token
from pgben.services import overrides
from pgben.utils.listing import apply_pagination, make_list_response
from pgben.decorators.audit import audit_log
from pgben.decorators.auth import require_permissions

iam_bp = Blueprint('iam', __name__)


def _iso(dt):
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _parse_datetime(raw, field='valid_until'):
    if raw in (None, ''):
        return None
    try:
        return datetime.fromisoformat(str(raw).replace('Z', '+00:00'))
    except ValueError:
        abort(400, description=f'{field} must be an ISO-8601 datetime')


def _optional_int(raw, field):
    if raw in (None, ''):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        abort(400, description=f'{field} must be int')


def _actor_id():
    return int(get_jwt_identity())


def _effective_json(eff):
    return {
        'role': eff.role_name,
        'unit_id': eff.unit_id,
        'perms': sorted(eff.codes),
        'grants': sorted(entry_to_claim(g) for g in eff.grants),
        'revoked': sorted(entry_to_claim(r) for r in eff.revocations),
        'expires_at': _iso(eff.expires_at),
    }


def _override_json(row):
    return {
        'id': row.id,
        'user_id': row.user_id,
        'permission': row.permission.name,
        'granted': row.granted,
        'scope_type': row.scope_type,
        'scope_id': row.scope_id,
        'valid_until': _iso(row.valid_until),
    }


def _issue_access_token(user: User):
    eff = compute_effective_permissions(user.id)
    expires = token_expires_delta(eff, current_app.config['JWT_ACCESS_TOKEN_EXPIRES'])
    # JWT identity must be a string (flask-jwt-extended v4 requirement)
    return create_access_token(identity=str(user.id), additional_claims=build_claims(eff), expires_delta=expires)


# --- Authentication ---

@iam_bp.post('/auth/login')
def login():
    data = request.json or {}
    email = data.get('email'); password = data.get('password')
    if not email or not password:
        abort(400, description='email & password required')
    session = get_db()
    user = session.execute(select(User).where(User.email==email)).scalar_one_or_none()
    if not user or not user.verify_password(password):
        abort(401, description='invalid credentials')
    if not user.is_active:
        abort(403, description='user inactive')
    return {
        'access_token': _issue_access_token(user),
        'refresh_token': create_refresh_token(identity=str(user.id)),
    }


@iam_bp.post('/auth/refresh')
@jwt_required(refresh=True)
def refresh():
    session = get_db()
    user = session.execute(select(User).where(User.id==int(get_jwt_identity()))).scalar_one_or_none()
    if not user or not user.is_active:
        abort(401, description='user no longer active')
    return {'access_token': _issue_access_token(user)}


@iam_bp.post('/auth/logout')
@jwt_required(verify_type=False)
def logout():
    claims = get_jwt()
    session = get_db()
    exp = claims.get('exp')
    revoke_token(
        session,
        claims['jti'],
        claims.get('type', 'access'),
        int(get_jwt_identity()),
        datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )
    session.commit()
    return {'status': 'revoked'}


@iam_bp.get('/auth/me')
@jwt_required()
def me():
    # Identity stored as string, cast back to int for DB lookup
    user_id = int(get_jwt_identity())
    session = get_db()
    user = session.execute(select(User).where(User.id==user_id)).scalar_one_or_none()
    if not user:
        abort(404)
    eff = compute_effective_permissions(user.id)
    body = {'id': user.id, 'name': user.name, 'email': user.email}
    body.update(_effective_json(eff))
    return body


@iam_bp.get('/auth/check')
@jwt_required()
def check():
    """Evaluate a permission for the token holder, optionally against a resource."""
    code = request.args.get('permission')
    if not code:
        abort(400, description='permission required')
    unit_id = _optional_int(request.args.get('unit_id'), 'unit_id')
    owner_id = _optional_int(request.args.get('owner_id'), 'owner_id')
    eff = current_permissions()
    resource = None
    units = EMPTY_TREE
    if unit_id is not None or owner_id is not None:
        resource = ResourceRef(unit_id=unit_id, owner_id=owner_id)
        units = load_units(get_db())
    allowed = has_permission(eff, code, resource, units)
    return {'permission': code, 'allowed': allowed, 'legacy': eff.legacy}


# --- Catalog ---

@iam_bp.get('/permissions')
@require_permissions('usuario.permissao.ler')
def list_permissions():
    session = get_db()
    q = session.query(Permission).order_by(Permission.name.asc())
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    data = [
        {
            'id': p.id,
            'name': p.name,
            'description': p.description,
            'is_composite': p.is_composite,
            'default_scope': p.scope.default_scope_type if p.scope else 'GLOBAL',
        }
        for p in rows
    ]
    return make_list_response(data, total, limit, offset)


@iam_bp.post('/permissions')
@require_permissions(ADMIN_PERMISSION)
@audit_log('PERMISSION.CREATE', entity='Permission', entity_id_key='id', meta_keys=['name'])
def create_permission():
    data = request.json or {}
    session = get_db()
    existed = session.execute(select(Permission.id).where(Permission.name==data.get('name'))).first() is not None
    perm = overrides.create_permission(session, data.get('name'), data.get('description'), data.get('default_scope'))
    session.commit()
    return {'id': perm.id, 'name': perm.name, 'is_composite': perm.is_composite}, 200 if existed else 201


# --- Roles ---

@iam_bp.get('/roles')
@require_permissions('usuario.permissao.ler')
def list_roles():
    session = get_db()
    q = session.query(Role).order_by(Role.id.asc())
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    data = [
        {'id': r.id, 'name': r.name, 'is_system': r.is_system, 'permissions': sorted(rp.permission.name for rp in r.permissions)}
        for r in rows
    ]
    return make_list_response(data, total, limit, offset)


@iam_bp.put('/roles/<int:role_id>/permissions')
@require_permissions(ADMIN_PERMISSION)
@audit_log(
    'ROLE.PERM.REPLACE',
    entity='Role',
    entity_id_key='id',
    meta_builder=lambda data, rv, a, kw: {'count': len(data.get('permissions', []))},
)
def replace_role_permissions(role_id: int):
    data = request.json or {}
    codes = data.get('permissions')
    if not isinstance(codes, list):
        abort(400, description='permissions must be a list')
    session = get_db()
    role = overrides.replace_role_permissions(session, role_id, codes)
    session.commit()
    return {'id': role.id, 'permissions': sorted(set(codes))}


# --- Users ---

@iam_bp.put('/users/<int:user_id>/role')
@require_permissions(ADMIN_PERMISSION)
@audit_log('USER.ROLE.SET', entity='User', entity_id_key='user_id', meta_keys=['role_id'])
def set_user_role(user_id: int):
    data = request.json or {}
    role_id = _optional_int(data.get('role_id'), 'role_id')
    if role_id is None:
        abort(400, description='role_id required')
    session = get_db()
    user = overrides.set_user_role(session, user_id, role_id)
    session.commit()
    return {'user_id': user.id, 'role_id': user.role_id}


@iam_bp.put('/users/<int:user_id>/status')
@require_permissions('usuario.status.alterar')
@audit_log('USER.STATUS.SET', entity='User', entity_id_key='user_id', meta_keys=['is_active'])
def set_user_status(user_id: int):
    data = request.json or {}
    if not isinstance(data.get('is_active'), bool):
        abort(400, description='is_active must be boolean')
    session = get_db()
    user = overrides.set_user_active(session, user_id, data['is_active'])
    session.commit()
    return {'user_id': user.id, 'is_active': user.is_active}


@iam_bp.get('/users/<int:user_id>/permissions')
@require_permissions('usuario.permissao.ler')
def user_permissions(user_id: int):
    session = get_db()
    include_inactive = request.args.get('include_inactive') in ('1', 'true')
    rows = overrides.list_overrides(session, user_id, include_inactive=include_inactive)
    body = {'user_id': user_id, 'overrides': [_override_json(r) for r in rows]}
    body.update(_effective_json(compute_effective_permissions(user_id)))
    return body


def _override_args():
    data = request.json or {}
    name = data.get('permission')
    if not name:
        abort(400, description='permission required')
    return (
        name,
        data.get('scope_type'),
        _optional_int(data.get('scope_id'), 'scope_id'),
        _parse_datetime(data.get('valid_until')),
    )


@iam_bp.post('/users/<int:user_id>/permissions/grant')
@require_permissions(ADMIN_PERMISSION)
@audit_log('PERMISSION.GRANT', entity='User', entity_id_key='user_id', meta_keys=['permission', 'scope_type', 'scope_id', 'valid_until'])
def grant_user_permission(user_id: int):
    name, scope_type, scope_id, valid_until = _override_args()
    session = get_db()
    row = overrides.grant_permission(session, user_id, name, scope_type, scope_id, valid_until, actor_id=_actor_id())
    session.commit()
    return _override_json(row), 201


@iam_bp.post('/users/<int:user_id>/permissions/revoke')
@require_permissions(ADMIN_PERMISSION)
@audit_log('PERMISSION.REVOKE', entity='User', entity_id_key='user_id', meta_keys=['permission', 'scope_type', 'scope_id'])
def revoke_user_permission(user_id: int):
    name, scope_type, scope_id, valid_until = _override_args()
    session = get_db()
    row = overrides.revoke_permission(session, user_id, name, scope_type, scope_id, valid_until, actor_id=_actor_id())
    session.commit()
    return _override_json(row)


@iam_bp.delete('/users/<int:user_id>/permissions/<int:override_id>')
@require_permissions(ADMIN_PERMISSION)
@audit_log('PERMISSION.OVERRIDE.DELETE', entity='User', entity_id_arg='user_id', meta_keys=['id', 'permission'])
def delete_user_override(user_id: int, override_id: int):
    session = get_db()
    row = overrides.remove_override(session, user_id, override_id, actor_id=_actor_id())
    session.commit()
    return {'id': row.id, 'permission': row.permission.name, 'status': 'deleted'}


# --- Audit Log Listing ---
@iam_bp.get('/audit/logs')
@require_permissions('auditoria.log.ler')
def list_audit_logs():
    session = get_db()
    q = session.query(AuditLog)
    actor = request.args.get('actor_user_id')
    action = request.args.get('action')
    entity = request.args.get('entity')
    entity_id = request.args.get('entity_id')
    if actor:
        q = q.filter(AuditLog.actor_user_id==_optional_int(actor, 'actor_user_id'))
    if action:
        q = q.filter(AuditLog.action==action)
    if entity:
        q = q.filter(AuditLog.entity==entity)
    if entity_id:
        q = q.filter(AuditLog.entity_id==entity_id)
    paged_q, total, limit, offset = apply_pagination(q.order_by(AuditLog.id.desc()))
    rows = paged_q.all()
    data = [
        {
            'id': r.id,
            'actor_user_id': r.actor_user_id,
            'action': r.action,
            'entity': r.entity,
            'entity_id': r.entity_id,
            'meta': r.meta,
            'created_at': _iso(r.created_at),
        } for r in rows
    ]
    return make_list_response(data, total, limit, offset, _iso(rows[0].created_at) if rows else '')
