#!/usr/bin/env python
"""Idempotent seed script for the permission catalog, role defaults and the first administrator.

Usage:
    python backend/scripts/seed_authz.py                 # seed normally
    python backend/scripts/seed_authz.py --show-roles    # print role -> permission counts (after ensuring seed)
    python backend/scripts/seed_authz.py --dry-run       # run logic then rollback (no DB changes)
    python backend/scripts/seed_authz.py --validate      # check stored codes against the naming rules
    python backend/scripts/seed_authz.py --purge-tokens  # drop blocklist rows for tokens that already expired
"""
from __future__ import annotations
import os, sys, argparse, textwrap, json, hashlib
from sqlalchemy import select, inspect

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from pgben import create_app, get_db  # type: ignore
from pgben.models.authz import Base, Permission, PermissionScope, Role, RolePermission, Unit, User
from pgben.constants.permissions import (
    ADMIN_ROLE, DEFAULT_SCOPES, ROLE_PRESETS,
    build_composite_permission_codes, build_leaf_permission_codes,
)
from pgben.services.catalog import validate_permission_name
from pgben.services.errors import ValidationError
from pgben.services.tokens import purge_expired_tokens


def ensure_permissions(session):
    """Create missing catalog entries; composites first so leaves can point at their module composite."""
    existing = {p.name: p for p in session.execute(select(Permission)).scalars().all()}
    created = 0
    for code in build_composite_permission_codes():
        if code not in existing:
            perm = Permission(name=code, description=f'Todas as permissões {code}', is_composite=True,
                              scope=PermissionScope(default_scope_type='GLOBAL'))
            session.add(perm)
            existing[code] = perm
            created += 1
    session.flush()
    for code in build_leaf_permission_codes():
        if code in existing:
            continue
        parent = existing.get(f"{code.split('.', 1)[0]}.*")
        perm = Permission(
            name=code,
            description=code.replace('.', ' - '),
            is_composite=False,
            parent_id=parent.id if parent else None,
            scope=PermissionScope(default_scope_type=DEFAULT_SCOPES.get(code, 'GLOBAL')),
        )
        session.add(perm)
        existing[code] = perm
        created += 1
    session.flush()
    return created


def ensure_roles(session):
    """Create preset roles and attach any preset permission they are missing (never removes)."""
    existing_roles = {r.name: r for r in session.execute(select(Role)).scalars().all()}
    perms_map = {p.name: p for p in session.execute(select(Permission)).scalars().all()}
    created = 0
    for role_name, codes in ROLE_PRESETS.items():
        role = existing_roles.get(role_name)
        if role is None:
            role = Role(name=role_name, is_system=True, description=role_name.title())
            session.add(role)
            session.flush()
            existing_roles[role_name] = role
            created += 1
        current_codes = {rp.permission.name for rp in role.permissions}
        for code in sorted(set(codes) - current_codes):
            if code not in perms_map:
                print(f"[WARN] Missing permission referenced by role {role_name}: {code}")
                continue
            session.add(RolePermission(role=role, permission=perms_map[code]))
    session.flush()
    return created


def ensure_root_unit(session):
    code = os.getenv('SEED_ROOT_UNIT_CODE', 'SEDE')
    unit = session.execute(select(Unit).where(Unit.code==code)).scalar_one_or_none()
    if not unit:
        unit = Unit(name=os.getenv('SEED_ROOT_UNIT_NAME', 'Sede'), code=code)
        session.add(unit)
        session.flush()
    return unit


def ensure_initial_admin(session, unit=None):
    admin_role = session.execute(select(Role).where(Role.name==ADMIN_ROLE)).scalar_one_or_none()
    if not admin_role:
        print(f'[WARN] {ADMIN_ROLE} role missing; skipping admin user creation')
        return None
    admin_email = os.getenv('SEED_ADMIN_EMAIL', 'admin@example.com')
    user = session.execute(select(User).where(User.email==admin_email)).scalar_one_or_none()
    if not user:
        user = User(name='Administrador', email=admin_email, password_hash='', role_id=admin_role.id,
                    unit_id=unit.id if unit else None)
        user.set_password(os.getenv('SEED_ADMIN_PASSWORD', 'ChangeMe123!'))
        session.add(user)
        session.flush()
        print(f"[INFO] Created initial admin user {admin_email} with temporary password.")
    return user


def build_role_permission_map(session):
    mapping = {}
    for role in session.execute(select(Role)).scalars().all():
        mapping[role.name] = sorted({rp.permission.name for rp in role.permissions})
    return mapping


def validate_catalog(session):
    """Return a list of problems: malformed names and role presets referencing unknown codes."""
    problems = []
    names = set(session.execute(select(Permission.name)).scalars().all())
    for name in sorted(names):
        try:
            validate_permission_name(name)
        except ValidationError as e:
            problems.append(e.detail)
    for role_name, codes in ROLE_PRESETS.items():
        for c in codes:
            if c not in names:
                problems.append(f"Role '{role_name}' references missing permission code: {c}")
    return problems


def print_role_summary(session):
    rows = [(name, len(codes), codes[:8]) for name, codes in build_role_permission_map(session).items()]
    if not rows:
        print("[INFO] No roles present.")
        return
    name_w = max(len(r[0]) for r in rows)
    print(f"{'Role'.ljust(name_w)} | Count | Sample (up to 8)")
    print('-' * (name_w + 40))
    for name, cnt, sample in rows:
        print(f"{name.ljust(name_w)} | {str(cnt).rjust(5)} | {', '.join(sample)}")


def seed(session):
    """Run every ensure_* step; returns (permissions_created, roles_created)."""
    created_p = ensure_permissions(session)
    created_r = ensure_roles(session)
    unit = ensure_root_unit(session)
    ensure_initial_admin(session, unit)
    return created_p, created_r


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Seed PBAC permission catalog & role defaults",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""Examples:\n  seed normally: seed_authz.py\n  dry run: seed_authz.py --dry-run\n  show roles: seed_authz.py --show-roles\n""")
    )
    p.add_argument('--show-roles', action='store_true', help='Print role permission counts after seeding')
    p.add_argument('--dry-run', action='store_true', help='Rollback after operations (no commit)')
    p.add_argument('--export-json', nargs='?', const='-', metavar='FILE', help='Export role->permissions JSON (to FILE or stdout if omitted)')
    p.add_argument('--validate', action='store_true', help='Validate permission names & role references; exits non-zero on problems')
    p.add_argument('--purge-tokens', action='store_true', help='Delete blocklisted tokens that have already expired')
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    app = create_app()
    with app.app_context():
        session = get_db()
        engine = session.get_bind()
        if not inspect(engine).has_table('permissions'):
            # Auto-create schema for bootstrap; in real env prefer alembic upgrade
            import pgben.models.audit  # noqa: F401
            Base.metadata.create_all(engine)

        try:
            created_p, created_r = seed(session)
            role_perm_map = build_role_permission_map(session)
            if args.validate:
                problems = validate_catalog(session)
                if problems:
                    print('\n[VALIDATION] FAIL:')
                    for prob in problems:
                        print(' -', prob)
                    session.rollback()
                    sys.exit(2)
                print('[VALIDATION] OK: All permission names & role references valid.')
            purged = purge_expired_tokens(session) if args.purge_tokens else 0
            if args.dry_run:
                session.rollback()
                print(f"[DRY-RUN] (rolled back) Permissions would create: {created_p}, Roles would create: {created_r}")
            else:
                session.commit()
                print(f"[DONE] Permissions created: {created_p}, Roles created: {created_r}")
                if args.purge_tokens:
                    print(f"[DONE] Expired blocklist entries purged: {purged}")
            if args.show_roles:
                print('\nRole Permission Summary:')
                print_role_summary(session)
            if args.export_json is not None:
                # Deterministic checksum for build caching / change detection
                canonical = json.dumps(role_perm_map, sort_keys=True, separators=(',', ':'))
                payload = {
                    'roles': role_perm_map,
                    'meta': {
                        'roles_checksum_sha256': hashlib.sha256(canonical.encode('utf-8')).hexdigest(),
                        'role_names_sorted': sorted(role_perm_map.keys()),
                        'dry_run': args.dry_run,
                    }
                }
                if args.export_json == '-':
                    print(json.dumps(payload, indent=2, sort_keys=True))
                else:
                    with open(args.export_json, 'w', encoding='utf-8') as f:
                        json.dump(payload, f, indent=2, sort_keys=True)
                    print(f"[INFO] Exported JSON to {args.export_json}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


if __name__ == '__main__':
    main()
