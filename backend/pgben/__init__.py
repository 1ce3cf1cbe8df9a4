from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from datetime import timedelta
from typing import Optional, Dict, Any
import logging
import os

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _default_config() -> Dict[str, Any]:
    return {
        'JWT_SECRET_KEY': os.getenv('JWT_SECRET_KEY', 'dev-secret'),
        'DATABASE_URL': os.getenv('DATABASE_URL', 'sqlite:///dev.db'),
        'JWT_ACCESS_TOKEN_EXPIRES': timedelta(seconds=int(os.getenv('JWT_ACCESS_TOKEN_EXPIRES', '900'))),
        'PERMISSION_CACHE_TTL': int(os.getenv('PERMISSION_CACHE_TTL', '300')),
        # role-only tokens from before per-user permissions; switch off once all sessions have rotated
        'AUTHZ_ACCEPT_LEGACY_TOKENS': _env_bool('AUTHZ_ACCEPT_LEGACY_TOKENS', True),
        'LOG_LEVEL': os.getenv('LOG_LEVEL', 'INFO'),
    }


def _make_engine(db_url: str):
    if db_url.endswith(':memory:'):
        # Ensure a single shared in-memory SQLite database across all sessions
        return create_engine(
            db_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(db_url, echo=False, future=True)


def _error(status: int, title: str, detail):
    return {'error': {'status': status, 'title': title, 'detail': detail}}, status


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    app = Flask(__name__)
    app.config.update(_default_config())
    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

    logging.getLogger('pgben').setLevel(app.config['LOG_LEVEL'])

    db_engine = _make_engine(app.config['DATABASE_URL'])
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))

    jwt.init_app(app)

    from .services.cache import PermissionCache
    from .services.policy import CACHE_EXTENSION
    app.extensions[CACHE_EXTENSION] = PermissionCache(app.config['PERMISSION_CACHE_TTL'])

    @jwt.token_in_blocklist_loader
    def check_if_token_revoked(jwt_header, jwt_payload):
        from .services.tokens import is_token_revoked
        return is_token_revoked(get_db(), jwt_payload['jti'])

    @app.teardown_appcontext
    def remove_session(exc):
        SessionLocal.remove()

    from .routes.iam import iam_bp
    app.register_blueprint(iam_bp, url_prefix='/iam')

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    from .services.errors import AuthzError

    # Unified error handler producing standardized JSON shape
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if isinstance(e, HTTPException):
            return _error(e.code, e.name, e.description)
        if isinstance(e, AuthzError):
            return _error(e.status, e.title, e.detail)
        # Unhandled exception
        app.logger.exception('Unhandled exception')
        return _error(500, 'Internal Server Error', 'Unexpected error')

    return app


def get_db():
    return SessionLocal()
