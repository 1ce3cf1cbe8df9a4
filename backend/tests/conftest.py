import os, sys, pytest
# Ensure backend directory is on path so 'pgben' and 'scripts' can be imported
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
import pgben
from pgben import create_app, get_db
from pgben.models.authz import Base
import pgben.models.audit  # noqa: F401  ensure audit_logs is registered before create_all
from pgben.services.policy import CACHE_EXTENSION

TEST_CONFIG = {
    'DATABASE_URL': 'sqlite+pysqlite:///:memory:',
    'JWT_SECRET_KEY': 'test-secret-key-that-is-long-enough-for-hs256',
    'TESTING': True,
}


@pytest.fixture(scope='session')
def app_instance():
    app = create_app(TEST_CONFIG)
    with app.app_context():
        engine = get_db().get_bind()
        Base.metadata.create_all(engine)
    yield app


@pytest.fixture(autouse=True)
def clean_db(app_instance):
    """Fresh tables and an empty permission cache for every test."""
    with app_instance.app_context():
        engine = get_db().get_bind()
        pgben.SessionLocal.remove()
        Base.metadata.drop_all(engine)
        Base.metadata.create_all(engine)
        app_instance.extensions[CACHE_EXTENSION].clear()
    yield


@pytest.fixture()
def app_ctx(app_instance):
    with app_instance.app_context():
        yield app_instance


@pytest.fixture()
def client(app_ctx):
    return app_ctx.test_client()
