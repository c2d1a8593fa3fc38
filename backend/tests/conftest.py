import os, sys
import tempfile
import pytest
from fastapi.testclient import TestClient

# Fresh SQLite file per test session, configured before the engine is created
_db_dir = tempfile.mkdtemp(prefix="calsync-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+pysqlite:///{os.path.join(_db_dir, 'test.db')}")
os.environ.setdefault("CALENDAR_TOKEN_SECRET", "test-secret-passphrase")

# Put backend/ first on sys.path so the local calsync package is used
backend_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
tests_root = os.path.abspath(os.path.dirname(__file__))
for p in (tests_root, backend_root):
    if p not in sys.path:
        sys.path.insert(0, p)

from calsync.main import app  # noqa: E402
from calsync.config import get_settings  # noqa: E402
from calsync.db.session import engine, Base, SessionLocal  # noqa: E402
from calsync.db import models  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    # Fresh schema for each test
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client():
    return TestClient(app)


@pytest.fixture
def user(db):
    u = models.User(id="u1", email="u1@example.com")
    db.add(u)
    db.commit()
    return u
