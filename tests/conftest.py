# tests/conftest.py
import os
import tempfile
import pytest

# The engine is built lazily from DATABASE_URL, so this must be set before
# create_app() runs. Each test session gets its own SQLite file.
_DB_DIR = tempfile.mkdtemp(prefix="presale-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["PAYMENTS_DRIVER"] = "simulated"
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("METRICS_ENABLED", "0")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "1")
os.environ.setdefault("LOG_TO_STDOUT", "1")
for _k in ("CRON_SECRET", "ADMIN_API_TOKEN", "STRIPE_SECRET_KEY"):
    os.environ.pop(_k, None)

from app import create_app  # noqa: E402
from models.base import Base, init_engine_and_session  # noqa: E402
from models.presale_store import SqlPresaleStore  # noqa: E402


@pytest.fixture(scope="session")
def app():
    return create_app({"TESTING": True})


@pytest.fixture(scope="session")
def db_engine(app):
    engine, _Session = init_engine_and_session()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(autouse=True)
def _db_clean(db_engine):
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def store():
    return SqlPresaleStore()


@pytest.fixture()
def service(app):
    return app.extensions["payments"]
