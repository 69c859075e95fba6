import os
import sys

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Garantir ambiente de testes previsível
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["WA_VERIFY_TOKEN"] = "verify-me"
os.environ["WA_WEBHOOK_SECRET"] = ""
os.environ["ADMIN_API_TOKEN"] = ""
os.environ["FLOW_SCHEDULER_ENABLED"] = "false"
os.environ["FLOW_TIMEZONE"] = "America/Mexico_City"

# Ensure the project root (which contains the 'app' package) is on sys.path
THIS_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(THIS_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
if THIS_DIR not in sys.path:
    sys.path.insert(0, THIS_DIR)

from app.main import app
from app.api.deps import get_db as deps_get_db, get_runtime as deps_get_runtime
from app.repositories.db import Base, engine_options
from app.services.assignment_resolver import SqlAssignmentResolver
from app.services.flow_locks import LocalLockRegistry
from app.services.flow_runtime import FlowRuntime
from app.services.flow_scheduler import FlowScheduler
from fakes import FakeTextGenerator, RecordingDispatcher


@pytest.fixture(scope="function")
def db_engine():
    engine = create_engine("sqlite:///:memory:", **engine_options("sqlite:///:memory:"))
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()

@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

@pytest.fixture(scope="function")
def db_session(session_factory):
    """Cria uma sessão de banco de dados em memória para cada função de teste."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()

@pytest.fixture
def fake_generator():
    return FakeTextGenerator()

@pytest.fixture
def dispatcher():
    return RecordingDispatcher()

@pytest.fixture
def scheduler():
    return FlowScheduler()

@pytest.fixture
def runtime(session_factory, scheduler, dispatcher, fake_generator):
    return FlowRuntime(
        session_factory,
        scheduler=scheduler,
        locks=LocalLockRegistry(timeout_secs=5.0),
        dispatcher=dispatcher,
        text_generator=fake_generator,
        assignment_resolver=SqlAssignmentResolver(session_factory),
        engine_options={"collaborator_timeout": 2.0},
    )

@pytest.fixture(scope="function")
def client(db_session, runtime):
    """Cria um TestClient que usa a sessão de banco de dados e o runtime do teste."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[deps_get_db] = override_get_db
    app.dependency_overrides[deps_get_runtime] = lambda: runtime
    yield TestClient(app)
    del app.dependency_overrides[deps_get_db]
    del app.dependency_overrides[deps_get_runtime]

