from sqlalchemy.pool import StaticPool

from app.repositories.db import engine_options


def test_in_memory_sqlite_shares_one_connection():
    opts = engine_options("sqlite:///:memory:")
    assert opts["poolclass"] is StaticPool
    assert opts["connect_args"] == {"check_same_thread": False}


def test_file_sqlite_and_postgres_use_default_pool():
    assert "poolclass" not in engine_options("sqlite:///./leadflow.db")
    assert engine_options("postgresql+psycopg://u:p@db/leadflow") == {"pool_pre_ping": True}
