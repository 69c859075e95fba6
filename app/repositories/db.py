from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool
from app.core.config import settings


class Base(DeclarativeBase):
    pass


def engine_options(url: str) -> Dict[str, Any]:
    """Opções do engine para a URL.

    O runtime usa sessões em threads diferentes (scheduler, chamadas a
    colaboradores, handlers HTTP); em SQLite isso exige desligar o check de
    thread, e em memória todas as sessões precisam da mesma conexão.
    """
    opts: Dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        opts["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            opts["poolclass"] = StaticPool
    return opts


engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
