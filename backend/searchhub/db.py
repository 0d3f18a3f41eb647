from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from searchhub.settings import settings

_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith(":memory:") or url.rstrip("/").endswith("sqlite+pysqlite:"))


def init_engine(database_url: str | None = None, *, connect_args: dict | None = None) -> Engine:
    global _engine, _SessionLocal

    url = database_url or settings.database_url
    connect_args = connect_args or ({"check_same_thread": False} if url.startswith("sqlite") else {})
    engine_kwargs: dict = {"future": True, "connect_args": connect_args}
    if _is_memory_sqlite(url):
        # One shared connection, otherwise every session sees its own empty database.
        engine_kwargs["poolclass"] = StaticPool

    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, **engine_kwargs)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_sessionmaker() -> sessionmaker[Session]:
    if _SessionLocal is None:
        init_engine()
    assert _SessionLocal is not None
    return _SessionLocal

