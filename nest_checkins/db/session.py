import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def create_db_engine(db_url: str) -> Engine:
    if db_url.startswith("sqlite"):
        # In-memory SQLite must share one connection across the request thread pool.
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url:
            options["poolclass"] = StaticPool
        return create_engine(db_url, future=True, **options)
    return create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
    )


NEST_DB_URL = _require_env("NEST_DB_URL")

engine = create_db_engine(NEST_DB_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
