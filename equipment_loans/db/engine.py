from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def build_engine(db_url: str) -> Engine:
    options = {"pool_pre_ping": True, "future": True}
    if db_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url.rstrip("/").endswith(":"):
            # Every session has to see the same in-memory database.
            options["poolclass"] = StaticPool
    return create_engine(db_url, **options)


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
