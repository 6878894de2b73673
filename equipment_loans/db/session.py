import os

from equipment_loans.db.engine import build_engine, build_sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


LOANS_DB_URL = _require_env("LOANS_DB_URL")

engine_loans = build_engine(LOANS_DB_URL)

SessionLocalLoans = build_sessionmaker(engine_loans)
