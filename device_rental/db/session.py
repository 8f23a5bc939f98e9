import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RENTAL_DB_URL = _require_env("RENTAL_DB_URL")
CREDENTIAL_DB_URL = _require_env("CREDENTIAL_DB_URL")
STORE_TIMEOUT_SECONDS = int(os.environ.get("STORE_TIMEOUT_SECONDS") or "10")


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True, "pool_timeout": STORE_TIMEOUT_SECONDS}
    options = {"connect_args": {"check_same_thread": False, "timeout": STORE_TIMEOUT_SECONDS}}
    if ":memory:" in url or url.rstrip("/").endswith(":"):
        # One shared connection, otherwise every session gets its own empty database.
        options["poolclass"] = StaticPool
    return options


engine_rental = create_engine(RENTAL_DB_URL, future=True, **_engine_options(RENTAL_DB_URL))

engine_credential = create_engine(CREDENTIAL_DB_URL, future=True, **_engine_options(CREDENTIAL_DB_URL))

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)

SessionLocalCredential = sessionmaker(
    bind=engine_credential,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
