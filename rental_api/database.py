from sqlalchemy.engine import make_url
from sqlmodel import create_engine, Session

from .config import DATABASE_URL, DB_ISOLATION_LEVEL, SQL_ECHO, STORE_TIMEOUT_SECONDS

if not DATABASE_URL or DATABASE_URL == "":
    raise ValueError("DATABASE URL not set")


def _engine_options(url: str) -> dict:
    """Bound every store round trip by STORE_TIMEOUT_SECONDS."""
    backend = make_url(url).get_backend_name()
    options = {"echo": SQL_ECHO, "pool_pre_ping": True}
    if backend == "sqlite":
        options["connect_args"] = {
            "check_same_thread": False,
            "timeout": STORE_TIMEOUT_SECONDS,
        }
    elif backend == "postgresql":
        timeout_ms = int(STORE_TIMEOUT_SECONDS * 1000)
        options["connect_args"] = {
            "connect_timeout": max(1, int(STORE_TIMEOUT_SECONDS)),
            "options": f"-c statement_timeout={timeout_ms}",
        }
        options["pool_timeout"] = STORE_TIMEOUT_SECONDS
    if DB_ISOLATION_LEVEL:
        options["isolation_level"] = DB_ISOLATION_LEVEL
    return options


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))


def get_session():
    with Session(engine) as session:
        yield session
