from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from prism_driver.config import get_settings


Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SEC = 30


def engine_options(database_url: str) -> dict:
    if make_url(database_url).get_backend_name() != "sqlite":
        return {}
    # API worker threads share the machine store connection pool.
    return {
        "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SEC}
    }


_database_url = get_settings().database_url
engine = create_engine(_database_url, **engine_options(_database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db() -> None:
    from prism_driver import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
