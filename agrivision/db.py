# agrivision/db.py
import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """Connection pool plus session factory owned by the running process.

    Created once at startup and disposed at shutdown; request handlers get it
    from ``app.state`` rather than a module global.
    """

    def __init__(self, url: str, *, pool_size: int = 10, **engine_kwargs):
        self.url = url
        if url.startswith("sqlite"):
            connect_args = engine_kwargs.pop("connect_args", {})
            connect_args.setdefault("check_same_thread", False)
            engine_kwargs["connect_args"] = connect_args
        else:
            engine_kwargs.setdefault("pool_size", pool_size)
            engine_kwargs.setdefault("pool_pre_ping", True)

        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        # models must be imported so their tables register on Base.metadata
        from agrivision import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables and indexes ready")

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()


def check_database_health(database: Database) -> dict:
    try:
        with database.engine.connect() as conn:
            ping = conn.execute(text("SELECT 1")).scalar()
            tables = inspect(conn).get_table_names()
        return {"status": "healthy", "details": {"ping": ping, "tables": tables}}
    except Exception as e:
        logger.exception("Database health check failed")
        return {"status": "unhealthy", "details": str(e)}


# FastAPI dep
def get_db(request: Request):
    with request.app.state.database.session() as db:
        yield db
