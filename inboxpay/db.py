from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inboxpay.config import settings


class Base(DeclarativeBase):
    pass


def is_sqlite_url(url: str) -> bool:
    return make_url(url).drivername.startswith("sqlite")


def build_engine(url: str, **kwargs):
    if is_sqlite_url(url):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if make_url(url).database in (None, "", ":memory:"):
            # one shared connection, otherwise every thread gets its own empty database
            kwargs.setdefault("poolclass", StaticPool)
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _sqlite_foreign_keys(dbapi_connection, connection_record):
            # cascade deletes rely on this
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(url, pool_pre_ping=True, **kwargs)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
