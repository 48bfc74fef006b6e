from datetime import datetime, timezone
from sqlalchemy import create_engine, DateTime
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator

from protee.config.settings import settings


def make_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})  # SQLite specific
    return create_engine(url, echo=False, **kwargs)


def make_session_factory(bind: Engine) -> sessionmaker:
    # Rows handed out by the local store outlive their session.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(settings.database_url)

SessionLocal = make_session_factory(engine)

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, also on backends that drop the offset (SQLite)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def init_db(bind: Engine | None = None):
    """Create all tables. Call once on startup."""
    import protee.models.tracking  # noqa: F401  register tracking models
    import protee.sync.models  # noqa: F401  register sync bookkeeping models
    Base.metadata.create_all(bind=bind or engine)

