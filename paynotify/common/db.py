"""Database bootstrap helpers shared by the API and worker processes."""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def make_engine(dsn: str, **kwargs) -> Engine:
    """Create the process engine; callers own its lifecycle (`dispose`)."""

    return create_engine(dsn, pool_pre_ping=True, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables registered on `Base` that do not exist yet."""

    # Model modules register their tables on import.
    import paynotify.services.notification.models  # noqa: F401
    import paynotify.services.payments.models  # noqa: F401

    Base.metadata.create_all(engine)
