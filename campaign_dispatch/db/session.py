from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from campaign_dispatch.core.config import settings


def build_engine(database_url: str) -> Engine:
    """Create an engine with backend-specific connection arguments."""
    connect_args = {}
    backend = make_url(database_url).get_backend_name()
    if backend.startswith("postgresql"):
        connect_args["options"] = "-c timezone=utc"
    elif backend == "sqlite":
        # Queues share one engine across asyncio tasks
        connect_args["check_same_thread"] = False
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_session_factory(engine)


def create_all(bind: Engine | None = None) -> None:
    """Create every table (local/test databases; production uses Alembic)."""
    from campaign_dispatch.db.base import Base
    import campaign_dispatch.db.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
