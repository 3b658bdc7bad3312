from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from decouple import config

from .base import Base


def database_url() -> str:
    url = config("DATABASE_URL", default=None)
    if url:
        return url
    return "postgresql://{user}:{password}@{host}:{port}/{db_name}".format(
        host=config("DB_HOST", default="db"),
        port=config("DB_PORT", default="5432"),
        db_name=config("POSTGRES_DB", default="marketplace"),
        user=config("DB_USER", default="marketplace"),
        password=config("DB_PASS", default="marketplace"),
    )


engine = create_engine(
    database_url(),
    pool_pre_ping=True,
    pool_recycle=3600
)

SessionFactory = sessionmaker(
    autoflush=False,
    autocommit=False,
    bind=engine
)

session = scoped_session(SessionFactory)


def get_session():
    """Create a new database session"""
    return SessionFactory()


def init_db():
    # Register the mapped classes before creating tables.
    from . import models, sweep  # noqa: F401
    Base.metadata.create_all(engine)
