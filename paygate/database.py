from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from paygate.config import get_settings

Base = declarative_base()


def make_engine(database_url: str):
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
    )


def make_session_factory(engine):
    # expire_on_commit=False: records are handed back to callers after the session closes
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


engine = make_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)
