from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .settings import settings

# Single source of truth for Base
Base = declarative_base()


def build_engine(db_url: str, **kwargs: Any) -> Engine:
    if db_url.startswith("sqlite"):
        # the store is touched from the event loop thread and from test threads alike
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(db_url, future=True, **kwargs)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


engine = build_engine(settings.db_url)

SessionLocal = build_session_factory(engine)
