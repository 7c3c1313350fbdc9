from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def create_cache_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite:///"):
        connect_args["check_same_thread"] = False
        db_path = url[len("sqlite:///"):]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args, future=True)


def make_session_factory(url: str) -> sessionmaker:
    engine = create_cache_engine(url)
    # import for table registration
    from wsscan import models  # noqa: F401

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
