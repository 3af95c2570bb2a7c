from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DatabaseSettings

logger = logging.getLogger(__name__)

Base = declarative_base()


def resolve_database_url(settings: DatabaseSettings) -> str:
    """Prefer an explicit DATABASE_URL; otherwise construct one for Postgres."""
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    user = os.getenv("DB_USER")
    password = os.getenv("DB_PASSWORD")
    db_name = os.getenv("DB_NAME", "postgres")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT", "5432")
    if user and password and host:
        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{db_name}"

    return settings.url


def build_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    # Importing here registers the tables on Base.metadata.
    from . import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("db_initialized", extra={"dialect": engine.dialect.name})
