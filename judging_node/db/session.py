from __future__ import annotations

import os

from sqlmodel import Session, create_engine


def database_url() -> str:
    explicit = os.getenv("DATABASE_URL", "").strip()
    if explicit:
        return explicit
    user = os.getenv("POSTGRES_USER", "judging")
    password = os.getenv("POSTGRES_PASSWORD", "judging")
    host = os.getenv("POSTGRES_HOST", "postgres")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "judging")
    return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{db}"


engine = create_engine(database_url(), pool_pre_ping=True)

_initialized = False


def create_session() -> Session:
    global _initialized
    if not _initialized:
        from judging_node.db.init_db import init_db
        init_db()
        _initialized = True
    return Session(engine)
