# privacy_advisor/db/session.py

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from privacy_advisor.core.config import DATABASE_URL


def _validate_db_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is empty. Set it in .env or your environment.")

    # accept sqlite / postgres
    if not (url.startswith("sqlite") or url.startswith("postgresql")):
        raise RuntimeError(f"Invalid DATABASE_URL scheme: {url!r}")

    return url


def make_engine(url: str):
    url = _validate_db_url(url)
    connect_args = {}
    if url.startswith("sqlite"):
        # evidence writes happen from worker threads
        connect_args = {"check_same_thread": False, "timeout": 15}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(bind) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


DB_URL = _validate_db_url(DATABASE_URL)

engine = make_engine(DB_URL)
SessionLocal = make_session_factory(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
