"""Database engines and sessions.

- Read-only API handlers use AsyncSession (aiosqlite / asyncpg).
- The sync pipeline, repair tools, Celery tasks and Alembic use the sync Session (psycopg).
"""

from __future__ import annotations

import random
import ssl
import time
from pathlib import Path
from typing import AsyncGenerator, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _is_supabase_host(url: URL) -> bool:
    host = (url.host or "").lower()
    return "supabase" in host


def _pool_kwargs() -> dict:
    return {
        "pool_size": max(1, settings.db_pool_size),
        "max_overflow": max(0, settings.db_max_overflow),
        "pool_timeout": max(1, settings.db_pool_timeout_s),
        "pool_recycle": max(0, settings.db_pool_recycle_s),
    }


def resolve_backend_path(maybe_path: str) -> str:
    """Resolve a settings path relative to backend/ unless already absolute."""
    p = Path(maybe_path)
    if p.is_absolute():
        return str(p)
    backend_dir = Path(__file__).resolve().parents[1]
    return str((backend_dir / p).resolve())


def _supabase_ssl_context() -> ssl.SSLContext:
    cafile = settings.supabase_ssl_ca_file
    if not cafile:
        return ssl.create_default_context()
    ctx = ssl.create_default_context(cafile=resolve_backend_path(cafile))
    # The Supabase CA lacks a key usage extension; strict X.509 mode rejects it.
    strict_flag = getattr(ssl, "VERIFY_X509_STRICT", None)
    if strict_flag is not None:
        ctx.verify_flags &= ~strict_flag
    return ctx


raw_url: URL = make_url(settings.database_url)
# Supavisor transaction mode (port 6543) does not support prepared statements.
is_transaction_pooler: bool = raw_url.port == 6543

# ----------------------------
# Sync engine/session (pipeline, workers)
# ----------------------------

if _is_sqlite(raw_url):
    sync_engine = create_engine(
        raw_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(0.0, settings.sqlite_busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()
else:
    sync_url = raw_url
    if sync_url.drivername == "postgresql":
        sync_url = sync_url.set(drivername="postgresql+psycopg")
    sync_engine = create_engine(
        sync_url,
        connect_args={"prepare_threshold": None} if is_transaction_pooler else {},
        pool_pre_ping=True,
        **_pool_kwargs(),
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)

# ----------------------------
# Async engine/session (API reads)
# ----------------------------

async_connect_args: dict = {}
async_url = raw_url
if _is_sqlite(async_url):
    if async_url.drivername == "sqlite":
        async_url = async_url.set(drivername="sqlite+aiosqlite")
else:
    if async_url.drivername == "postgresql":
        async_url = async_url.set(drivername="postgresql+asyncpg")
    if _is_supabase_host(async_url):
        async_connect_args["ssl"] = _supabase_ssl_context()
        # asyncpg rejects libpq-style sslmode; SSL is supplied via connect_args.
        query = dict(async_url.query)
        query.pop("sslmode", None)
        async_url = async_url.set(query=query)
    if is_transaction_pooler:
        async_connect_args["statement_cache_size"] = 0

async_engine_kwargs: dict = {"pool_pre_ping": True, "connect_args": async_connect_args}
if not _is_sqlite(async_url):
    async_engine_kwargs.update(_pool_kwargs())

async_engine = create_async_engine(async_url, **async_engine_kwargs)
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)


def init_db():
    """Create tables on SQLite. Postgres schema is managed by Alembic."""
    if not _is_sqlite(raw_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=sync_engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession."""
    async with AsyncSessionLocal() as session:
        yield session


def get_sync_db() -> Generator:
    """Dependency that yields a sync DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "sqlite_busy" in msg


def commit_with_retry(db: Session, *, max_retries: int = 6, base_sleep_s: float = 0.05) -> None:
    """Commit, retrying with backoff while SQLite reports the database as locked."""
    attempt = 0
    while True:
        try:
            db.commit()
            return
        except OperationalError as e:
            db.rollback()
            if attempt >= max_retries or not _is_sqlite_locked_error(e):
                raise
            time.sleep(min(2.0, base_sleep_s * (2 ** attempt)) + random.uniform(0, 0.05))
            attempt += 1
