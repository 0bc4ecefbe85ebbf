from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event, func, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .alembic_utils import ensure_up_to_date
from .models import BASES
from .settings import get_settings

PURPOSES = ("auth", "hr", "payroll")

# Module-level singletons, one per database purpose
_engines: dict[str, Engine] = {}
_sessionmakers: dict[str, sessionmaker] = {}


logger = logging.getLogger("salarysync.db")


def _check_purpose(purpose: str) -> str:
    if purpose not in PURPOSES:
        raise ValueError(f"unknown database purpose: {purpose}")
    return purpose


def resolve_database_url(purpose: str) -> str:
    _check_purpose(purpose)
    url = get_settings().database_url_for(purpose)
    if url:
        return url
    # Default to a repo-local SQLite file per purpose for developer convenience.
    root = Path(__file__).resolve().parents[1]
    var_dir = root / "var"
    var_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{(var_dir / f'{purpose}.db').resolve()}"


def get_engine(purpose: str = "auth", echo: bool = False) -> Engine:
    """Return the singleton SQLAlchemy engine for a database purpose."""
    _check_purpose(purpose)
    engine = _engines.get(purpose)
    if engine is not None:
        return engine
    database_url = resolve_database_url(purpose)
    url = make_url(database_url)
    kwargs: dict[str, Any] = {}
    is_sqlite = url.get_backend_name() == "sqlite"
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            # One shared connection so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool
        else:
            logger.warning(
                "SQLite backend in use for %s database; use PostgreSQL in production.", purpose
            )
    else:
        kwargs["pool_pre_ping"] = True
    engine = create_engine(database_url, echo=echo, future=True, **kwargs)
    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[unused-argument]
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
                cursor.execute("PRAGMA synchronous=NORMAL;")
                cursor.execute("PRAGMA foreign_keys=ON;")
            finally:
                cursor.close()
    _engines[purpose] = engine
    return engine


def get_sessionmaker(purpose: str = "auth") -> sessionmaker:
    """Return the sessionmaker bound to a database purpose."""
    _check_purpose(purpose)
    maker = _sessionmakers.get(purpose)
    if maker is None:
        maker = sessionmaker(
            autocommit=False, autoflush=False, bind=get_engine(purpose), future=True, expire_on_commit=False
        )
        _sessionmakers[purpose] = maker
    return maker


@contextmanager
def session_scope(purpose: str = "auth") -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    session = get_sessionmaker(purpose)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def fastapi_session(purpose: str = "auth") -> Generator[Session, None, None]:
    """FastAPI dependency body that yields a database session."""
    session = get_sessionmaker(purpose)()
    try:
        yield session
    finally:
        session.close()


def init_databases(auto_apply_ddl: Optional[bool] = None, enforce_alembic: Optional[bool] = None) -> dict[str, Engine]:
    """Ensure the three databases are ready and return their engines."""
    settings = get_settings()
    auto = settings.auto_apply_ddl if auto_apply_ddl is None else auto_apply_ddl
    enforce = settings.enforce_alembic_migrations if enforce_alembic is None else enforce_alembic

    engines: dict[str, Engine] = {}
    for purpose in PURPOSES:
        engine = get_engine(purpose)
        if auto:
            BASES[purpose].metadata.create_all(bind=engine)
        elif enforce:
            ensure_up_to_date(engine, purpose)
        engines[purpose] = engine
    return engines


def check_connections() -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for purpose in PURPOSES:
        try:
            with get_engine(purpose).connect() as conn:
                conn.execute(text("SELECT 1"))
            out[purpose] = {"connected": True, "error": None}
        except Exception as exc:
            logger.error("Database %s unreachable: %s", purpose, exc)
            out[purpose] = {"connected": False, "error": str(exc)}
    return out


def database_statistics() -> dict[str, dict[str, int]]:
    """Row counts of the main tables, grouped by database."""
    from .models import Company, Employee, PayrollRecord, PayrollRun, Plan, Subscription, User, UserCompany

    tables = {
        "auth": {"users": User, "companies": Company, "user_companies": UserCompany, "plans": Plan, "subscriptions": Subscription},
        "hr": {"employees": Employee},
        "payroll": {"payroll_runs": PayrollRun, "payroll_records": PayrollRecord},
    }
    stats: dict[str, dict[str, int]] = {}
    for purpose, models in tables.items():
        with session_scope(purpose) as session:
            stats[purpose] = {
                name: int(session.scalar(select(func.count()).select_from(model)) or 0)
                for name, model in models.items()
            }
    return stats


def reset_engines() -> None:
    """Dispose engines and forget sessionmakers (tests, CLI)."""
    for engine in list(_engines.values()):
        try:
            engine.dispose()
        except Exception as exc:
            logger.debug("engine dispose failed: %s", exc)
    _engines.clear()
    _sessionmakers.clear()
