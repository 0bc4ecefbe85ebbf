from __future__ import annotations

from pathlib import Path

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def alembic_config(purpose: str) -> Config:
    """Config for one database's migration environment (ini section = purpose)."""
    if not ALEMBIC_INI.exists():
        raise RuntimeError(f"Alembic config not found at {ALEMBIC_INI}")
    return Config(str(ALEMBIC_INI), ini_section=purpose)


def ensure_up_to_date(engine, purpose: str) -> None:
    """Raise if the database revision is behind the latest Alembic head."""
    script = ScriptDirectory.from_config(alembic_config(purpose))
    expected_heads = set(script.get_heads())

    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        current_heads = set(context.get_current_heads() or [])

    if not current_heads:
        raise RuntimeError(
            f"{purpose} database has no Alembic revision. "
            f"Run 'alembic --name {purpose} upgrade head' before starting the application."
        )

    if current_heads != expected_heads:
        raise RuntimeError(
            f"Alembic migration mismatch for {purpose}. Database heads={current_heads}, expected={expected_heads}. "
            f"Apply pending migrations with 'alembic --name {purpose} upgrade head'."
        )


def run_migrations(purpose: str) -> None:
    """Body of each environment's env.py: migrate one database online or offline."""
    from alembic import context

    from core.db import resolve_database_url
    from core.models import BASES

    url = resolve_database_url(purpose)
    target_metadata = BASES[purpose].metadata

    if context.is_offline_mode():
        context.configure(url=url, target_metadata=target_metadata, literal_binds=True, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()
        return

    from sqlalchemy import create_engine

    connectable = create_engine(url, future=True)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()
