from __future__ import annotations

from logging.config import fileConfig

from alembic import context

from core.alembic_utils import run_migrations

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)

run_migrations("auth")
