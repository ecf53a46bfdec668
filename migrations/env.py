"""
Alembic 环境配置
- 使用 aeo.models 的 Base.metadata；优先读取环境变量/应用配置中的 DATABASE_URL，回退到 alembic.ini
- SQLite 使用 batch 模式
"""
from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _get_url() -> str:
    env_url = os.getenv("DATABASE_URL")
    if env_url:
        return env_url
    from aeo.config import settings  # noqa: WPS433

    return str(settings.DATABASE_URL or config.get_main_option("sqlalchemy.url"))


from aeo.models import Base  # noqa: E402, WPS433

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=_get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = _get_url()
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=(connection.dialect.name == "sqlite"),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
