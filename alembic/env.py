import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _database_url() -> str:
    # an explicit set_main_option (tests, scripts) wins over the environment
    configured = config.get_main_option("sqlalchemy.url")
    if configured and configured != "sqlite:///./wastewatch.db":
        return configured
    for name in ("WASTEWATCH_DATABASE_URL", "DATABASE_URL", "SQLALCHEMY_DATABASE_URL"):
        value = os.getenv(name)
        if value:
            return value
    return configured


config.set_main_option("sqlalchemy.url", _database_url())


def _target_metadata():
    # imported late: wastewatch.app.db builds its engine from the environment at import
    os.environ.setdefault("DATABASE_URL", config.get_main_option("sqlalchemy.url"))
    from wastewatch.app import models  # noqa: F401
    from wastewatch.app.db import Base

    return Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=_target_metadata(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=_target_metadata(),
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
