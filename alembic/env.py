# Alembic environment for the Influence Chat schema
# The database URL comes from DATABASE_URL (via database.config), never from an ini file

from logging.config import fileConfig
from sqlalchemy import pool, create_engine
from alembic import context

from database.config import DATABASE_URL
from database.models import Base
from database import chat_models, ledger_models  # noqa: F401  (register chat and ledger tables)

config = context.config

# Interpret the config file for Python logging, when one is given
if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline():
    """Emit SQL to stdout without a live connection."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = create_engine(DATABASE_URL, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
