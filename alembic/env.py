from logging.config import fileConfig

from sqlalchemy import create_engine, pool, text

from alembic import context
from src.config.settings import DatabaseSettings
from src.constants import DB_SCHEMA
from src.store.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Same DATABASE_* settings as the app, but with the sync psycopg driver.
_db = DatabaseSettings()
DATABASE_URL = (
    f"postgresql+psycopg://{_db.user}:{_db.password}@{_db.host}:{_db.port}/{_db.name}"
)

target_metadata = Base.metadata


def include_name(name, type_, parent_names):
    """Only the handoff schema is managed here."""
    if type_ == "schema":
        return name == DB_SCHEMA
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table_schema=DB_SCHEMA,
        include_schemas=True,
        include_name=include_name,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(DATABASE_URL, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        connection.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA}"))
        connection.commit()

        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
