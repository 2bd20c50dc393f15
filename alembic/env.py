import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

# Load .env file
load_dotenv()

# Alembic Config object
config = context.config

# An explicit sqlalchemy.url (tests set one programmatically) wins over the environment
database_url = config.get_main_option("sqlalchemy.url") or (
    os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URI") or "sqlite:///./entitlements.db"
)

# Never echo credentials
if "@" in database_url:
    url_for_display = f"{database_url.split('://')[0]}://***@{database_url.split('@')[1]}"
else:
    url_for_display = database_url
print(f"[Alembic] Database: {url_for_display}")

# Force the synchronous psycopg2 driver for migrations
if database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql+psycopg2://", 1)
elif database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+psycopg2://", 1)
elif "postgresql+psycopg:" in database_url:
    database_url = database_url.replace("postgresql+psycopg:", "postgresql+psycopg2:")

config.set_main_option("sqlalchemy.url", database_url)

# Set up logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# Migrations are hand-written; there is no ORM metadata to autogenerate from
target_metadata = None


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = database_url
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


# Entry point
if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
