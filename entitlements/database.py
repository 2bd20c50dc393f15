import logging
import sqlite3
from datetime import datetime

from sqlalchemy import create_engine

from entitlements import config

logger = logging.getLogger(__name__)

# Get connection URL from config
connection_url = config.get_settings().POSTGRES_URI

# Render hands out postgres:// URLs; SQLAlchemy wants an explicit driver
if connection_url.startswith("postgres://"):
    connection_url = connection_url.replace("postgres://", "postgresql+psycopg2://", 1)
elif "postgresql+psycopg:" in connection_url:
    connection_url = connection_url.replace("postgresql+psycopg:", "postgresql+psycopg2:")

if connection_url.startswith("sqlite"):
    # sqlite3's built-in datetime adapter is deprecated; store ISO-8601 text
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(" "))

    # Local runs and tests; the ASGI test client calls in from another thread
    engine = create_engine(
        connection_url,
        connect_args={"check_same_thread": False},
        echo=False
    )
else:
    # Add SSL mode for Supabase if not already present
    if "supabase.com" in connection_url and "sslmode=" not in connection_url:
        separator = "&" if "?" in connection_url else "?"
        connection_url = f"{connection_url}{separator}sslmode=require"

    engine = create_engine(
        connection_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=3,
        max_overflow=7,
        pool_recycle=300,
        echo=False  # Set to True for SQL debugging
    )

logger.info(f"[Database] SQLAlchemy engine created for {engine.url.get_backend_name()}")
