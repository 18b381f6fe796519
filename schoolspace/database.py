"""
Database Configuration and Session Management

SQLAlchemy setup for the shared database. The system-wide catalog
(schools, users, memberships) lives in the default schema; every school
namespace is a separate PostgreSQL schema (or an attached database when
running on SQLite in development and tests).

NOTE: No connection ever carries a search_path. Tenant statements are
schema-qualified per statement by the query executor, so a pooled
connection can be reused by any request without leaking state.
"""
import glob
import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from schoolspace.config import get_settings
from schoolspace.tenancy.validator import is_valid_namespace
import logging

logger = logging.getLogger(__name__)

settings = get_settings()


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(database_url: str, namespace_dir: str = None) -> Engine:
    """
    Create an engine for the shared database.

    PostgreSQL gets a QueuePool sized from settings. SQLite in-memory
    databases get a StaticPool so every session sees the same connection,
    and with it the same attached namespaces.
    """
    if is_sqlite_url(database_url):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            engine = create_engine(
                database_url,
                poolclass=StaticPool,
                connect_args=connect_args,
                echo=settings.DEBUG,
            )
        else:
            engine = create_engine(database_url, connect_args=connect_args, echo=settings.DEBUG)
    else:
        engine = create_engine(
            database_url,
            poolclass=QueuePool,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,  # Verify connections before using (handles stale connections)
            echo=settings.DEBUG,
        )

    _install_connect_hook(engine, database_url, namespace_dir)
    return engine


def _install_connect_hook(engine: Engine, database_url: str, namespace_dir: str = None) -> None:
    @event.listens_for(engine, "connect")
    def configure_connection(dbapi_connection, connection_record):
        """Set connection-level configuration on new connections."""
        cursor = dbapi_connection.cursor()
        if database_url.startswith("postgresql"):
            cursor.execute("SET TIME ZONE 'UTC'")
        elif is_sqlite_url(database_url):
            cursor.execute("PRAGMA foreign_keys=ON")
            # Re-attach every namespace file so a fresh pooled connection
            # sees the same schools as its siblings.
            if namespace_dir:
                for path in sorted(glob.glob(os.path.join(namespace_dir, "school_*.db"))):
                    name = os.path.splitext(os.path.basename(path))[0]
                    if not is_valid_namespace(name):
                        logger.warning(f"Skipping namespace file with an invalid name: {path}")
                        continue
                    cursor.execute(f"ATTACH DATABASE ? AS {name}", (path,))
        cursor.close()
        logger.debug("New database connection established")


engine = build_engine(settings.DATABASE_URL, settings.SQLITE_NAMESPACE_DIR)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)

# Base class for the catalog models
Base = declarative_base()


def init_db(bind: Engine = None):
    """
    Create the catalog tables.

    School namespaces are not created here; they are provisioned from the
    namespace template by the provisioner.
    """
    import schoolspace.models  # noqa: F401  (registers the catalog models)

    logger.warning("init_db() called - use migrations for the catalog in production!")
    Base.metadata.create_all(bind=bind or engine)
