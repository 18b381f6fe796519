"""
Physical catalog helpers.

What actually exists in the database, as opposed to what the registry
says should exist. PostgreSQL namespaces are schemas; on SQLite
(development and tests) they are attached databases.

Every function that splices a namespace into statement text validates it
first. Existence checks go through the SQLAlchemy inspector, which binds
the name as a parameter.
"""
import os
from typing import List, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection

from schoolspace.tenancy.validator import NAMESPACE_PREFIX, is_valid_namespace, require_valid_namespace


def is_sqlite(conn: Connection) -> bool:
    return conn.dialect.name == "sqlite"


def is_postgresql(conn: Connection) -> bool:
    return conn.dialect.name == "postgresql"


def namespace_exists(conn: Connection, namespace: str) -> bool:
    """True if the namespace physically exists. Invalid identifiers never exist."""
    if not is_valid_namespace(namespace):
        return False
    return namespace in inspect(conn).get_schema_names()


def list_namespaces(conn: Connection) -> List[str]:
    """Every physical namespace carrying the school prefix, sorted."""
    return sorted(
        name for name in inspect(conn).get_schema_names()
        if name.startswith(NAMESPACE_PREFIX)
    )


def create_namespace(conn: Connection, namespace: str, namespace_dir: Optional[str] = None) -> bool:
    """
    Create the namespace if absent. Returns True if it was created.

    Safe to call concurrently on PostgreSQL (IF NOT EXISTS). SQLite cannot
    ATTACH inside a transaction, so callers on SQLite must not have
    issued DML on `conn` yet.
    """
    require_valid_namespace(namespace, source="create_namespace")
    if namespace_exists(conn, namespace):
        return False

    if is_sqlite(conn):
        path = os.path.join(namespace_dir, f"{namespace}.db") if namespace_dir else ":memory:"
        conn.exec_driver_sql(f"ATTACH DATABASE ? AS {namespace}", (path,))
    else:
        conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {namespace}"))
    return True


def lock_namespace(conn: Connection, namespace: str) -> None:
    """
    Serialize provisioning of one namespace across processes.

    PostgreSQL transaction-scoped advisory lock, released on commit or
    rollback. No-op elsewhere; idempotent DDL still converges.
    """
    require_valid_namespace(namespace, source="lock_namespace")
    if is_postgresql(conn):
        conn.execute(text("SELECT pg_advisory_xact_lock(hashtext(:namespace))"), {"namespace": namespace})


def existing_tables(conn: Connection, namespace: str) -> List[str]:
    require_valid_namespace(namespace, source="existing_tables")
    return inspect(conn).get_table_names(schema=namespace)


def existing_columns(conn: Connection, namespace: str, table: str) -> List[str]:
    require_valid_namespace(namespace, source="existing_columns")
    return [c["name"] for c in inspect(conn).get_columns(table, schema=namespace)]
