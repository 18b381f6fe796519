"""
Namespace Provisioner

Creates school namespaces from the namespace template and repairs drift
in namespaces that already exist.

provision() is idempotent: it creates the namespace and every missing
table, and reports how many tables it actually created. Running it again
after success creates nothing and reports zero.

reconcile() is a repair operation expected to run many times. It adds
missing tables and columns, backfills denormalized columns, and keeps
going past individual failures, collecting them for the caller.

NOTE: Provisioning is an administrative operation. It runs on its own
connection and is not tied to any request's lifetime.
"""
import threading
import weakref
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import Column, MetaData, Table, column, select, table as table_clause, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateColumn

from schoolspace.core.exceptions import ProvisioningError, TenantNamespaceMissingError
from schoolspace.tenancy import catalog
from schoolspace.tenancy.template import SCHOOL_TEMPLATE, Backfill, NamespaceTemplate
from schoolspace.tenancy.validator import derive_namespace, require_valid_namespace
from schoolspace.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProvisionResult:
    success: bool
    namespace: Optional[str]
    tables_created: int = 0
    error: Optional[str] = None


@dataclass
class DriftIssue:
    """One table/column reconcile could not repair."""

    table: str
    column: Optional[str]
    message: str


@dataclass
class ReconcileResult:
    namespace: str
    tables_added: int = 0
    columns_added: int = 0
    backfilled: int = 0
    errors: List[DriftIssue] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.errors


class NamespaceProvisioner:
    """
    Provision and reconcile school namespaces against a template.

    One process-local lock per namespace avoids wasted work when two
    onboarding requests race inside one process; on PostgreSQL an
    advisory lock does the same across processes.
    """

    # Process-wide, shared by every instance; a lock goes once nobody holds it
    _locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
    _locks_guard = threading.Lock()

    def __init__(self, engine: Engine, template: NamespaceTemplate = SCHOOL_TEMPLATE,
                 namespace_dir: Optional[str] = None):
        self.engine = engine
        self.template = template
        self.namespace_dir = namespace_dir

    def _lock_for(self, namespace: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(namespace)
            if lock is None:
                lock = self._locks[namespace] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Provision
    # ------------------------------------------------------------------

    def provision(self, school_code: str) -> ProvisionResult:
        """
        Create the namespace for `school_code` and all its tables.

        Raises InvalidNamespaceError before any statement is issued if the
        derived identifier fails validation, and ProvisioningError (naming
        the failing table) if DDL fails. On PostgreSQL the whole run is one
        transaction, so a failure leaves no partial namespace behind.
        """
        namespace = require_valid_namespace(derive_namespace(school_code), source="school_code")

        with self._lock_for(namespace):
            tables_created = 0
            current_table = None
            try:
                with self.engine.begin() as conn:
                    catalog.lock_namespace(conn, namespace)
                    if catalog.create_namespace(conn, namespace, self.namespace_dir):
                        logger.info(f"Created namespace {namespace}", extra={"namespace": namespace})

                    present = set(catalog.existing_tables(conn, namespace))
                    bound = self.template.bind(namespace)
                    for template_table in self.template.tables:
                        if template_table.name in present:
                            continue
                        current_table = template_table.name
                        bound[template_table.name].create(conn, checkfirst=True)
                        tables_created += 1
                    current_table = None
            except SQLAlchemyError as e:
                logger.error(
                    f"Provisioning failed for {namespace}: {e}",
                    extra={"namespace": namespace},
                )
                raise ProvisioningError(namespace, table=current_table, reason=str(getattr(e, "orig", e))) from e

        logger.info(
            f"Provisioned {namespace}: {tables_created} tables created",
            extra={"namespace": namespace},
        )
        return ProvisionResult(success=True, namespace=namespace, tables_created=tables_created)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def reconcile(self, namespace: str) -> ReconcileResult:
        """
        Bring an existing namespace up to the template.

        Missing tables are created; missing columns are added with their
        template default and backfilled where the template says so. Each
        repair runs in its own transaction, so one failure never aborts
        the rest.
        """
        require_valid_namespace(namespace, source="reconcile")
        result = ReconcileResult(namespace=namespace)

        with self.engine.connect() as conn:
            if not catalog.namespace_exists(conn, namespace):
                raise TenantNamespaceMissingError(namespace=namespace)
            present = set(catalog.existing_tables(conn, namespace))

        bound = self.template.bind(namespace)

        with self._lock_for(namespace):
            for template_table in self.template.tables:
                name = template_table.name
                if name not in present:
                    self._add_table(bound[name], result)
                    continue
                self._add_missing_columns(template_table, result)

        if result.tables_added or result.columns_added:
            logger.warning(
                f"Repaired drift in {namespace}: {result.tables_added} tables, "
                f"{result.columns_added} columns, {result.backfilled} rows backfilled",
                extra={"namespace": namespace},
            )
        for issue in result.errors:
            logger.warning(
                f"Unrepaired drift in {namespace}.{issue.table}"
                f"{'.' + issue.column if issue.column else ''}: {issue.message}",
                extra={"namespace": namespace},
            )
        return result

    def reconcile_all(self) -> List[ReconcileResult]:
        """Reconcile every school namespace present in the physical catalog."""
        with self.engine.connect() as conn:
            namespaces = catalog.list_namespaces(conn)

        results = []
        for namespace in namespaces:
            try:
                results.append(self.reconcile(namespace))
            except (SQLAlchemyError, TenantNamespaceMissingError) as e:
                # Namespace vanished or the catalog read failed; keep going
                result = ReconcileResult(namespace=namespace)
                result.errors.append(DriftIssue(table="*", column=None, message=str(e)))
                results.append(result)
        logger.info(f"Reconciled {len(results)} namespaces")
        return results

    def _add_table(self, bound_table: Table, result: ReconcileResult) -> None:
        try:
            with self.engine.begin() as conn:
                bound_table.create(conn, checkfirst=True)
            result.tables_added += 1
        except SQLAlchemyError as e:
            result.errors.append(DriftIssue(table=bound_table.name, column=None, message=str(e)))

    def _add_missing_columns(self, template_table: Table, result: ReconcileResult) -> None:
        namespace = result.namespace
        try:
            with self.engine.connect() as conn:
                live = set(catalog.existing_columns(conn, namespace, template_table.name))
        except SQLAlchemyError as e:
            result.errors.append(DriftIssue(table=template_table.name, column=None, message=str(e)))
            return

        for template_column in template_table.columns:
            if template_column.name in live:
                continue
            if template_column.primary_key:
                # A table without its key is beyond repair by ALTER
                result.errors.append(DriftIssue(
                    table=template_table.name,
                    column=template_column.name,
                    message="primary key column missing",
                ))
                continue
            try:
                with self.engine.begin() as conn:
                    self._add_column(conn, namespace, template_table.name, template_column)
                result.columns_added += 1
            except SQLAlchemyError as e:
                result.errors.append(DriftIssue(
                    table=template_table.name, column=template_column.name, message=str(e)
                ))
                continue

            backfill = template_column.info.get("backfill")
            if backfill is not None:
                self._backfill(namespace, template_table.name, template_column.name, backfill, result)

    def _add_column(self, conn: Connection, namespace: str, table_name: str, template_column: Column) -> None:
        require_valid_namespace(namespace, source="add_column")
        default = template_column.server_default.arg if template_column.server_default is not None else None
        # NOT NULL without a default cannot be added to a populated table
        nullable = template_column.nullable or default is None
        new_column = Column(
            template_column.name,
            template_column.type,
            nullable=nullable,
            server_default=default,
        )
        # Attach to a throwaway table so the dialect can render it
        holder = Table(table_name, MetaData(), new_column, schema=namespace)
        preparer = conn.dialect.identifier_preparer
        column_ddl = CreateColumn(new_column).compile(dialect=conn.dialect)
        conn.exec_driver_sql(f"ALTER TABLE {preparer.format_table(holder)} ADD COLUMN {column_ddl}")
        logger.warning(
            f"Added missing column {namespace}.{table_name}.{template_column.name}",
            extra={"namespace": namespace},
        )

    def _backfill(self, namespace: str, table_name: str, column_name: str,
                  backfill: Backfill, result: ReconcileResult) -> None:
        """Best-effort copy of a denormalized value into a newly added column."""
        target = table_clause(
            table_name,
            column(column_name),
            column(backfill.local_key),
            schema=namespace,
        )
        source = table_clause(
            backfill.source_table,
            column(backfill.source_column),
            column(backfill.source_key),
            schema=None if backfill.catalog else namespace,
        )
        value = (
            select(source.c[backfill.source_column])
            .where(source.c[backfill.source_key] == target.c[backfill.local_key])
            .scalar_subquery()
        )
        stmt = (
            update(target)
            .values({column_name: value})
            .where(target.c[column_name].is_(None))
            .where(target.c[backfill.local_key].is_not(None))
        )
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).rowcount
            result.backfilled += max(rows or 0, 0)
        except SQLAlchemyError as e:
            result.errors.append(DriftIssue(
                table=table_name, column=column_name, message=f"backfill failed: {e}"
            ))
