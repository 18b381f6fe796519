"""Tests for namespace provisioning and drift reconciliation."""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, Text, inspect, text

from schoolspace.core.exceptions import (
    InvalidNamespaceError,
    ProvisioningError,
    TenantNamespaceMissingError,
)
from schoolspace.models import User
from schoolspace.tenancy import catalog
from schoolspace.tenancy.provisioner import NamespaceProvisioner
from schoolspace.tenancy.template import SCHOOL_TEMPLATE, Backfill, NamespaceTemplate


def _columns(engine, namespace: str, table: str):
    return {c["name"]: c for c in inspect(engine).get_columns(table, schema=namespace)}


def _old_template() -> NamespaceTemplate:
    """A school layout from before class_name, points and nickname existed."""
    metadata = MetaData()
    Table(
        "classes",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("class_name", String(100), nullable=False),
    )
    Table(
        "students",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("first_name", String(100), nullable=False),
        Column("class_id", Integer, ForeignKey("classes.id"), nullable=True),
    )
    Table(
        "teachers",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("user_id", Integer, nullable=True),
    )
    return NamespaceTemplate(metadata)


def _new_template() -> NamespaceTemplate:
    metadata = MetaData()
    Table(
        "classes",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("class_name", String(100), nullable=False),
    )
    Table(
        "students",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("first_name", String(100), nullable=False),
        Column("class_id", Integer, ForeignKey("classes.id"), nullable=True),
        Column(
            "class_name",
            String(100),
            nullable=True,
            info={"backfill": Backfill("classes", "class_name", local_key="class_id")},
        ),
        Column("points", Integer, nullable=False, server_default=text("0")),
        # NOT NULL without a default; can only be added as nullable
        Column("nickname", String(50), nullable=False),
    )
    Table(
        "teachers",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("user_id", Integer, nullable=True),
        Column(
            "email",
            String(255),
            nullable=True,
            info={"backfill": Backfill("users", "email", local_key="user_id", catalog=True)},
        ),
    )
    Table(
        "notes",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("body", Text, nullable=True),
    )
    return NamespaceTemplate(metadata)


class TestProvision:
    """Tests for NamespaceProvisioner.provision."""

    def test_creates_every_template_table(self, engine, provisioner: NamespaceProvisioner) -> None:
        result = provisioner.provision("LEAR_1291")

        assert result.success is True
        assert result.namespace == "school_lear_1291"
        assert result.tables_created == len(SCHOOL_TEMPLATE.tables)
        tables = set(inspect(engine).get_table_names(schema="school_lear_1291"))
        assert tables == set(SCHOOL_TEMPLATE.table_names)

    def test_second_run_creates_nothing(self, engine, provisioner: NamespaceProvisioner) -> None:
        first = provisioner.provision("abc")
        before = {
            name: set(_columns(engine, "school_abc", name))
            for name in SCHOOL_TEMPLATE.table_names
        }

        second = provisioner.provision("abc")

        assert first.tables_created > 0
        assert second.success is True
        assert second.tables_created == 0
        after = {
            name: set(_columns(engine, "school_abc", name))
            for name in SCHOOL_TEMPLATE.table_names
        }
        assert after == before

    def test_recreates_only_missing_tables(self, engine, provisioner: NamespaceProvisioner) -> None:
        provisioner.provision("abc")
        with engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE school_abc.audit_log")

        result = provisioner.provision("abc")

        assert result.tables_created == 1
        assert "audit_log" in inspect(engine).get_table_names(schema="school_abc")

    def test_concurrent_provisioning_converges(self, engine) -> None:
        workers = 4
        barrier = threading.Barrier(workers)
        results, errors = [], []

        def onboard() -> None:
            barrier.wait()
            try:
                results.append(NamespaceProvisioner(engine).provision("race"))
            except Exception as e:  # noqa: BLE001  (reported below)
                errors.append(e)

        threads = [threading.Thread(target=onboard) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        assert len(results) == workers
        assert all(r.success and r.namespace == "school_race" for r in results)
        assert sum(r.tables_created for r in results) == len(SCHOOL_TEMPLATE.tables)
        assert set(inspect(engine).get_table_names(schema="school_race")) == set(SCHOOL_TEMPLATE.table_names)

    def test_invalid_code_issues_no_statements(self, engine, provisioner: NamespaceProvisioner) -> None:
        with pytest.raises(InvalidNamespaceError):
            provisioner.provision("bad code!")

        with engine.connect() as conn:
            assert catalog.list_namespaces(conn) == []

    def test_failure_names_the_table(self, engine) -> None:
        metadata = MetaData()
        Table("alpha", metadata, Column("id", Integer, primary_key=True), Column("x", Integer),
              Index("ix_clash", "x"))
        Table("beta", metadata, Column("id", Integer, primary_key=True), Column("y", Integer),
              Index("ix_clash", "y"))
        provisioner = NamespaceProvisioner(engine, template=NamespaceTemplate(metadata))

        with pytest.raises(ProvisioningError) as exc_info:
            provisioner.provision("clash")

        assert exc_info.value.namespace == "school_clash"
        assert exc_info.value.table == "beta"
        assert "beta" in exc_info.value.detail


class TestReconcile:
    """Tests for NamespaceProvisioner.reconcile."""

    @pytest.fixture
    def drifted(self, engine) -> str:
        NamespaceProvisioner(engine, template=_old_template()).provision("drift")
        with engine.begin() as conn:
            conn.exec_driver_sql("INSERT INTO school_drift.classes (id, class_name) VALUES (1, '7A')")
            conn.exec_driver_sql("INSERT INTO school_drift.classes (id, class_name) VALUES (2, '8B')")
            conn.exec_driver_sql(
                "INSERT INTO school_drift.students (id, first_name, class_id) VALUES (1, 'Ada', 1)"
            )
            conn.exec_driver_sql(
                "INSERT INTO school_drift.students (id, first_name, class_id) VALUES (2, 'Alan', 2)"
            )
            conn.exec_driver_sql(
                "INSERT INTO school_drift.students (id, first_name, class_id) VALUES (3, 'Grace', NULL)"
            )
        return "school_drift"

    def test_adds_missing_tables_and_columns(self, engine, drifted: str) -> None:
        result = NamespaceProvisioner(engine, template=_new_template()).reconcile(drifted)

        assert result.clean, result.errors
        assert result.tables_added == 1
        assert result.columns_added == 4
        assert "notes" in inspect(engine).get_table_names(schema=drifted)
        assert {"class_name", "points", "nickname"} <= set(_columns(engine, drifted, "students"))

    def test_not_null_without_default_is_added_nullable(self, engine, drifted: str) -> None:
        NamespaceProvisioner(engine, template=_new_template()).reconcile(drifted)

        columns = _columns(engine, drifted, "students")
        assert columns["nickname"]["nullable"] is True
        assert columns["points"]["nullable"] is False

    def test_new_column_gets_template_default(self, engine, drifted: str) -> None:
        NamespaceProvisioner(engine, template=_new_template()).reconcile(drifted)

        with engine.connect() as conn:
            points = conn.exec_driver_sql("SELECT points FROM school_drift.students ORDER BY id").scalars().all()
        assert points == [0, 0, 0]

    def test_backfills_denormalized_column(self, engine, drifted: str) -> None:
        result = NamespaceProvisioner(engine, template=_new_template()).reconcile(drifted)

        with engine.connect() as conn:
            rows = conn.exec_driver_sql(
                "SELECT id, class_name FROM school_drift.students ORDER BY id"
            ).all()
        assert [tuple(r) for r in rows] == [(1, "7A"), (2, "8B"), (3, None)]
        assert result.backfilled == 2

    def test_backfills_from_catalog(self, engine, db, drifted: str) -> None:
        user = User(email="ada@example.org", name="Ada", role="teacher")
        db.add(user)
        db.commit()
        with engine.begin() as conn:
            conn.exec_driver_sql(
                f"INSERT INTO school_drift.teachers (id, user_id) VALUES (1, {int(user.id)})"
            )

        NamespaceProvisioner(engine, template=_new_template()).reconcile(drifted)

        with engine.connect() as conn:
            email = conn.exec_driver_sql("SELECT email FROM school_drift.teachers WHERE id = 1").scalar()
        assert email == "ada@example.org"

    def test_converges(self, engine, drifted: str) -> None:
        provisioner = NamespaceProvisioner(engine, template=_new_template())
        provisioner.reconcile(drifted)

        second = provisioner.reconcile(drifted)

        assert second.clean
        assert second.tables_added == 0
        assert second.columns_added == 0
        assert second.backfilled == 0

    def test_missing_namespace(self, provisioner: NamespaceProvisioner) -> None:
        with pytest.raises(TenantNamespaceMissingError):
            provisioner.reconcile("school_nowhere")

    def test_invalid_namespace(self, provisioner: NamespaceProvisioner) -> None:
        with pytest.raises(InvalidNamespaceError):
            provisioner.reconcile("school_x; DROP TABLE users")

    def test_missing_primary_key_is_reported_not_fatal(self, engine) -> None:
        metadata = MetaData()
        Table("ledger", metadata, Column("entry", Integer))
        NamespaceProvisioner(engine, template=NamespaceTemplate(metadata)).provision("pk")

        metadata = MetaData()
        Table("ledger", metadata, Column("id", Integer, primary_key=True), Column("entry", Integer),
              Column("memo", String(20)))
        result = NamespaceProvisioner(engine, template=NamespaceTemplate(metadata)).reconcile("school_pk")

        assert not result.clean
        assert result.errors[0].column == "id"
        # The rest of the table is still repaired
        assert result.columns_added == 1
        assert "memo" in _columns(engine, "school_pk", "ledger")

    def test_reconcile_all_covers_every_namespace(self, engine) -> None:
        old = NamespaceProvisioner(engine, template=_old_template())
        old.provision("one")
        old.provision("two")

        results = NamespaceProvisioner(engine, template=_new_template()).reconcile_all()

        assert [r.namespace for r in results] == ["school_one", "school_two"]
        assert all(r.tables_added == 1 for r in results)
