"""
Namespace Template

The canonical definition of every table, column, constraint and index a
school namespace must contain. Provisioning creates namespaces from it
and reconciliation repairs drift against it, so evolving a school's
tables means editing this module, never writing a one-off patch script.

Tables are declared without a schema. `NamespaceTemplate.bind()` copies
them into a namespace; foreign keys between template tables follow the
copy into the same namespace.

A column that is a denormalized copy of data held elsewhere carries a
`Backfill` in its `info` dict. When reconciliation adds such a column to
an existing table it fills it from the source table.
"""
from dataclasses import dataclass
from typing import Dict, List

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    Time,
    UniqueConstraint,
    func,
    text,
)

from schoolspace.tenancy.validator import require_valid_namespace


@dataclass(frozen=True)
class Backfill:
    """
    Where a denormalized column copies its value from.

    The target column is set to `source_table.source_column` for the row
    where `source_table.source_key == target.local_key`. With
    `catalog=True` the source table lives in the system-wide catalog
    rather than in the school namespace.
    """

    source_table: str
    source_column: str
    local_key: str
    source_key: str = "id"
    catalog: bool = False


school_metadata = MetaData()

Table(
    "settings",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("key", String(100), nullable=False),
    Column("value", Text, nullable=True),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("key", name="uq_settings_key"),
)

Table(
    "classes",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("class_name", String(100), nullable=False),
    Column("grade_level", String(20), nullable=True),
    Column("teacher_id", Integer, nullable=True),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

Table(
    "teachers",
    school_metadata,
    Column("id", Integer, primary_key=True),
    # users.id in the catalog; no cross-schema foreign key
    Column("user_id", Integer, nullable=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column(
        "email",
        String(255),
        nullable=True,
        info={"backfill": Backfill("users", "email", local_key="user_id", catalog=True)},
    ),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Index("ix_teachers_user_id", "user_id"),
)

Table(
    "students",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("student_number", String(50), nullable=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("class_id", Integer, ForeignKey("classes.id", ondelete="SET NULL"), nullable=True),
    Column(
        "class_name",
        String(100),
        nullable=True,
        info={"backfill": Backfill("classes", "class_name", local_key="class_id")},
    ),
    Column("parent_id", Integer, nullable=True),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Index("ix_students_class_id", "class_id"),
    Index("ix_students_parent_id", "parent_id"),
)

Table(
    "behaviour_incidents",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("student_id", Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
    Column("teacher_id", Integer, nullable=True),
    Column("incident_type", String(100), nullable=False),
    Column("description", Text, nullable=True),
    Column("incident_date", Date, nullable=True),
    Column("incident_time", Time, nullable=True),
    Column("points_deducted", Integer, nullable=False, server_default=text("0")),
    Column("status", String(20), nullable=False, server_default=text("'pending'")),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Index("ix_behaviour_incidents_student_id", "student_id"),
)

Table(
    "merits",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("student_id", Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
    Column("teacher_id", Integer, nullable=True),
    Column("merit_type", String(100), nullable=True),
    Column("points", Integer, nullable=False, server_default=text("1")),
    Column("merit_date", Date, nullable=True),
    Column("description", Text, nullable=True),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Index("ix_merits_student_id", "student_id"),
)

Table(
    "detentions",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("detention_date", Date, nullable=False),
    Column("start_time", Time, nullable=True),
    Column("end_time", Time, nullable=True),
    Column("location", String(100), nullable=True),
    Column("max_capacity", Integer, nullable=False, server_default=text("30")),
    Column("status", String(20), nullable=False, server_default=text("'scheduled'")),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

Table(
    "detention_assignments",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("detention_id", Integer, ForeignKey("detentions.id", ondelete="CASCADE"), nullable=False),
    Column("student_id", Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
    Column("incident_id", Integer, ForeignKey("behaviour_incidents.id", ondelete="SET NULL"), nullable=True),
    Column("reason", Text, nullable=True),
    Column("status", String(20), nullable=False, server_default=text("'assigned'")),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("detention_id", "student_id", name="uq_detention_assignments_student"),
)

Table(
    "attendance",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("student_id", Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
    Column("attendance_date", Date, nullable=False),
    Column("period", Integer, nullable=True),
    Column("status", String(20), nullable=False, server_default=text("'present'")),
    Column("notes", Text, nullable=True),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Index("ix_attendance_student_date", "student_id", "attendance_date"),
)

Table(
    "audit_log",
    school_metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=True),
    Column("action", String(50), nullable=False),
    Column("entity_type", String(50), nullable=True),
    Column("entity_id", Integer, nullable=True),
    Column("old_values", Text, nullable=True),
    Column("new_values", Text, nullable=True),
    Column("ip_address", String(45), nullable=True),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)


class NamespaceTemplate:
    """Read-only view over a template MetaData."""

    def __init__(self, metadata: MetaData):
        self.metadata = metadata

    @property
    def tables(self) -> List[Table]:
        # Dependency order, so foreign key targets are created first
        return list(self.metadata.sorted_tables)

    @property
    def table_names(self) -> List[str]:
        return [t.name for t in self.tables]

    def bind(self, namespace: str) -> Dict[str, Table]:
        """
        Copy every template table into `namespace`.

        Returns the copies keyed by bare table name.
        """
        require_valid_namespace(namespace, source="template")
        target = MetaData()
        for table in self.tables:
            table.to_metadata(target, schema=namespace)
        return {t.name: t for t in target.tables.values()}

    def __repr__(self):
        return f"<NamespaceTemplate tables={len(self.metadata.tables)}>"


SCHOOL_TEMPLATE = NamespaceTemplate(school_metadata)
