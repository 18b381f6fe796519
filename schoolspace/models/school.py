"""
School Model

The school is the tenant: one customer organization whose data lives in
its own namespace ("school_<code>") inside the shared database.

The namespace column is immutable once the namespace physically exists.
Schools are never deleted while their data exists; they are disabled
through `status`.
"""
from sqlalchemy import Column, String, DateTime, Integer, Index, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from schoolspace.database import Base
import enum


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SchoolStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class School(Base):
    __tablename__ = "schools"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(255), nullable=False)

    # Human code chosen at onboarding; the namespace is derived from it
    code = Column(String(50), unique=True, nullable=False, index=True)

    # Unique and immutable; never reassigned once the namespace exists
    namespace = Column("schema_name", String(63), unique=True, nullable=False)

    # New schools stay inactive until provisioning reports success
    status = Column(
        SQLEnum(SchoolStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        default=SchoolStatus.INACTIVE,
        nullable=False,
        index=True
    )

    admin_email = Column(String(255), nullable=True)

    provisioned_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="school")

    __table_args__ = (
        Index('idx_school_status_code', 'status', 'code'),
    )

    def __repr__(self):
        return f"<School {self.code}>"

    @property
    def is_active(self) -> bool:
        return self.status == SchoolStatus.ACTIVE

    @property
    def is_provisioned(self) -> bool:
        return self.provisioned_at is not None
