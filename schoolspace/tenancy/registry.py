"""
Tenant Registry

Durable catalog of schools and of which users belong to which schools.

The registry row and the physical namespace can disagree. namespace_exists()
is the authority on whether queries may be issued; a row whose namespace
is physically absent is an inconsistency to report, not something a
request may paper over.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from schoolspace.core.exceptions import TenantNotFoundError
from schoolspace.models import Membership, School, SchoolStatus, User
from schoolspace.models.school import utcnow
from schoolspace.tenancy import catalog
from schoolspace.tenancy.validator import derive_namespace, require_valid_namespace
from schoolspace.utils.logging import get_logger, log_consistency_event

logger = get_logger(__name__)


@dataclass
class ConsistencyReport:
    """Registry/catalog disagreements found by find_inconsistencies()."""

    # (school_id, namespace) for rows whose namespace is physically absent
    missing_namespaces: List[tuple] = field(default_factory=list)
    # physical school namespaces no registry row owns
    unregistered_namespaces: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.missing_namespaces and not self.unregistered_namespaces


class TenantRegistry:
    """
    Read and write the school catalog through one session.

    An optional resolver cache is invalidated explicitly whenever a
    school's status changes.
    """

    def __init__(self, db: Session, cache=None):
        self.db = db
        self.cache = cache

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_tenant_by_id(self, school_id) -> Optional[School]:
        return self.db.get(School, school_id)

    def get_tenant_by_code(self, code: str) -> Optional[School]:
        if not code:
            return None
        stmt = select(School).where(func.lower(School.code) == code.strip().lower())
        return self.db.execute(stmt).scalars().first()

    def get_tenant_by_namespace(self, namespace: str) -> Optional[School]:
        stmt = select(School).where(School.namespace == namespace)
        return self.db.execute(stmt).scalars().first()

    def get_principal(self, user_id) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_primary_membership(self, user_id) -> Optional[Membership]:
        """
        The principal's primary membership, or None.

        Several rows flagged primary is an inconsistency; the oldest wins
        and the condition is logged.
        """
        stmt = (
            select(Membership)
            .where(Membership.user_id == user_id, Membership.is_primary.is_(True))
            .order_by(Membership.id)
        )
        primaries = self.db.execute(stmt).scalars().all()
        if len(primaries) > 1:
            logger.warning(
                f"User {user_id} has {len(primaries)} primary memberships; using the oldest",
                extra={"user_id": user_id},
            )
        return primaries[0] if primaries else None

    def has_membership(self, user_id, school_id) -> bool:
        stmt = select(Membership.id).where(
            Membership.user_id == user_id, Membership.school_id == school_id
        )
        return self.db.execute(stmt).first() is not None

    def list_tenants(self, status: Optional[SchoolStatus] = None) -> List[School]:
        stmt = select(School).order_by(School.id)
        if status is not None:
            stmt = stmt.where(School.status == status)
        return list(self.db.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Physical catalog
    # ------------------------------------------------------------------

    def namespace_exists(self, namespace: str) -> bool:
        """Physical existence, independent of any registry row."""
        require_valid_namespace(namespace, source="namespace_exists")
        return catalog.namespace_exists(self.db.connection(), namespace)

    def list_namespaces(self) -> List[str]:
        return catalog.list_namespaces(self.db.connection())

    def find_inconsistencies(self) -> ConsistencyReport:
        """Compare registry rows with the physical catalog in both directions."""
        physical = set(self.list_namespaces())
        report = ConsistencyReport()
        registered = set()

        for school in self.list_tenants():
            registered.add(school.namespace)
            # Inactive schools that were never provisioned are expected to lack a namespace
            if school.namespace not in physical and school.is_provisioned:
                report.missing_namespaces.append((school.id, school.namespace))
                log_consistency_event(
                    "namespace_missing",
                    {"school_id": school.id, "namespace": school.namespace},
                    logger,
                )

        for namespace in sorted(physical - registered):
            report.unregistered_namespaces.append(namespace)
            log_consistency_event("namespace_unregistered", {"namespace": namespace}, logger)

        return report

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_tenant(self, code: str, name: str, admin_email: Optional[str] = None) -> School:
        """
        Insert a school row, inactive until provisioning succeeds.

        The namespace is derived and validated before anything is written.
        """
        namespace = require_valid_namespace(derive_namespace(code), source="school_code")
        school = School(
            code=code.strip(),
            name=name,
            namespace=namespace,
            status=SchoolStatus.INACTIVE,
            admin_email=admin_email,
        )
        self.db.add(school)
        self.db.commit()
        self.db.refresh(school)
        logger.info(f"Registered school {school.code} ({school.id})",
                    extra={"school_id": school.id, "namespace": namespace})
        return school

    def mark_provisioned(self, school: School, activate: bool = True) -> School:
        first_time = school.provisioned_at is None
        school.provisioned_at = utcnow()
        if activate and first_time and school.status == SchoolStatus.INACTIVE:
            school.status = SchoolStatus.ACTIVE
        self.db.commit()
        if self.cache is not None:
            self.cache.invalidate(school.id)
        return school

    def set_status(self, school_id, status: SchoolStatus) -> School:
        school = self.get_tenant_by_id(school_id)
        if school is None:
            raise TenantNotFoundError(school_id)
        previous = school.status
        school.status = SchoolStatus(status)
        self.db.commit()
        if self.cache is not None:
            self.cache.invalidate(school.id)
        logger.info(
            f"School {school.code} status {previous.value} -> {school.status.value}",
            extra={"school_id": school.id},
        )
        return school

    def add_membership(self, user_id, school_id, role: str = "teacher", is_primary: bool = False) -> Membership:
        """
        Add (or update) a user's membership in a school.

        Making a membership primary clears the flag on the user's other
        memberships. users.primary_school_id is left alone on purpose.
        """
        if is_primary:
            self.db.execute(
                update(Membership)
                .where(Membership.user_id == user_id, Membership.school_id != school_id)
                .values(is_primary=False)
            )
        stmt = select(Membership).where(
            Membership.user_id == user_id, Membership.school_id == school_id
        )
        membership = self.db.execute(stmt).scalars().first()
        if membership is None:
            membership = Membership(user_id=user_id, school_id=school_id, role=role, is_primary=is_primary)
            self.db.add(membership)
        else:
            membership.role = role
            membership.is_primary = is_primary
        self.db.commit()
        return membership

    def remove_membership(self, user_id, school_id) -> bool:
        """Revoke a user's membership in a school. Returns False if there was none."""
        result = self.db.execute(
            delete(Membership).where(Membership.user_id == user_id, Membership.school_id == school_id)
        )
        self.db.commit()
        if result.rowcount:
            logger.info(f"Removed membership of user {user_id} in school {school_id}",
                        extra={"user_id": user_id, "school_id": school_id})
        return bool(result.rowcount)
