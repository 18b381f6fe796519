"""
Tenant onboarding workflow.

Registers a school, provisions its namespace and activates it. Each step
is idempotent, so a failed onboarding is simply run again.

SQLite cannot attach a namespace while a transaction is open on the same
connection, so the registry row is committed before the provisioner runs.
"""
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from schoolspace.core.exceptions import InvalidNamespaceError, ProvisioningError
from schoolspace.tenancy.provisioner import NamespaceProvisioner, ProvisionResult
from schoolspace.tenancy.registry import TenantRegistry
from schoolspace.tenancy.validator import derive_namespace, require_valid_namespace
from schoolspace.utils.logging import get_logger, log_security_event

logger = get_logger(__name__)


def provision_tenant(
    db: Session,
    provisioner: NamespaceProvisioner,
    code: str,
    name: Optional[str] = None,
    admin_email: Optional[str] = None,
    cache=None,
) -> ProvisionResult:
    """
    Onboard (or re-provision) the school with `code`.

    Returns ProvisionResult(success=False) with an error message instead
    of raising for an invalid code or failed DDL; the registry row is
    left inactive in the latter case.
    """
    try:
        namespace = require_valid_namespace(derive_namespace(code), source="school_code")
    except InvalidNamespaceError:
        log_security_event("invalid_school_code", {"source": "onboarding"}, logger)
        return ProvisionResult(success=False, namespace=None, error="Invalid school code")

    registry = TenantRegistry(db, cache=cache)
    school = registry.get_tenant_by_namespace(namespace)
    if school is None:
        try:
            school = registry.create_tenant(code, name or code, admin_email)
        except IntegrityError:
            # Lost a race with another onboarding of the same code
            db.rollback()
            school = registry.get_tenant_by_namespace(namespace)
            if school is None:
                raise

    try:
        result = provisioner.provision(code)
    except ProvisioningError as e:
        logger.error(f"Onboarding of {school.code} failed: {e.detail}",
                     extra={"school_id": school.id, "namespace": namespace})
        return ProvisionResult(success=False, namespace=namespace, error=e.detail)

    registry.mark_provisioned(school)
    logger.info(
        f"Onboarded school {school.code} ({school.id}), {result.tables_created} tables created",
        extra={"school_id": school.id, "namespace": namespace},
    )
    return result
