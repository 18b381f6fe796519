"""
Platform Operator Endpoints

Onboarding, lifecycle and repair of schools. Platform administrators
only; these routes have no school context of their own.

- List schools
- Onboard a school (register + provision + activate)
- Re-provision a school (idempotent)
- Reconcile one namespace or all of them against the template
- Change a school's status
- Registry/catalog consistency report
"""
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session
from typing import List, Optional

from schoolspace.api.deps import (
    get_db,
    get_provisioner,
    get_registry,
    get_tenant_cache,
    require_platform_admin,
)
from schoolspace.core.exceptions import InvalidNamespaceError, TenantNotFoundError
from schoolspace.models.school import SchoolStatus
from schoolspace.models.user import User
from schoolspace.schemas.school import (
    ConsistencyResponse,
    DriftIssueResponse,
    MissingNamespace,
    ProvisionResponse,
    ReconcileResponse,
    SchoolCreate,
    SchoolListResponse,
    SchoolResponse,
    SchoolStatusUpdate,
)
from schoolspace.tenancy.onboarding import provision_tenant
from schoolspace.tenancy.provisioner import NamespaceProvisioner, ProvisionResult, ReconcileResult
from schoolspace.tenancy.registry import TenantRegistry
from schoolspace.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/platform", tags=["platform"])


def _provision_response(result: ProvisionResult, response: Response) -> ProvisionResponse:
    if not result.success:
        if result.namespace is None:
            # Code never made it past the validator
            raise InvalidNamespaceError(source="school_code")
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return ProvisionResponse(
        success=result.success,
        namespace=result.namespace,
        tables_created=result.tables_created,
        error=result.error,
    )


def _reconcile_response(result: ReconcileResult) -> ReconcileResponse:
    return ReconcileResponse(
        namespace=result.namespace,
        tables_added=result.tables_added,
        columns_added=result.columns_added,
        backfilled=result.backfilled,
        clean=result.clean,
        errors=[
            DriftIssueResponse(table=issue.table, column=issue.column, message=issue.message)
            for issue in result.errors
        ],
    )


@router.get("/schools", response_model=SchoolListResponse)
def list_schools(
    school_status: Optional[SchoolStatus] = Query(None, alias="status"),
    admin: User = Depends(require_platform_admin),
    registry: TenantRegistry = Depends(get_registry),
):
    schools = registry.list_tenants(status=school_status)
    return SchoolListResponse(
        schools=[SchoolResponse.model_validate(school) for school in schools],
        total=len(schools),
    )


@router.post("/schools", response_model=ProvisionResponse, status_code=status.HTTP_201_CREATED)
def onboard_school(
    payload: SchoolCreate,
    response: Response,
    admin: User = Depends(require_platform_admin),
    db: Session = Depends(get_db),
    provisioner: NamespaceProvisioner = Depends(get_provisioner),
    cache=Depends(get_tenant_cache),
):
    """
    Onboard a school.

    The registry row is created inactive; it becomes active once its
    namespace has been provisioned. Safe to repeat.
    """
    logger.info(f"Onboarding school {payload.code}", extra={"user_id": admin.id})
    result = provision_tenant(
        db,
        provisioner,
        payload.code,
        name=payload.name,
        admin_email=payload.admin_email,
        cache=cache,
    )
    return _provision_response(result, response)


@router.post("/schools/{school_id}/provision", response_model=ProvisionResponse)
def reprovision_school(
    school_id: int,
    response: Response,
    admin: User = Depends(require_platform_admin),
    db: Session = Depends(get_db),
    registry: TenantRegistry = Depends(get_registry),
    provisioner: NamespaceProvisioner = Depends(get_provisioner),
    cache=Depends(get_tenant_cache),
):
    """Create whatever is missing from an existing school's namespace."""
    school = registry.get_tenant_by_id(school_id)
    if school is None:
        raise TenantNotFoundError(school_id)
    result = provision_tenant(db, provisioner, school.code, cache=cache)
    return _provision_response(result, response)


@router.post("/schools/{school_id}/reconcile", response_model=ReconcileResponse)
def reconcile_school(
    school_id: int,
    admin: User = Depends(require_platform_admin),
    registry: TenantRegistry = Depends(get_registry),
    provisioner: NamespaceProvisioner = Depends(get_provisioner),
):
    school = registry.get_tenant_by_id(school_id)
    if school is None:
        raise TenantNotFoundError(school_id)
    return _reconcile_response(provisioner.reconcile(school.namespace))


@router.post("/reconcile", response_model=List[ReconcileResponse])
def reconcile_all(
    admin: User = Depends(require_platform_admin),
    provisioner: NamespaceProvisioner = Depends(get_provisioner),
):
    """Reconcile every school namespace. Failures are reported per namespace."""
    return [_reconcile_response(result) for result in provisioner.reconcile_all()]


@router.patch("/schools/{school_id}/status", response_model=SchoolResponse)
def update_school_status(
    school_id: int,
    payload: SchoolStatusUpdate,
    admin: User = Depends(require_platform_admin),
    registry: TenantRegistry = Depends(get_registry),
):
    """Activate, deactivate or suspend a school. Cached resolutions are dropped."""
    logger.info(f"Setting school {school_id} status to {payload.status.value}",
                extra={"user_id": admin.id, "school_id": school_id})
    return registry.set_status(school_id, payload.status)


@router.get("/consistency", response_model=ConsistencyResponse)
def consistency_report(
    admin: User = Depends(require_platform_admin),
    registry: TenantRegistry = Depends(get_registry),
):
    report = registry.find_inconsistencies()
    return ConsistencyResponse(
        consistent=report.consistent,
        missing_namespaces=[
            MissingNamespace(school_id=school_id, namespace=namespace)
            for school_id, namespace in report.missing_namespaces
        ],
        unregistered_namespaces=report.unregistered_namespaces,
    )
