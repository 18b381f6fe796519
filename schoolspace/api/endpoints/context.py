"""
Tenant Context Endpoint

Tells the caller which school their request resolved to, together with
the school's settings rows read from its own namespace.

TENANT_ISOLATION: The namespace comes from the resolved context only.
It is never echoed back.
"""
from fastapi import APIRouter, Depends

from schoolspace.api.deps import get_executor, get_tenant_context
from schoolspace.schemas.school import TenantContextResponse
from schoolspace.tenancy.context import ResolvedTenantContext
from schoolspace.tenancy.executor import NamespaceQueryExecutor
from schoolspace.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/context", tags=["context"])


@router.get("", response_model=TenantContextResponse)
def get_context(
    context: ResolvedTenantContext = Depends(get_tenant_context),
    executor: NamespaceQueryExecutor = Depends(get_executor),
):
    """Current school and its settings."""
    rows = executor.all(
        "SELECT key, value FROM {schema}.settings ORDER BY key",
        namespace=context.namespace,
    )
    return TenantContextResponse(
        school_id=context.school_id,
        code=context.code,
        name=context.name,
        settings={row["key"]: row["value"] for row in rows},
    )
