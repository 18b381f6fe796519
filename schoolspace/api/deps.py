"""
API Dependencies

Reusable FastAPI dependencies for authentication, tenant context and the
tenancy services held on app.state.

PATTERN: TenantMiddleware does the resolution work once per request;
these dependencies read its result from request.state and turn a missing
piece into the right error.
"""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from schoolspace.core.exceptions import AuthenticationError, NoTenantContextError
from schoolspace.core.permissions import require_platform_admin as check_platform_admin
from schoolspace.models.user import User
from schoolspace.tenancy.context import ResolvedTenantContext
from schoolspace.tenancy.executor import NamespaceQueryExecutor
from schoolspace.tenancy.provisioner import NamespaceProvisioner
from schoolspace.tenancy.registry import TenantRegistry
from schoolspace.utils.logging import get_logger

logger = get_logger(__name__)

# Missing credentials are answered with our own 401, not HTTPBearer's
security = HTTPBearer(auto_error=False)


def get_db(request: Request):
    """Catalog session for the request, closed when the request completes."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_tenant_cache(request: Request):
    return request.app.state.tenant_cache


def get_executor(request: Request) -> NamespaceQueryExecutor:
    return request.app.state.executor


def get_provisioner(request: Request) -> NamespaceProvisioner:
    return request.app.state.provisioner


def get_registry(
    db: Session = Depends(get_db),
    cache=Depends(get_tenant_cache),
) -> TenantRegistry:
    return TenantRegistry(db, cache=cache)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> User:
    """
    Get current authenticated user.

    The credential was decoded and the principal loaded by
    TenantMiddleware; a request that reaches here without a principal had
    no credential, a bad one, or one for an unknown or disabled user.
    """
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError("Invalid or expired token")
    return principal


async def get_tenant_context(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> ResolvedTenantContext:
    """
    The school the current request operates against.

    CRITICAL: Tenant-scoped endpoints must take their namespace from
    here and nowhere else.
    """
    context = getattr(request.state, "tenant_context", None)
    if context is None:
        # Platform admins reach here; everyone else failed in the middleware
        raise NoTenantContextError(principal_id=current_user.id)
    return context


async def require_platform_admin(
    current_user: User = Depends(get_current_user),
) -> User:
    """Use this dependency for platform operator endpoints."""
    check_platform_admin(current_user)
    return current_user
