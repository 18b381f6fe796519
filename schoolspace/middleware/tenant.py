"""
Tenant Middleware

Resolves the school context for every authenticated request and makes it
available on request.state. This is CRITICAL for tenant isolation.

ARCHITECTURE: The school comes from the bearer credential and the
catalog, never from anything the client can set freely (no subdomain or
tenant header routing):
- credential namespace claim (validated)
- credential school_id claim
- users.primary_school_id
- the primary membership

Requests without a usable credential pass through untouched; the
endpoint dependencies reject them with 401. Platform administrators have
no school and skip resolution.
"""
from typing import Optional, Tuple

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from schoolspace.core.exceptions import TenancyError
from schoolspace.core.permissions import is_platform_admin
from schoolspace.core.security import decode_claims
from schoolspace.models import User
from schoolspace.tenancy.context import ResolvedTenantContext
from schoolspace.tenancy.registry import TenantRegistry
from schoolspace.tenancy.resolver import TenantResolver
from schoolspace.utils.logging import get_logger

logger = get_logger(__name__)


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Resolve the tenant context before the route runs.

    Sets on request.state:
    - claims: the decoded credential claim set
    - principal: the catalog User
    - tenant_context: ResolvedTenantContext, or None for platform admins

    Tenancy errors are turned into JSON responses here, with a user-safe
    detail and a machine-readable type. The namespace identifier is never
    part of a response.
    """

    def __init__(self, app, excluded_paths=None):
        super().__init__(app)
        self.excluded_paths = excluded_paths or [
            "/docs",
            "/redoc",
            "/openapi.json",
            "/health",
        ]

    async def dispatch(self, request: Request, call_next):
        """Process each request and inject tenant context."""
        request.state.claims = None
        request.state.principal = None
        request.state.tenant_context = None

        if any(request.url.path.startswith(path) for path in self.excluded_paths):
            return await call_next(request)

        token = bearer_token(request)
        if token is None:
            return await call_next(request)

        claims = decode_claims(token)
        if claims is None:
            return await call_next(request)

        try:
            principal, context = await run_in_threadpool(self._resolve, request, claims)
        except TenancyError as e:
            logger.warning(
                f"Tenant resolution failed: {e.error_type}",
                extra={"user_id": claims.sub, "event_type": e.error_type},
            )
            return JSONResponse(
                status_code=e.status_code,
                content={"detail": e.detail, "type": e.error_type},
            )

        request.state.claims = claims
        request.state.principal = principal
        request.state.tenant_context = context
        if context is not None:
            logger.debug(
                f"Request for school {context.school_id}",
                extra={"school_id": context.school_id, "user_id": claims.sub},
            )
        return await call_next(request)

    def _resolve(self, request: Request, claims) -> Tuple[Optional[User], Optional[ResolvedTenantContext]]:
        db = request.app.state.session_factory()
        try:
            registry = TenantRegistry(db, cache=request.app.state.tenant_cache)
            principal = registry.get_principal(claims.sub)
            if principal is None or not principal.is_active:
                # Unknown or disabled principal; deps answer with 401
                return None, None
            if is_platform_admin(principal):
                return principal, None
            resolver = TenantResolver(registry, request.app.state.tenant_cache)
            return principal, resolver.resolve(principal, claims)
        finally:
            db.close()
