"""
Custom Exceptions

Centralized exception definitions for tenant resolution, namespace
provisioning and namespace-qualified queries.

Every tenancy error carries a user-safe `detail` and an `error_type`.
Internal facts (the namespace identifier, registry ids, the failing
table) are kept on attributes for logging and are never put in `detail`,
except for provisioning errors, which only reach platform operators.
"""
from typing import Optional

from fastapi import HTTPException, status


class TenancyError(HTTPException):
    """Base class for tenancy errors surfaced at the request boundary."""

    error_type = "tenancy_error"

    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)


class InvalidNamespaceError(TenancyError):
    """
    A namespace identifier failed the allow-list.

    Always fatal to the current operation. Never retried, never corrected.
    """

    error_type = "invalid_namespace"

    def __init__(self, candidate: Optional[str] = None, source: str = "unknown"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid namespace identifier"
        )
        self.candidate = candidate
        self.source = source


class NoTenantContextError(TenancyError):
    """
    The principal has no resolvable school.

    A legitimate outcome (e.g. mid-onboarding), not an internal failure.
    """

    error_type = "no_tenant_context"

    def __init__(self, principal_id=None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="No school context for this account"
        )
        self.principal_id = principal_id


class TenantNotFoundError(TenancyError):
    """Raised when a school cannot be found in the registry."""

    error_type = "tenant_not_found"

    def __init__(self, identifier=None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="School not found"
        )
        self.identifier = identifier


class TenantInactiveError(TenancyError):
    """Raised when the resolved school is inactive or suspended."""

    error_type = "tenant_inactive"

    def __init__(self, school_id=None, school_status: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="School account is inactive"
        )
        self.school_id = school_id
        self.school_status = school_status


class ConsistencyError(TenancyError):
    """
    The registry and the physical catalog disagree.

    Fail-closed: the request is rejected rather than guessing. Needs an
    operator or a scheduled re-provisioning run.
    """

    error_type = "tenant_inconsistent"

    def __init__(self, namespace: Optional[str] = None, school_id=None,
                 detail: str = "School data is temporarily unavailable"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail
        )
        self.namespace = namespace
        self.school_id = school_id


class TenantNamespaceMissingError(ConsistencyError):
    """A registry row points at a namespace absent from the catalog."""

    error_type = "tenant_namespace_missing"


class UnregisteredNamespaceError(ConsistencyError):
    """A namespace exists physically but no registry row owns it."""

    error_type = "tenant_inconsistent"


class TransientStoreError(TenancyError):
    """Connection or pool failure that outlived the bounded retry."""

    error_type = "store_unavailable"

    def __init__(self, attempts: int = 0):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database temporarily unavailable"
        )
        self.attempts = attempts


class ProvisioningError(TenancyError):
    """
    Namespace provisioning failed.

    Detail names the failing table so operators can diagnose it; this
    error only reaches the onboarding workflow and platform admins.
    """

    error_type = "provisioning_failed"

    def __init__(self, namespace: str, table: Optional[str] = None, reason: str = ""):
        where = f"{namespace}.{table}" if table else namespace
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Provisioning failed for {where}: {reason}" if reason else f"Provisioning failed for {where}"
        )
        self.namespace = namespace
        self.table = table
        self.reason = reason


class AuthenticationError(HTTPException):
    """Raised when authentication fails."""

    error_type = "authentication_error"

    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class RateLimitExceeded(HTTPException):
    """Raised when rate limit is exceeded."""

    error_type = "rate_limit_exceeded"

    def __init__(self, retry_after: int = 60):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)}
        )
