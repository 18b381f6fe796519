"""
Tenant Resolver

Works out which school namespace a request may operate against.

Precedence, first successful step wins:
1. namespace claim on the credential (validated, never trusted raw)
2. school_id claim on the credential
3. the principal's primary_school_id pointer, if a membership backs it
4. the principal's primary membership
Nothing left -> NoTenantContextError, a legitimate outcome for a user
who has not finished onboarding.

Whatever step produced the school, its namespace is validated and checked
for physical existence before it is returned. A namespace that looks
valid but does not exist fails closed; no other namespace is ever
substituted for it.
"""
from typing import Optional, Union

from schoolspace.core.exceptions import (
    InvalidNamespaceError,
    NoTenantContextError,
    TenantInactiveError,
    TenantNamespaceMissingError,
    UnregisteredNamespaceError,
)
from schoolspace.models import School, SchoolStatus
from schoolspace.schemas.claims import LegacyClaims, SchoolClaims
from schoolspace.tenancy.cache import id_key, namespace_key
from schoolspace.tenancy.context import ResolvedTenantContext
from schoolspace.tenancy.registry import TenantRegistry
from schoolspace.tenancy.validator import is_valid_namespace
from schoolspace.utils.logging import get_logger, log_consistency_event, log_security_event

logger = get_logger(__name__)

Claims = Union[LegacyClaims, SchoolClaims]


class TenantResolver:
    def __init__(self, registry: TenantRegistry, cache):
        self.registry = registry
        self.cache = cache

    def resolve(self, principal, claims: Claims) -> ResolvedTenantContext:
        """
        Resolve the school context for `principal` holding `claims`.

        `principal` needs `id` and `primary_school_id` (a catalog User).
        """
        # 1. Namespace claim
        if claims.schema_name is not None:
            if not is_valid_namespace(claims.schema_name):
                log_security_event(
                    "invalid_namespace",
                    {"user_id": principal.id, "source": "credential_claim"},
                    logger,
                )
                raise InvalidNamespaceError(candidate=claims.schema_name, source="credential_claim")
            return self._by_namespace(claims.schema_name)

        # 2. School id claim
        if claims.school_id is not None:
            context = self._by_school_id(claims.school_id)
            if context is not None:
                return context
            logger.info(f"Credential school_id {claims.school_id} not in registry; falling back",
                        extra={"user_id": principal.id})

        # 3. Denormalized primary pointer, only while a membership backs it
        if principal.primary_school_id is not None and self._pointer_backed(principal):
            context = self._by_school_id(principal.primary_school_id)
            if context is not None:
                return context

        # 4. Primary membership
        membership = self.registry.get_primary_membership(principal.id)
        if membership is not None:
            context = self._by_school_id(membership.school_id)
            if context is not None:
                return context

        raise NoTenantContextError(principal_id=principal.id)

    # ------------------------------------------------------------------

    def _by_school_id(self, school_id) -> Optional[ResolvedTenantContext]:
        return self.cache.get_or_load(
            id_key(school_id), lambda: self._checked(self.registry.get_tenant_by_id(school_id))
        )

    def _by_namespace(self, namespace: str) -> ResolvedTenantContext:
        def load():
            school = self.registry.get_tenant_by_namespace(namespace)
            if school is None:
                if self.registry.namespace_exists(namespace):
                    log_consistency_event("namespace_unregistered", {"namespace": namespace}, logger)
                    raise UnregisteredNamespaceError(namespace=namespace)
                log_consistency_event("namespace_missing", {"namespace": namespace}, logger)
                raise TenantNamespaceMissingError(namespace=namespace)
            return self._checked(school)

        return self.cache.get_or_load(namespace_key(namespace), load)

    def _checked(self, school: Optional[School]) -> Optional[ResolvedTenantContext]:
        """Turn a registry row into a context, failing closed on any doubt."""
        if school is None:
            return None

        if not is_valid_namespace(school.namespace):
            log_security_event(
                "invalid_namespace",
                {"school_id": school.id, "source": "registry"},
                logger,
            )
            raise InvalidNamespaceError(candidate=school.namespace, source="registry")

        if school.status != SchoolStatus.ACTIVE:
            logger.warning(f"Resolution hit {school.status.value} school {school.id}",
                           extra={"school_id": school.id})
            raise TenantInactiveError(school_id=school.id, school_status=school.status.value)

        if not self.registry.namespace_exists(school.namespace):
            log_consistency_event(
                "namespace_missing",
                {"school_id": school.id, "namespace": school.namespace},
                logger,
            )
            raise TenantNamespaceMissingError(namespace=school.namespace, school_id=school.id)

        return ResolvedTenantContext(
            school_id=school.id,
            namespace=school.namespace,
            name=school.name,
            code=school.code,
        )

    def _pointer_backed(self, principal) -> bool:
        # The pointer is left as it is; a revoked membership just stops it counting
        if self.registry.has_membership(principal.id, principal.primary_school_id):
            return True
        logger.warning(
            f"User {principal.id} primary_school_id={principal.primary_school_id} "
            f"has no membership behind it; ignoring the pointer",
            extra={"user_id": principal.id, "school_id": principal.primary_school_id},
        )
        return False
