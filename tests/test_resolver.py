"""Tests for tenant resolution."""

from __future__ import annotations

import pytest

from schoolspace.core.exceptions import (
    InvalidNamespaceError,
    NoTenantContextError,
    TenantInactiveError,
    TenantNamespaceMissingError,
    UnregisteredNamespaceError,
)
from schoolspace.models import SchoolStatus
from schoolspace.schemas.claims import parse_claims
from schoolspace.tenancy.registry import TenantRegistry
from schoolspace.tenancy.resolver import TenantResolver


def v2(user, **claims):
    return parse_claims({"ver": 2, "sub": user.id, "role": user.role, **claims})


def v1(user, **claims):
    return parse_claims({"sub": user.id, "role": user.role, **claims})


@pytest.fixture
def member(registry: TenantRegistry, make_user):
    """A user whose primary_school_id is backed by a primary membership."""

    def _member(school):
        user = make_user(primary_school_id=school.id)
        registry.add_membership(user.id, school.id, is_primary=True)
        return user

    return _member


class TestPrecedence:
    """Each resolution step, in order."""

    def test_namespace_claim_wins(self, resolver: TenantResolver, onboard, make_user) -> None:
        one = onboard("one")
        two = onboard("two")
        user = make_user(primary_school_id=two.id)

        context = resolver.resolve(user, v2(user, schema_name="school_one", school_id=two.id))

        assert context.school_id == one.id
        assert context.namespace == "school_one"

    def test_school_id_claim(self, resolver: TenantResolver, onboard, make_user) -> None:
        one = onboard("one")
        two = onboard("two")
        user = make_user(primary_school_id=one.id)

        context = resolver.resolve(user, v1(user, school_id=two.id))

        assert context.school_id == two.id

    def test_unknown_school_id_claim_falls_back(self, resolver: TenantResolver, onboard, member) -> None:
        one = onboard("one")
        user = member(one)

        context = resolver.resolve(user, v1(user, school_id=9999))

        assert context.school_id == one.id

    def test_primary_pointer(self, resolver: TenantResolver, registry: TenantRegistry,
                             onboard, make_user) -> None:
        one = onboard("one")
        user = make_user(primary_school_id=one.id)
        registry.add_membership(user.id, one.id, is_primary=True)

        context = resolver.resolve(user, v1(user))

        assert context.school_id == one.id
        assert context.name == "One"
        assert context.code == "one"

    def test_unbacked_pointer_falls_through(self, resolver: TenantResolver, registry: TenantRegistry,
                                           onboard, make_user, caplog) -> None:
        one = onboard("one")
        two = onboard("two")
        user = make_user(primary_school_id=one.id)
        registry.add_membership(user.id, two.id, is_primary=True)

        context = resolver.resolve(user, v1(user))

        assert context.school_id == two.id
        assert user.primary_school_id == one.id
        assert "has no membership behind it" in caplog.text

    def test_revoked_membership_leaves_no_context(self, resolver: TenantResolver, registry: TenantRegistry,
                                                  cache, onboard, member) -> None:
        school = onboard("revoked")
        user = member(school)
        assert resolver.resolve(user, v1(user)).school_id == school.id

        registry.remove_membership(user.id, school.id)

        # The school entry is still cached; revocation must not depend on it expiring
        with pytest.raises(NoTenantContextError):
            resolver.resolve(user, v1(user))
        cache.clear()
        with pytest.raises(NoTenantContextError):
            resolver.resolve(user, v1(user))

    def test_primary_membership(self, resolver: TenantResolver, registry: TenantRegistry,
                                onboard, make_user) -> None:
        one = onboard("one")
        user = make_user()
        registry.add_membership(user.id, one.id, is_primary=True)

        context = resolver.resolve(user, v1(user))

        assert context.school_id == one.id

    def test_no_context(self, resolver: TenantResolver, registry: TenantRegistry,
                        onboard, make_user) -> None:
        one = onboard("one")
        user = make_user()
        # Non-primary memberships are not a resolution source
        registry.add_membership(user.id, one.id, is_primary=False)

        with pytest.raises(NoTenantContextError) as exc_info:
            resolver.resolve(user, v1(user))
        assert exc_info.value.status_code == 409


class TestFailClosed:
    """Resolution never substitutes another namespace for a bad one."""

    def test_invalid_namespace_claim_is_fatal(self, resolver: TenantResolver, onboard, make_user) -> None:
        one = onboard("one")
        user = make_user(primary_school_id=one.id)

        with pytest.raises(InvalidNamespaceError):
            resolver.resolve(user, v2(user, schema_name="school_one; DROP TABLE users", school_id=one.id))

    def test_unregistered_namespace_claim(self, resolver: TenantResolver, provisioner, make_user) -> None:
        provisioner.provision("stray")
        user = make_user()

        with pytest.raises(UnregisteredNamespaceError):
            resolver.resolve(user, v2(user, schema_name="school_stray"))

    def test_unknown_namespace_claim(self, resolver: TenantResolver, make_user) -> None:
        user = make_user()

        with pytest.raises(TenantNamespaceMissingError):
            resolver.resolve(user, v2(user, schema_name="school_nowhere"))

    def test_registered_namespace_missing(self, resolver: TenantResolver, registry: TenantRegistry,
                                          member) -> None:
        school = registry.create_tenant("ghost", "Ghost")
        registry.set_status(school.id, SchoolStatus.ACTIVE)
        user = member(school)

        with pytest.raises(TenantNamespaceMissingError) as exc_info:
            resolver.resolve(user, v1(user))
        assert exc_info.value.status_code == 503
        assert "school_ghost" not in exc_info.value.detail

    @pytest.mark.parametrize("school_status", [SchoolStatus.INACTIVE, SchoolStatus.SUSPENDED])
    def test_inactive_school(self, resolver: TenantResolver, registry: TenantRegistry,
                             onboard, member, school_status) -> None:
        one = onboard("one")
        registry.set_status(one.id, school_status)
        user = member(one)

        with pytest.raises(TenantInactiveError):
            resolver.resolve(user, v1(user))


class TestCaching:
    """Resolver results are served from the cache until invalidated."""

    def test_cached_until_invalidated(self, resolver: TenantResolver, cache, db,
                                      onboard, member) -> None:
        one = onboard("one")
        user = member(one)
        assert resolver.resolve(user, v1(user)).school_id == one.id

        # Changed behind the registry's back: the cache still answers
        one.status = SchoolStatus.SUSPENDED
        db.commit()
        assert resolver.resolve(user, v1(user)).school_id == one.id

        cache.invalidate(one.id)
        with pytest.raises(TenantInactiveError):
            resolver.resolve(user, v1(user))

    def test_cache_shared_across_keys(self, resolver: TenantResolver, db, onboard, make_user) -> None:
        one = onboard("one")
        user = make_user(primary_school_id=one.id)
        resolver.resolve(user, v1(user, school_id=one.id))

        one.status = SchoolStatus.SUSPENDED
        db.commit()

        # Namespace lookup hits the entry stored under the id
        assert resolver.resolve(user, v2(user, schema_name="school_one")).school_id == one.id
