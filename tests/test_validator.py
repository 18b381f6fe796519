"""Tests for namespace identifier validation."""

from __future__ import annotations

import pytest

from schoolspace.core.exceptions import InvalidNamespaceError
from schoolspace.tenancy.validator import (
    MAX_NAMESPACE_LENGTH,
    derive_namespace,
    is_valid_namespace,
    require_valid_namespace,
)


class TestIsValidNamespace:
    """Tests for the namespace allow-list."""

    @pytest.mark.parametrize(
        "value",
        ["school_lear_1291", "school_a", "school_0", "school___"],
    )
    def test_accepts_well_formed(self, value: str) -> None:
        assert is_valid_namespace(value) is True

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "school_",
            "School_abc",
            "school_ABC",
            "public",
            "lear_1291",
            "school_bad code",
            "school_x; DROP TABLE users",
            "school_x.students",
            'school_x"',
            "school_x\n",
            "school_é",
            "xschool_abc",
        ],
    )
    def test_rejects_everything_else(self, value: str) -> None:
        assert is_valid_namespace(value) is False

    @pytest.mark.parametrize("value", [None, 42, b"school_abc", ["school_abc"]])
    def test_rejects_non_strings(self, value) -> None:
        assert is_valid_namespace(value) is False

    def test_length_limit(self) -> None:
        at_limit = "school_" + "a" * (MAX_NAMESPACE_LENGTH - len("school_"))
        assert len(at_limit) == MAX_NAMESPACE_LENGTH
        assert is_valid_namespace(at_limit) is True
        assert is_valid_namespace(at_limit + "a") is False


class TestRequireValidNamespace:
    """Tests for the raising variant."""

    def test_returns_value_unchanged(self) -> None:
        assert require_valid_namespace("school_abc") == "school_abc"

    def test_raises_with_source(self) -> None:
        with pytest.raises(InvalidNamespaceError) as exc_info:
            require_valid_namespace("school_x;--", source="credential_claim")
        assert exc_info.value.source == "credential_claim"
        assert exc_info.value.status_code == 400
        # The candidate is kept for logs, never put in the user-facing detail
        assert "school_x" not in exc_info.value.detail


class TestDeriveNamespace:
    """Tests for deriving namespaces from school codes."""

    def test_lowercases_and_prefixes(self) -> None:
        assert derive_namespace("LEAR_1291") == "school_lear_1291"

    def test_strips_whitespace(self) -> None:
        assert derive_namespace("  abc  ") == "school_abc"

    def test_does_not_sanitize(self) -> None:
        derived = derive_namespace("bad code!")
        assert derived == "school_bad code!"
        assert is_valid_namespace(derived) is False

    def test_distinct_codes_never_collide_after_derivation(self) -> None:
        # Substituting bad characters would map both of these to school_a_b
        assert derive_namespace("a-b") != derive_namespace("a_b")

    def test_rejects_non_string_codes(self) -> None:
        with pytest.raises(InvalidNamespaceError):
            derive_namespace(None)
