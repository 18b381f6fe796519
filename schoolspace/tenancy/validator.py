"""
Namespace Validator

The single gate in front of every place a namespace identifier is
spliced into statement text. Identifiers cannot be bound parameters, so
they are checked against a closed allow-list instead of being escaped.

A namespace read from a credential claim, the registry or user input is
equally untrusted until it passes `is_valid_namespace`.
"""
import re
from typing import Any

from schoolspace.core.exceptions import InvalidNamespaceError

NAMESPACE_PREFIX = "school_"

# PostgreSQL truncates identifiers longer than 63 bytes
MAX_NAMESPACE_LENGTH = 63

NAMESPACE_PATTERN = re.compile(r"^school_[a-z0-9_]+$")


def is_valid_namespace(value: Any) -> bool:
    """Return True only for strings matching the namespace allow-list."""
    if not isinstance(value, str):
        return False
    if len(value) > MAX_NAMESPACE_LENGTH:
        return False
    # fullmatch so a trailing newline cannot slip past "$"
    return NAMESPACE_PATTERN.fullmatch(value) is not None


def require_valid_namespace(value: Any, source: str = "unknown") -> str:
    """Return `value` unchanged if valid, raise InvalidNamespaceError otherwise."""
    if not is_valid_namespace(value):
        raise InvalidNamespaceError(candidate=value if isinstance(value, str) else repr(value), source=source)
    return value


def derive_namespace(school_code: str) -> str:
    """
    Derive the namespace identifier for a school code.

    "LEAR_1291" -> "school_lear_1291". No character substitution is done:
    a code with characters outside [a-z0-9_] yields an identifier the
    validator rejects, instead of silently colliding with another school.
    """
    if not isinstance(school_code, str):
        raise InvalidNamespaceError(candidate=repr(school_code), source="school_code")
    return f"{NAMESPACE_PREFIX}{school_code.strip().lower()}"
