"""
Catalog Models

The system-wide catalog: schools, users and their memberships. These
tables live in the default schema, never inside a school namespace.
"""
from schoolspace.models.school import School, SchoolStatus
from schoolspace.models.user import User, UserRole
from schoolspace.models.membership import Membership

__all__ = ["School", "SchoolStatus", "User", "UserRole", "Membership"]
