"""
User Model

Users are principals in the system-wide catalog. A user can belong to
several schools through memberships.

primary_school_id is a denormalized convenience pointer to the primary
membership. It can drift from user_schools.is_primary (or both can be
empty); the resolver tolerates that instead of guessing which is right.
"""
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from schoolspace.database import Base
from schoolspace.models.school import utcnow
import enum


class UserRole(str, enum.Enum):
    """
    Platform-wide roles.

    PLATFORM_ADMIN operates the platform and has no school context.
    The rest act inside a school.
    """
    PLATFORM_ADMIN = "platform_admin"
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    role = Column(String(20), default=UserRole.TEACHER.value, nullable=False)

    primary_school_id = Column(
        Integer,
        ForeignKey("schools.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User {self.email}>"
