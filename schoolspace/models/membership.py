"""
Membership Model

Links a user to a school with a role inside that school. A user should
have at most one primary membership; the registry keeps it that way
when memberships are written through it.
"""
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Integer, Index
from sqlalchemy.orm import relationship
from schoolspace.database import Base
from schoolspace.models.school import utcnow


class Membership(Base):
    __tablename__ = "user_schools"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    school_id = Column(
        Integer,
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    role = Column(String(20), nullable=False, default="teacher")
    is_primary = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="memberships")
    school = relationship("School", back_populates="memberships")

    __table_args__ = (
        Index('idx_user_school_unique', 'user_id', 'school_id', unique=True),
        Index('idx_user_school_primary', 'user_id', 'is_primary'),
    )

    def __repr__(self):
        return f"<Membership user={self.user_id} school={self.school_id} primary={self.is_primary}>"
