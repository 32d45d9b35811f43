"""User model for field staff and administrators."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import String, Boolean, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldsync.database import Base, GUID, UTCDateTime, utcnow


class UserRole(str, Enum):
    """Role of a user account."""
    NATIONAL_ADMIN = "national_admin"
    DATA_MANAGER = "data_manager"
    PARTNER_MANAGER = "partner_manager"
    TEAM_MEMBER = "team_member"


# Roles that are not restricted to a single partner's schools.
# This is the only definition; sync and single submit both read it.
ADMIN_ROLES = frozenset({UserRole.NATIONAL_ADMIN, UserRole.DATA_MANAGER})


class User(Base):
    """User account that can sign in from a field device."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        GUID(),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole), nullable=False, index=True)
    partner_id: Mapped[str | None] = mapped_column(
        GUID(),
        ForeignKey("partners.id"),
        nullable=True,
        index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Relationships
    partner: Mapped["Partner | None"] = relationship("Partner", lazy="selectin")

    def __repr__(self) -> str:
        return f"<User {self.email}>"

    @property
    def is_admin(self) -> bool:
        """Whether the user bypasses partner scoping."""
        return self.role in ADMIN_ROLES
