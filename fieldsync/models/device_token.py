"""Device token model for long-lived field device credentials.

Lifecycle:

    active ──(expiry passes)──> expired ──expire()──> revoked
       └────────────────revoke()──────────────────────┘

``expired`` is effectively revoked for authentication purposes. The revoked
flag on an expired row is set lazily by :meth:`DeviceToken.expire` the first
time the expiry is observed, with ``revocation_reason = "expired"`` so a
refresh within the grace period can still bring it back. Rows are never
deleted.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import String, Boolean, ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldsync.database import Base, GUID, UTCDateTime, utcnow


class DeviceTokenState(str, Enum):
    """Lifecycle state of a device token."""
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


REASON_EXPIRED = "expired"
REASON_REVOKED = "revoked"
REASON_LOGOUT = "logout"


class DeviceToken(Base):
    """Credential issued to one (user, device) pair."""

    __tablename__ = "device_tokens"
    __table_args__ = (
        # At most one live credential per (user, device)
        Index(
            "device_tokens_live_pair_idx",
            "user_id",
            "device_id",
            unique=True,
            sqlite_where=text("is_revoked = 0"),
            postgresql_where=text("is_revoked = false"),
        ),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(
        GUID(),
        ForeignKey("users.id"),
        nullable=False,
        index=True
    )
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    device_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(GUID(), nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    user: Mapped["User"] = relationship("User", lazy="selectin")

    def __repr__(self) -> str:
        return f"<DeviceToken {self.id} device={self.device_id}>"

    def state_at(self, now: datetime | None = None) -> DeviceTokenState:
        """Current lifecycle state. Pure; never mutates the row."""
        if self.is_revoked:
            return DeviceTokenState.REVOKED
        if self.expires_at <= (now or utcnow()):
            return DeviceTokenState.EXPIRED
        return DeviceTokenState.ACTIVE

    def expire(self, now: datetime | None = None) -> bool:
        """Apply the expired -> revoked transition.

        Returns True if the row changed. Active or already revoked rows are
        left untouched.
        """
        now = now or utcnow()
        if self.state_at(now) != DeviceTokenState.EXPIRED:
            return False
        self.is_revoked = True
        self.revoked_at = now
        self.revocation_reason = REASON_EXPIRED
        self.updated_at = now
        return True

    def revoke(
        self,
        revoked_by: str | None,
        reason: str = REASON_REVOKED,
        now: datetime | None = None,
    ) -> bool:
        """Revoke the credential. Idempotent: returns False if already revoked."""
        if self.is_revoked:
            return False
        now = now or utcnow()
        self.is_revoked = True
        self.revoked_at = now
        self.revoked_by = revoked_by
        self.revocation_reason = reason
        self.updated_at = now
        return True

    def rotate(self, token: str, expires_at: datetime, now: datetime | None = None) -> None:
        """Replace the credential string and expiry in place and mark it live again."""
        now = now or utcnow()
        self.is_revoked = False
        self.revoked_at = None
        self.revoked_by = None
        self.revocation_reason = None
        self.token = token
        self.expires_at = expires_at
        self.last_used_at = now
        self.updated_at = now

    def touch(self, ip_address: str | None, user_agent: str | None, now: datetime | None = None) -> None:
        """Record a successful use."""
        now = now or utcnow()
        self.last_used_at = now
        self.updated_at = now
        if ip_address:
            self.ip_address = ip_address
        if user_agent:
            self.user_agent = user_agent
