"""Audit log model for security and data events."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from fieldsync.database import Base, GUID, JSONType, UTCDateTime, utcnow


class AuditSeverity(str, Enum):
    """How urgently an event should be looked at."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditLog(Base):
    """Audit log entry."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(GUID(), nullable=True, index=True)
    severity: Mapped[AuditSeverity] = mapped_column(
        SQLEnum(AuditSeverity),
        default=AuditSeverity.INFO,
        nullable=False
    )
    # {"old": {...} | None, "new": {...} | None}
    changes: Mapped[dict[str, Any] | None] = mapped_column(JSONType(), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.entity_type}>"
