"""Audit sink.

Security and data events (credential failures, access denials, integrity
failures, successful syncs) are forwarded here. Writing an audit entry must
never change the outcome of the request that produced it, so storage errors
are logged and swallowed by the database sink.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.core.logging import get_logger, mask_sensitive
from fieldsync.models import AuditLog, AuditSeverity

logger = get_logger(__name__)


@dataclass
class AuditEvent:
    """One auditable event."""
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    severity: AuditSeverity = AuditSeverity.INFO
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def changes(self) -> dict[str, Any] | None:
        new_values = dict(self.new_values or {})
        new_values.update(self.extra)
        if self.old_values is None and not new_values:
            return None
        return {
            "old": mask_sensitive(self.old_values) if self.old_values else None,
            "new": mask_sensitive(new_values) if new_values else None,
        }


class AuditSink(ABC):
    """Destination for audit events."""

    @abstractmethod
    async def emit(self, db: AsyncSession, event: AuditEvent) -> None:
        """Record an event. Implementations must not raise."""
        pass


class DatabaseAuditSink(AuditSink):
    """Writes events to the ``audit_logs`` table.

    The entry is committed on its own. Callers emit after committing their
    own work so a failed audit write cannot roll it back.
    """

    async def emit(self, db: AsyncSession, event: AuditEvent) -> None:
        log = logger.warning if event.severity != AuditSeverity.INFO else logger.debug
        log(
            f"Audit: {event.action}",
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            severity=event.severity.value,
        )

        entry = AuditLog(
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            user_id=event.user_id,
            severity=event.severity,
            changes=event.changes(),
            ip_address=event.ip_address,
            user_agent=event.user_agent,
        )
        try:
            db.add(entry)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(
                "Failed to write audit entry",
                action=event.action,
                error=str(e),
            )


audit_sink = DatabaseAuditSink()
