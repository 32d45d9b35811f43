"""Bulk survey synchronization.

Devices collect surveys offline and upload them in batches. Each item is
checked, decoded, authorized and stored on its own: one bad item never
affects its neighbours, and every item gets exactly one outcome, in input
order. Duplicate detection relies on the unique natural id column, so two
devices racing with the same survey still end up with a single record.
"""

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.config import get_settings
from fieldsync.core.access import resolve_school_access
from fieldsync.core.audit import AuditEvent, AuditSink, audit_sink
from fieldsync.core.device_credentials import DeviceUser
from fieldsync.core.logging import get_logger
from fieldsync.core.survey_policy import compute_edit_deadlines, parse_unique_id
from fieldsync.database import utcnow
from fieldsync.models import AuditSeverity, SurveyResponse
from fieldsync.schemas.survey import SurveyPayload, SurveySubmission

logger = get_logger(__name__)

IV_SIZE = 16
ACK_MESSAGE = "Form received and processed successfully"


class SyncError(Exception):
    """Base sync error."""
    pass


class BatchTooLargeError(SyncError):
    """Batch exceeds the configured ceiling."""
    pass


class PayloadDecodeError(SyncError):
    """Item payload could not be decrypted or parsed."""
    pass


class OutcomeStatus(str, Enum):
    """Per-item result of a sync or submit."""
    SUCCESS = "success"
    INTEGRITY_FAILURE = "integrity_failure"
    MALFORMED = "malformed"
    INVALID_IDENTIFIER = "invalid_identifier"
    ACCESS_DENIED = "access_denied"
    DUPLICATE = "duplicate"
    PROCESSING_ERROR = "processing_error"


# Caller-facing messages; internal detail goes to the log and the audit trail
OUTCOME_MESSAGES = {
    OutcomeStatus.INTEGRITY_FAILURE: "Checksum verification failed - data may be corrupted",
    OutcomeStatus.MALFORMED: "Invalid form data structure",
    OutcomeStatus.INVALID_IDENTIFIER: "Invalid survey unique ID format",
    OutcomeStatus.ACCESS_DENIED: "School access denied",
    OutcomeStatus.DUPLICATE: "Duplicate survey",
    OutcomeStatus.PROCESSING_ERROR: "Failed to process form",
}


@dataclass
class SyncBatchItem:
    """One uploaded form. Never persisted."""
    local_id: str
    encrypted_data: Any
    checksum: str


@dataclass
class SyncOutcome:
    """Result for one item."""
    local_id: Optional[str]
    status: OutcomeStatus
    survey_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    existing_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @property
    def error(self) -> Optional[str]:
        return OUTCOME_MESSAGES.get(self.status)

    @property
    def ack(self) -> Optional[str]:
        return ACK_MESSAGE if self.success else None


@dataclass
class SyncStatusEntry:
    """Server-side state of one natural id."""
    survey_unique_id: str
    synced: bool
    survey_id: Optional[str] = None
    submitted_at: Optional[datetime] = None


def compute_checksum(encrypted_data: str, shared_key: str) -> str:
    """Hex SHA-256 of the payload string followed by the shared key."""
    return hashlib.sha256(f"{encrypted_data}{shared_key}".encode("utf-8")).hexdigest()


def _decrypt(encrypted_data: str, shared_key: str) -> bytes:
    try:
        key = base64.b64decode(shared_key, validate=True)
        blob = base64.b64decode(encrypted_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PayloadDecodeError("Payload is neither JSON nor base64") from e

    if len(blob) <= IV_SIZE or (len(blob) - IV_SIZE) % 16:
        raise PayloadDecodeError("Ciphertext has invalid length")

    iv, ciphertext = blob[:IV_SIZE], blob[IV_SIZE:]
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise PayloadDecodeError("Failed to decrypt form data") from e


def decode_payload(encrypted_data: Any, shared_key: str) -> dict[str, Any]:
    """Turn an uploaded payload into the survey document.

    Accepts a JSON object (plaintext transport, checksum still applies) or
    base64 of ``IV || AES-CBC/PKCS7 ciphertext`` under the base64 shared key.

    Raises:
        PayloadDecodeError: If the payload cannot be turned into a JSON object
    """
    if isinstance(encrypted_data, dict):
        return encrypted_data
    if not isinstance(encrypted_data, str):
        raise PayloadDecodeError("Payload must be a string")

    try:
        document = json.loads(encrypted_data)
    except json.JSONDecodeError:
        plaintext = _decrypt(encrypted_data, shared_key)
        try:
            document = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PayloadDecodeError("Decrypted payload is not JSON") from e

    if not isinstance(document, dict):
        raise PayloadDecodeError("Payload is not a JSON object")
    return document


class SyncProcessor:
    """Stores uploaded surveys."""

    def __init__(self, audit: AuditSink | None = None):
        self.audit = audit or audit_sink

    async def _audit_item(
        self,
        db: AsyncSession,
        user: DeviceUser,
        outcome: SyncOutcome,
        severity: AuditSeverity,
        reason: str,
        device_id: str | None,
        survey_unique_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await self.audit.emit(db, AuditEvent(
            action="bulk_sync_form_error",
            entity_type="survey_response",
            entity_id=outcome.existing_id,
            user_id=user.id,
            severity=severity,
            new_values={
                "localId": outcome.local_id,
                "status": outcome.status.value,
                "reason": reason,
                "surveyUniqueId": survey_unique_id,
                "deviceId": device_id,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        ))

    async def find_existing(self, db: AsyncSession, survey_unique_id: str) -> SurveyResponse | None:
        """Look up a record by natural id."""
        result = await db.execute(
            select(SurveyResponse).where(SurveyResponse.survey_unique_id == survey_unique_id)
        )
        return result.scalar_one_or_none()

    async def _store(
        self,
        db: AsyncSession,
        payload: SurveyPayload,
        user: DeviceUser,
        device_id: str | None,
        local_id: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SyncOutcome:
        """Identifier, authorization, duplicate and insert steps."""
        uid = payload.survey_unique_id

        parsed = parse_unique_id(uid)
        if parsed is None:
            outcome = SyncOutcome(local_id=local_id, status=OutcomeStatus.INVALID_IDENTIFIER)
            await self._audit_item(db, user, outcome, AuditSeverity.WARNING, "invalid_identifier",
                                   device_id, uid, ip_address, user_agent)
            return outcome

        access = await resolve_school_access(db, user, payload.school_id)
        if not access.allowed:
            outcome = SyncOutcome(local_id=local_id, status=OutcomeStatus.ACCESS_DENIED)
            logger.warning(
                "School access denied",
                school_id=payload.school_id,
                reason=access.denial.value if access.denial else None,
            )
            await self._audit_item(db, user, outcome, AuditSeverity.WARNING,
                                   access.denial.value if access.denial else "access_denied",
                                   device_id, uid, ip_address, user_agent)
            return outcome

        existing = await self.find_existing(db, uid)
        if existing is not None:
            return SyncOutcome(
                local_id=local_id,
                status=OutcomeStatus.DUPLICATE,
                existing_id=existing.id,
            )

        now = utcnow()
        deadlines = compute_edit_deadlines(now)
        record = SurveyResponse(
            survey_unique_id=uid,
            district_code=parsed.district_code,
            school_code=parsed.school_code,
            class_number=parsed.class_number,
            section=parsed.section,
            roll_no=parsed.roll_no,
            school_id=access.school_id,
            district_id=access.district_id,
            partner_id=access.partner_id,
            survey_date=payload.survey_date,
            student_name=payload.student_name,
            sex=payload.sex,
            age=payload.age,
            consent=payload.consent,
            area_type=payload.area_type,
            school_type=payload.school_type,
            responses=payload.answers(),
            submitted_by=user.id,
            device_id=device_id,
            submitted_at=now,
            collected_at=payload.submitted_at,
            team_edit_deadline=deadlines.team,
            partner_edit_deadline=deadlines.partner,
            created_at=now,
            updated_at=now,
        )
        db.add(record)

        try:
            await db.commit()
        except IntegrityError:
            # Lost a race with an identical submission
            await db.rollback()
            existing = await self.find_existing(db, uid)
            if existing is None:
                raise
            logger.info("Concurrent duplicate resolved", survey_unique_id=uid)
            return SyncOutcome(
                local_id=local_id,
                status=OutcomeStatus.DUPLICATE,
                existing_id=existing.id,
            )

        logger.info("Survey stored", survey_id=record.id, survey_unique_id=uid)
        return SyncOutcome(
            local_id=local_id,
            status=OutcomeStatus.SUCCESS,
            survey_id=record.id,
            timestamp=now,
        )

    async def _process_item(
        self,
        db: AsyncSession,
        item: SyncBatchItem,
        shared_key: str,
        user: DeviceUser,
        device_id: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> SyncOutcome:
        local_id = item.local_id

        if isinstance(item.encrypted_data, str):
            expected = compute_checksum(item.encrypted_data, shared_key)
        else:
            expected = compute_checksum(
                json.dumps(item.encrypted_data, separators=(",", ":"), ensure_ascii=False), shared_key
            )
        provided = item.checksum if isinstance(item.checksum, str) else ""
        if not hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8")):
            outcome = SyncOutcome(local_id=local_id, status=OutcomeStatus.INTEGRITY_FAILURE)
            logger.warning("Checksum mismatch", local_id=local_id)
            await self._audit_item(db, user, outcome, AuditSeverity.CRITICAL, "checksum_mismatch",
                                   device_id, None, ip_address, user_agent)
            return outcome

        try:
            document = decode_payload(item.encrypted_data, shared_key)
            payload = SurveyPayload.model_validate(document)
        except (PayloadDecodeError, ValidationError) as e:
            outcome = SyncOutcome(local_id=local_id, status=OutcomeStatus.MALFORMED, detail=str(e))
            logger.warning("Malformed form payload", local_id=local_id, error=str(e))
            await self._audit_item(db, user, outcome, AuditSeverity.WARNING, "malformed",
                                   device_id, None, ip_address, user_agent)
            return outcome

        try:
            return await self._store(db, payload, user, device_id, local_id, ip_address, user_agent)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Failed to store form", local_id=local_id, error=str(e), exc_info=True)
            outcome = SyncOutcome(local_id=local_id, status=OutcomeStatus.PROCESSING_ERROR)
            await self._audit_item(db, user, outcome, AuditSeverity.ERROR, "storage_error",
                                   device_id, payload.survey_unique_id, ip_address, user_agent)
            return outcome

    async def process_batch(
        self,
        db: AsyncSession,
        items: list[SyncBatchItem],
        shared_key: str,
        user: DeviceUser,
        device_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> list[SyncOutcome]:
        """Process an uploaded batch.

        Returns one outcome per item, in input order. Each stored item is
        committed before the next one is looked at.

        Raises:
            BatchTooLargeError: If the batch exceeds ``sync_max_batch_size``
        """
        max_batch = get_settings().sync_max_batch_size
        if len(items) > max_batch:
            raise BatchTooLargeError(f"Maximum {max_batch} forms per batch")

        outcomes = []
        for item in items:
            outcomes.append(await self._process_item(
                db, item, shared_key, user, device_id, ip_address, user_agent,
            ))

        succeeded = sum(1 for o in outcomes if o.success)
        logger.info(
            "Batch processed",
            total=len(outcomes),
            succeeded=succeeded,
            failed=len(outcomes) - succeeded,
        )
        await self.audit.emit(db, AuditEvent(
            action="bulk_sync_completed",
            entity_type="sync_operation",
            user_id=user.id,
            new_values={
                "totalForms": len(outcomes),
                "successful": succeeded,
                "failed": len(outcomes) - succeeded,
                "deviceId": device_id,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        return outcomes

    async def submit_one(
        self,
        db: AsyncSession,
        data: dict[str, Any],
        user: DeviceUser,
        device_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SyncOutcome:
        """Store one already-decoded, complete questionnaire."""
        local_id = data.get("localId") if isinstance(data, dict) else None
        try:
            payload = SurveySubmission.model_validate(data)
        except ValidationError as e:
            missing = sorted({
                str(err["loc"][0]) for err in e.errors() if err["type"] == "missing" and err["loc"]
            })
            detail = f"Missing required fields: {', '.join(missing)}" if missing else str(e)
            return SyncOutcome(local_id=local_id, status=OutcomeStatus.MALFORMED, detail=detail)

        try:
            outcome = await self._store(db, payload, user, device_id, payload.local_id, ip_address, user_agent)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Failed to store survey", error=str(e), exc_info=True)
            return SyncOutcome(local_id=payload.local_id, status=OutcomeStatus.PROCESSING_ERROR)

        if outcome.success:
            await self.audit.emit(db, AuditEvent(
                action="survey_submitted",
                entity_type="survey_response",
                entity_id=outcome.survey_id,
                user_id=user.id,
                new_values={
                    "surveyUniqueId": payload.survey_unique_id,
                    "schoolId": payload.school_id,
                    "deviceId": device_id,
                },
                ip_address=ip_address,
                user_agent=user_agent,
            ))
        return outcome

    async def sync_status(
        self,
        db: AsyncSession,
        survey_unique_ids: list[str],
    ) -> list[SyncStatusEntry]:
        """Whether each natural id has reached the server."""
        if not survey_unique_ids:
            return []
        result = await db.execute(
            select(SurveyResponse).where(SurveyResponse.survey_unique_id.in_(survey_unique_ids))
        )
        found = {record.survey_unique_id: record for record in result.scalars().all()}
        return [
            SyncStatusEntry(
                survey_unique_id=uid,
                synced=uid in found,
                survey_id=found[uid].id if uid in found else None,
                submitted_at=found[uid].submitted_at if uid in found else None,
            )
            for uid in survey_unique_ids
        ]

    async def submitted_by(self, db: AsyncSession, user_id: str) -> list[SurveyResponse]:
        """Records submitted by a user, newest first."""
        result = await db.execute(
            select(SurveyResponse)
            .where(SurveyResponse.submitted_by == user_id)
            .order_by(SurveyResponse.submitted_at.desc())
        )
        return list(result.scalars().all())


# Singleton instance
sync_processor = SyncProcessor()
