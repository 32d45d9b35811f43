"""Bulk synchronization API routes."""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import AliasChoices, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.auth.device import DeviceAuth, client_ip
from fieldsync.core.audit import AuditEvent, audit_sink
from fieldsync.core.sync_processor import (
    BatchTooLargeError,
    SyncBatchItem,
    SyncOutcome,
    sync_processor,
)
from fieldsync.database import get_db
from fieldsync.schemas import CamelModel

router = APIRouter(prefix="/api/sync", tags=["sync"])


# ============================================================================
# Request/Response Models
# ============================================================================


class UploadForm(CamelModel):
    """One form in an upload batch."""

    local_id: str | None = None
    encrypted_data: Any = None
    checksum: str | None = None


class UploadRequest(CamelModel):
    """Batch of forms encrypted under one shared key."""

    forms: list[UploadForm] | None = None
    encryption_key: str | None = None


class FormResult(CamelModel):
    """Outcome for one uploaded form."""

    local_id: str | None = None
    success: bool
    survey_id: str | None = None
    timestamp: datetime | None = None
    ack: str | None = None
    error: str | None = None
    existing_id: str | None = None

    @classmethod
    def from_outcome(cls, outcome: SyncOutcome) -> "FormResult":
        return cls(
            local_id=outcome.local_id,
            success=outcome.success,
            survey_id=outcome.survey_id,
            timestamp=outcome.timestamp,
            ack=outcome.ack,
            error=outcome.error,
            existing_id=outcome.existing_id,
        )


class UploadResponse(CamelModel):
    """Per-form outcomes, in upload order."""

    success: bool
    processed: int
    results: list[FormResult]


class SyncedSurvey(CamelModel):
    """A record the caller has synced."""

    server_id: str
    survey_unique_id: str
    submitted_at: datetime


class SyncSummaryResponse(CamelModel):
    """What the server holds from the calling user."""

    success: bool
    total_synced: int
    last_sync_time: datetime
    surveys: list[SyncedSurvey]


class StatusRequest(CamelModel):
    """Natural ids whose sync state the device wants to know."""

    survey_unique_ids: list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("surveyUniqueIds", "surveyIds", "survey_unique_ids"),
    )


class SurveyStatus(CamelModel):
    """Sync state of one natural id."""

    status: str
    server_id: str | None = None
    timestamp: datetime | None = None


class StatusResponse(CamelModel):
    """Sync state keyed by natural id."""

    success: bool
    statuses: dict[str, SurveyStatus]


# ============================================================================
# API Endpoints
# ============================================================================


@router.post("/upload", response_model=UploadResponse)
async def upload(
    request: Request,
    data: UploadRequest,
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Upload a batch of forms.

    Every form is checked and stored independently. The response lists one
    result per form in the order they were sent; a failed form does not
    affect the others.
    """
    if not data.forms:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No forms provided",
        )
    if not data.encryption_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Encryption key is required",
        )

    items = [
        SyncBatchItem(local_id=f.local_id, encrypted_data=f.encrypted_data, checksum=f.checksum)
        for f in data.forms
    ]

    try:
        outcomes = await sync_processor.process_batch(
            db,
            items,
            data.encryption_key,
            auth.user,
            device_id=auth.device_id,
            ip_address=client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
    except BatchTooLargeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    return UploadResponse(
        success=True,
        processed=len(outcomes),
        results=[FormResult.from_outcome(o) for o in outcomes],
    )


@router.get("/status", response_model=SyncSummaryResponse)
async def sync_summary(
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Records the caller has submitted, with the credential's last use."""
    records = await sync_processor.submitted_by(db, auth.user.id)
    return SyncSummaryResponse(
        success=True,
        total_synced=len(records),
        last_sync_time=auth.last_used_at,
        surveys=[
            SyncedSurvey(
                server_id=r.id,
                survey_unique_id=r.survey_unique_id,
                submitted_at=r.submitted_at,
            )
            for r in records
        ],
    )


@router.post("/status", response_model=StatusResponse)
async def sync_status(
    request: Request,
    data: StatusRequest,
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Report ``synced`` or ``pending`` for each requested natural id."""
    if data.survey_unique_ids is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Survey IDs array is required",
        )

    entries = await sync_processor.sync_status(db, data.survey_unique_ids)
    statuses = {
        e.survey_unique_id: SurveyStatus(
            status="synced" if e.synced else "pending",
            server_id=e.survey_id,
            timestamp=e.submitted_at,
        )
        for e in entries
    }

    await audit_sink.emit(db, AuditEvent(
        action="sync_status_checked",
        entity_type="sync_operation",
        user_id=auth.user.id,
        new_values={
            "surveyIdsChecked": len(entries),
            "synced": sum(1 for e in entries if e.synced),
        },
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    ))

    return StatusResponse(success=True, statuses=statuses)
