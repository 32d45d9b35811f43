"""Single survey API routes."""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.auth.device import DeviceAuth, client_ip
from fieldsync.core.survey_policy import validate_unique_id
from fieldsync.core.sync_processor import OutcomeStatus, sync_processor
from fieldsync.database import get_db
from fieldsync.schemas import CamelModel

router = APIRouter(prefix="/api/surveys", tags=["surveys"])

# HTTP status for each submit outcome
OUTCOME_STATUS_CODES = {
    OutcomeStatus.SUCCESS: status.HTTP_200_OK,
    OutcomeStatus.MALFORMED: status.HTTP_400_BAD_REQUEST,
    OutcomeStatus.INVALID_IDENTIFIER: status.HTTP_400_BAD_REQUEST,
    OutcomeStatus.ACCESS_DENIED: status.HTTP_403_FORBIDDEN,
    OutcomeStatus.DUPLICATE: status.HTTP_409_CONFLICT,
    OutcomeStatus.PROCESSING_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

INVALID_ID_MESSAGE = (
    "Invalid survey unique ID format. "
    "Expected format: {district_code}-{school_code}-{class}-{section}-{roll_no}"
)


class SubmitResponse(CamelModel):
    """Result of a single submission."""

    success: bool
    local_id: str | None = None
    survey_id: str | None = None
    timestamp: datetime | None = None
    ack: str | None = None
    error: str | None = None
    details: str | None = None
    existing_id: str | None = None


class UniqueIdRequest(CamelModel):
    """Natural id to check."""

    survey_unique_id: str | None = None


class UniqueIdResponse(CamelModel):
    """Whether a natural id is well-formed and already taken."""

    success: bool
    is_valid: bool
    exists: bool
    message: str
    existing_survey_id: str | None = None


@router.post("/submit", response_model=SubmitResponse)
async def submit_survey(
    request: Request,
    data: Annotated[dict[str, Any], Body()],
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Submit one complete, unencrypted questionnaire.

    Status codes: 400 for an incomplete form or bad natural id, 403 when the
    school belongs to another partner, 409 when the natural id is taken (the
    body carries ``existingId``).
    """
    outcome = await sync_processor.submit_one(
        db,
        data,
        auth.user,
        device_id=auth.device_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )

    body = SubmitResponse(
        success=outcome.success,
        local_id=outcome.local_id,
        survey_id=outcome.survey_id,
        timestamp=outcome.timestamp,
        ack=outcome.ack,
        error=outcome.error,
        details=outcome.detail if outcome.status == OutcomeStatus.MALFORMED else None,
        existing_id=outcome.existing_id,
    )
    if outcome.success:
        return body

    return JSONResponse(
        status_code=OUTCOME_STATUS_CODES[outcome.status],
        content=body.model_dump(mode="json", by_alias=True),
    )


@router.post("/unique-id", response_model=UniqueIdResponse)
async def check_unique_id(
    data: UniqueIdRequest,
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Check a natural id before starting a form."""
    if not data.survey_unique_id or not data.survey_unique_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Survey unique ID is required",
        )

    survey_unique_id = data.survey_unique_id.strip()
    if not validate_unique_id(survey_unique_id):
        return UniqueIdResponse(
            success=True,
            is_valid=False,
            exists=False,
            message=INVALID_ID_MESSAGE,
        )

    existing = await sync_processor.find_existing(db, survey_unique_id)
    return UniqueIdResponse(
        success=True,
        is_valid=True,
        exists=existing is not None,
        message="Survey unique ID already exists" if existing else "Survey unique ID is available",
        existing_survey_id=existing.id if existing else None,
    )
