"""Device credential management API routes."""

import uuid
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.auth.device import DeviceAuth, client_ip
from fieldsync.core.audit import AuditEvent, audit_sink
from fieldsync.core.device_credentials import device_credential_manager
from fieldsync.database import get_db
from fieldsync.schemas import CamelModel

router = APIRouter(prefix="/api/device-tokens", tags=["device-tokens"])


class DeviceTokenInfo(CamelModel):
    """One of the caller's device credentials. The secret string is never returned."""

    id: str
    device_id: str
    device_info: str | None = None
    created_at: datetime
    last_used: datetime
    expires_at: datetime
    is_revoked: bool
    ip_address: str | None = None
    is_current: bool


class DeviceTokenListResponse(CamelModel):
    """Credentials of the calling user."""

    success: bool
    tokens: list[DeviceTokenInfo]


class RevokeResponse(CamelModel):
    """Revocation result."""

    success: bool
    message: str
    revoked_count: int | None = None


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


@router.get("", response_model=DeviceTokenListResponse)
async def list_device_tokens(
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """List the caller's device credentials, most recently used first."""
    credentials = await device_credential_manager.list_for_user(db, auth.user.id)
    return DeviceTokenListResponse(
        success=True,
        tokens=[
            DeviceTokenInfo(
                id=c.id,
                device_id=c.device_id,
                device_info=c.device_info,
                created_at=c.created_at,
                last_used=c.last_used_at,
                expires_at=c.expires_at,
                is_revoked=c.is_revoked,
                ip_address=c.ip_address,
                is_current=c.id == auth.id,
            )
            for c in credentials
        ],
    )


@router.delete("", response_model=RevokeResponse)
async def revoke_other_device_tokens(
    request: Request,
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Revoke every credential of the caller except the one in use."""
    count = await device_credential_manager.revoke_all(
        db,
        auth.user.id,
        revoked_by=auth.user.id,
        exclude_id=auth.id,
    )

    await audit_sink.emit(db, AuditEvent(
        action="all_device_tokens_revoked",
        entity_type="device_token",
        user_id=auth.user.id,
        new_values={"exceptCurrentToken": auth.id, "revokedCount": count},
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    ))

    return RevokeResponse(
        success=True,
        message="All other device tokens revoked successfully",
        revoked_count=count,
    )


@router.post("/{token_id}/revoke", response_model=RevokeResponse)
async def revoke_device_token(
    token_id: str,
    request: Request,
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Revoke one of the caller's credentials.

    ``token_id`` is either the credential's id or the credential string
    itself.
    """
    if _is_uuid(token_id):
        credential = await device_credential_manager.get(db, token_id)
    else:
        credential = await device_credential_manager.find_by_raw_token(db, token_id)

    # Someone else's credential is reported exactly like a missing one
    if credential is None or credential.user.id != auth.user.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device token not found",
        )

    if credential.is_revoked:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Device token is already revoked",
        )

    revoked = await device_credential_manager.revoke(db, credential.id, revoked_by=auth.user.id)
    if not revoked:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to revoke device token",
        )

    await audit_sink.emit(db, AuditEvent(
        action="device_token_revoked",
        entity_type="device_token",
        entity_id=credential.id,
        user_id=auth.user.id,
        old_values={
            "deviceId": credential.device_id,
            "deviceInfo": credential.device_info,
            "lastUsed": credential.last_used_at.isoformat(),
        },
        new_values={"isRevoked": True, "revokedBy": auth.user.id},
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    ))

    return RevokeResponse(success=True, message="Device token revoked successfully")
