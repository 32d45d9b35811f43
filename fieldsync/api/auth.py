"""Device authentication API routes.

A device signs in once with email and password and receives a long-lived
device credential. The remaining endpoints exchange, check and revoke it.
"""

import re
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.auth.device import DeviceAuth, client_ip, security, verify_device_request
from fieldsync.auth.passwords import verify_password
from fieldsync.core.audit import AuditEvent, audit_sink
from fieldsync.core.device_credentials import DeviceUser, device_credential_manager
from fieldsync.core.logging import get_logger
from fieldsync.database import get_db, utcnow
from fieldsync.models import AuditSeverity, Partner, User, UserRole
from fieldsync.models.device_token import REASON_LOGOUT
from fieldsync.schemas import CamelModel

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
DEVICE_ID_RE = re.compile(r"[A-Za-z0-9_-]{10,255}")


# ============================================================================
# Request/Response Models
# ============================================================================


class UserInfo(CamelModel):
    """User identity returned to the device."""

    id: str
    email: str
    name: str
    role: UserRole
    partner_id: str | None = None
    partner_name: str | None = None


class LoginRequest(CamelModel):
    """Device sign-in request."""

    email: str | None = None
    password: str | None = None
    device_id: str | None = None
    device_info: str | None = None


class LoginResponse(CamelModel):
    """Device sign-in response."""

    success: bool
    user: UserInfo
    device_token: str
    expires_at: datetime
    requires_pin_setup: bool = True
    message: str = "Login successful. Please set up your local PIN for offline access."


class RefreshRequest(CamelModel):
    """Credential refresh request."""

    refresh_token: str | None = None
    device_id: str | None = None


class RefreshResponse(CamelModel):
    """Credential refresh response."""

    success: bool
    device_token: str
    expires_at: datetime


class VerifyResponse(CamelModel):
    """Credential verification response."""

    valid: bool
    user: UserInfo | None = None
    device_id: str | None = None
    expires_at: datetime | None = None


class LogoutRequest(CamelModel):
    """Logout request."""

    device_id: str | None = None


class LogoutResponse(CamelModel):
    """Logout response."""

    success: bool
    message: str


def _user_info(user: DeviceUser, partner_name: str | None = None) -> UserInfo:
    return UserInfo(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        partner_id=user.partner_id,
        partner_name=partner_name,
    )


# ============================================================================
# API Endpoints
# ============================================================================


@router.post("/login", response_model=LoginResponse)
async def login(
    request: Request,
    data: LoginRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Sign in a device with email and password.

    Issues the device credential for (user, deviceId). Signing in again from
    the same device replaces the previous credential.
    """
    if not (data.email and data.password and data.device_id and data.device_info):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: email, password, deviceId, deviceInfo",
        )

    email = data.email.strip().lower()
    if not EMAIL_RE.fullmatch(email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid email format",
        )
    if not DEVICE_ID_RE.fullmatch(data.device_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid device ID format",
        )

    ip_address = client_ip(request)
    user_agent = request.headers.get("User-Agent")

    result = await db.execute(
        select(User).where(func.lower(User.email) == email, User.is_active == True)  # noqa: E712
    )
    user = result.scalar_one_or_none()

    if user is None or not verify_password(data.password, user.password_hash):
        reason = "user_not_found" if user is None else "invalid_password"
        logger.warning("Login failed", reason=reason, device_id=data.device_id)
        await audit_sink.emit(db, AuditEvent(
            action="login_failed",
            entity_type="user",
            entity_id=user.id if user else None,
            user_id=user.id if user else None,
            severity=AuditSeverity.WARNING,
            new_values={
                "email": email,
                "deviceId": data.device_id,
                "deviceInfo": data.device_info,
                "reason": reason,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    partner_name = None
    if user.partner_id:
        partner = await db.get(Partner, user.partner_id)
        partner_name = partner.name if partner else None

    issued = await device_credential_manager.issue_and_store(
        db,
        user,
        data.device_id,
        device_info=data.device_info,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    device_user = issued.credential.user

    # Stamped after the credential commit, which may roll back and retry
    await db.execute(
        update(User).where(User.id == device_user.id).values(last_login_at=utcnow())
    )
    await db.commit()

    await audit_sink.emit(db, AuditEvent(
        action="device_login",
        entity_type="device_token",
        entity_id=issued.credential.id,
        user_id=device_user.id,
        new_values={
            "deviceId": data.device_id,
            "deviceInfo": data.device_info,
            "expiresAt": issued.expires_at.isoformat(),
        },
        ip_address=ip_address,
        user_agent=user_agent,
    ))

    return LoginResponse(
        success=True,
        user=_user_info(device_user, partner_name),
        device_token=issued.token,
        expires_at=issued.expires_at,
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    request: Request,
    data: RefreshRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Exchange a device credential for a new one.

    The refresh token is the credential previously issued to this device. It
    is accepted while live, and for a grace period after it expires.
    """
    if not (data.refresh_token and data.device_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: refreshToken, deviceId",
        )

    result = await device_credential_manager.refresh(
        db,
        data.refresh_token,
        data.device_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired refresh token",
        )

    return RefreshResponse(
        success=True,
        device_token=result.issued.token,
        expires_at=result.issued.expires_at,
    )


@router.post("/verify", response_model=VerifyResponse)
async def verify(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Check whether the presented device credential is still valid.

    ``requiresReauth`` tells the device that only a password sign-in can
    recover (the credential expired or was revoked).
    """
    result = await verify_device_request(request, credentials, db)

    if result is None or not result.valid:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={
                "valid": False,
                "error": "No authorization token provided" if result is None else "Invalid token",
                "requiresReauth": True if result is None else result.requires_reauth,
            },
        )

    credential = result.credential
    return VerifyResponse(
        valid=True,
        user=_user_info(credential.user),
        device_id=credential.device_id,
        expires_at=credential.expires_at,
    )


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    request: Request,
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
    data: Annotated[LogoutRequest | None, Body()] = None,
):
    """Revoke the credential the request was made with."""
    if data is not None and data.device_id and data.device_id != auth.device_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Device ID mismatch",
        )

    revoked = await device_credential_manager.revoke(db, auth.id, auth.user.id, reason=REASON_LOGOUT)
    if not revoked:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to revoke device token",
        )

    await audit_sink.emit(db, AuditEvent(
        action="device_logout",
        entity_type="device_token",
        entity_id=auth.id,
        user_id=auth.user.id,
        old_values={"deviceId": auth.device_id, "deviceInfo": auth.device_info},
        new_values={"isRevoked": True},
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    ))

    return LogoutResponse(success=True, message="Logged out and device token revoked")
