"""Device credential authentication for API routes."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.core.device_credentials import (
    CredentialInfo,
    VerificationResult,
    device_credential_manager,
)
from fieldsync.core.logging import set_device_context
from fieldsync.database import get_db

security = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> str | None:
    """Best-effort client address, honouring a proxy's X-Forwarded-For."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def verify_device_request(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
    db: AsyncSession,
) -> VerificationResult | None:
    """Verify the bearer credential of a request.

    Returns None when no credential was presented at all.
    """
    if not credentials or not credentials.credentials:
        return None

    result = await device_credential_manager.verify(
        db,
        credentials.credentials,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    if result.valid:
        set_device_context(user_id=result.credential.user.id, device_id=result.credential.device_id)
    return result


async def get_device_auth(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CredentialInfo:
    """Require a valid device credential."""
    result = await verify_device_request(request, credentials, db)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No authorization token provided",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not result.valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired device token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return result.credential


DeviceAuth = Annotated[CredentialInfo, Depends(get_device_auth)]
