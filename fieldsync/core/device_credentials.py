"""Device credential issuance, verification and lifecycle.

A field device authenticates once with email and password and then carries a
long-lived credential bound to its device identifier:

    base64url(header).base64url(payload).base64url(signature)

The header is ``{"alg":"HS256","typ":"FSD"}``, the payload names the user and
device, and the signature is HMAC-SHA256 over ``header.payload`` with
``DEVICE_TOKEN_SECRET``. The string alone is not enough to authenticate: the
matching live row in ``device_tokens`` must exist, so revocation is immediate.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.config import get_settings
from fieldsync.core.audit import AuditEvent, AuditSink, audit_sink
from fieldsync.core.logging import get_logger
from fieldsync.database import utcnow
from fieldsync.models import (
    ADMIN_ROLES,
    AuditSeverity,
    DeviceToken,
    DeviceTokenState,
    User,
    UserRole,
)
from fieldsync.models.device_token import REASON_EXPIRED, REASON_REVOKED

logger = get_logger(__name__)

CREDENTIAL_TYPE = "device_token"
HEADER = {"alg": "HS256", "typ": "FSD"}


class CredentialFormatError(ValueError):
    """Credential string is not a well-formed device credential."""


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise CredentialFormatError("Invalid base64url segment") from e


def _serialize(data: dict) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign(signing_input: str, secret: str) -> str:
    """HMAC-SHA256 signature of ``header.payload``, base64url encoded."""
    digest = hmac.new(
        secret.encode("utf-8"),
        signing_input.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64encode(digest)


def _split(token: str) -> tuple[str, str, str]:
    if not isinstance(token, str):
        raise CredentialFormatError("Credential must be a string")
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise CredentialFormatError("Credential must have three segments")
    return parts[0], parts[1], parts[2]


def has_valid_signature(token: str, secret: str) -> bool:
    """Recompute the signature and compare in constant time."""
    header, payload, signature = _split(token)
    try:
        expected = sign(f"{header}.{payload}", secret)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


@dataclass(frozen=True)
class DeviceCredential:
    """Claims carried by a device credential."""
    user_id: str
    device_id: str
    timestamp: int
    random: str
    type: str = CREDENTIAL_TYPE

    @classmethod
    def new(cls, user_id: str, device_id: str) -> "DeviceCredential":
        return cls(
            user_id=str(user_id),
            device_id=device_id,
            timestamp=int(time.time() * 1000),
            random=secrets.token_hex(16),
        )

    def to_payload(self) -> dict:
        return {
            "userId": self.user_id,
            "deviceId": self.device_id,
            "type": self.type,
            "timestamp": self.timestamp,
            "random": self.random,
        }

    def encode(self, secret: str) -> str:
        """Serialize and sign."""
        signing_input = f"{_b64encode(_serialize(HEADER))}.{_b64encode(_serialize(self.to_payload()))}"
        return f"{signing_input}.{sign(signing_input, secret)}"

    @classmethod
    def decode(cls, token: str) -> "DeviceCredential":
        """Parse the claims without checking the signature.

        Raises:
            CredentialFormatError: If the string is not a device credential
        """
        header_segment, payload_segment, _ = _split(token)
        try:
            header = json.loads(_b64decode(header_segment))
            payload = json.loads(_b64decode(payload_segment))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CredentialFormatError("Credential segments are not JSON") from e

        if header != HEADER:
            raise CredentialFormatError("Unsupported credential header")
        if not isinstance(payload, dict) or payload.get("type") != CREDENTIAL_TYPE:
            raise CredentialFormatError("Not a device credential")

        user_id = payload.get("userId")
        device_id = payload.get("deviceId")
        timestamp = payload.get("timestamp")
        random = payload.get("random")
        if not isinstance(user_id, str) or not user_id:
            raise CredentialFormatError("Missing userId")
        if not isinstance(device_id, str) or not device_id:
            raise CredentialFormatError("Missing deviceId")
        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise CredentialFormatError("Missing timestamp")
        if not isinstance(random, str):
            raise CredentialFormatError("Missing random")

        return cls(user_id=user_id, device_id=device_id, timestamp=timestamp, random=random)


class VerificationFailure(str, Enum):
    """Internal rejection reasons. Never shown to the caller."""
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    UNKNOWN = "unknown"
    EXPIRED = "expired"
    REVOKED = "revoked"
    INACTIVE_USER = "inactive_user"
    DEVICE_MISMATCH = "device_mismatch"


# Rejections after which the device must sign in again with a password
REAUTH_FAILURES = frozenset({
    VerificationFailure.EXPIRED,
    VerificationFailure.REVOKED,
    VerificationFailure.INACTIVE_USER,
})


@dataclass
class DeviceUser:
    """Identity of the user behind a credential.

    Plain values so callers can keep using it after a rollback expires the
    ORM instances of the session.
    """
    id: str
    email: str
    name: str
    role: UserRole
    partner_id: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "DeviceUser":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            partner_id=user.partner_id,
        )

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


@dataclass
class CredentialInfo:
    """Snapshot of a device_tokens row."""
    id: str
    user: DeviceUser
    device_id: str
    device_info: Optional[str]
    created_at: datetime
    expires_at: datetime
    last_used_at: datetime
    is_revoked: bool
    revoked_at: Optional[datetime]
    ip_address: Optional[str]
    user_agent: Optional[str]

    @classmethod
    def from_row(cls, row: DeviceToken, user: DeviceUser) -> "CredentialInfo":
        return cls(
            id=row.id,
            user=user,
            device_id=row.device_id,
            device_info=row.device_info,
            created_at=row.created_at,
            expires_at=row.expires_at,
            last_used_at=row.last_used_at,
            is_revoked=row.is_revoked,
            revoked_at=row.revoked_at,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
        )


@dataclass
class VerificationResult:
    """Outcome of verifying a presented credential."""
    valid: bool
    credential: Optional[CredentialInfo] = None
    failure: Optional[VerificationFailure] = None

    @property
    def requires_reauth(self) -> bool:
        return self.failure in REAUTH_FAILURES


@dataclass
class IssuedCredential:
    """A freshly issued or refreshed credential."""
    token: str
    expires_at: datetime
    credential: CredentialInfo


@dataclass
class RefreshResult:
    """Outcome of exchanging a credential for a new one."""
    success: bool
    issued: Optional[IssuedCredential] = None
    failure: Optional[VerificationFailure] = None


class DeviceCredentialManager:
    """Issues and validates device credentials."""

    def __init__(self, audit: AuditSink | None = None):
        self.audit = audit or audit_sink

    @property
    def secret(self) -> str:
        return get_settings().device_token_secret

    def issue(self, user_id: str, device_id: str) -> str:
        """Build and sign a new credential string."""
        return DeviceCredential.new(user_id, device_id).encode(self.secret)

    async def _live_row(self, db: AsyncSession, user_id: str, device_id: str) -> DeviceToken | None:
        result = await db.execute(
            select(DeviceToken).where(
                DeviceToken.user_id == user_id,
                DeviceToken.device_id == device_id,
                DeviceToken.is_revoked == False,  # noqa: E712
            )
        )
        return result.scalars().first()

    async def issue_and_store(
        self,
        db: AsyncSession,
        user: User,
        device_id: str,
        device_info: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedCredential:
        """Issue a credential and persist it as the single live row for the pair.

        An existing live row for (user, device) is overwritten in place. If a
        concurrent request inserts first, the unique index rejects our insert
        and the second attempt updates the winner's row instead.
        """
        device_user = DeviceUser.from_user(user)
        lifetime = timedelta(days=get_settings().device_token_lifetime_days)

        for attempt in range(2):
            now = utcnow()
            token = self.issue(device_user.id, device_id)
            expires_at = now + lifetime

            row = await self._live_row(db, device_user.id, device_id)
            if row is not None:
                row.rotate(token, expires_at, now)
                if device_info:
                    row.device_info = device_info
                row.touch(ip_address, user_agent, now)
            else:
                row = DeviceToken(
                    user_id=device_user.id,
                    device_id=device_id,
                    token=token,
                    device_info=device_info,
                    created_at=now,
                    updated_at=now,
                    expires_at=expires_at,
                    last_used_at=now,
                    is_revoked=False,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                db.add(row)

            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if attempt:
                    raise
                logger.info("Concurrent credential issue, retrying as update", device_id=device_id)
                continue

            logger.info("Device credential issued", user_id=device_user.id, device_id=device_id)
            return IssuedCredential(
                token=token,
                expires_at=expires_at,
                credential=CredentialInfo.from_row(row, device_user),
            )

        raise RuntimeError("unreachable")

    async def _find_row(self, db: AsyncSession, token: str, claims: DeviceCredential) -> DeviceToken | None:
        result = await db.execute(
            select(DeviceToken).where(
                DeviceToken.token == token,
                DeviceToken.device_id == claims.device_id,
                DeviceToken.user_id == claims.user_id,
            )
        )
        return result.scalars().first()

    async def _reject(
        self,
        db: AsyncSession,
        action: str,
        failure: VerificationFailure,
        token: str,
        claims: DeviceCredential | None = None,
        row_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        logger.warning(
            "Device credential rejected",
            action=action,
            reason=failure.value,
            device_id=claims.device_id if claims else None,
        )
        await self.audit.emit(db, AuditEvent(
            action=action,
            entity_type="device_token",
            entity_id=row_id,
            user_id=claims.user_id if claims else None,
            severity=AuditSeverity.WARNING,
            new_values={
                "reason": failure.value,
                "prefix": token[:20] if isinstance(token, str) else None,
                "deviceId": claims.device_id if claims else None,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        ))

    async def verify(
        self,
        db: AsyncSession,
        token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> VerificationResult:
        """Verify a presented credential.

        Routine failures are returned, not raised. Storage errors propagate.
        """
        action = "token_verification_failed"

        try:
            claims = DeviceCredential.decode(token)
            signature_ok = has_valid_signature(token, self.secret)
        except CredentialFormatError:
            await self._reject(db, action, VerificationFailure.MALFORMED, token,
                               ip_address=ip_address, user_agent=user_agent)
            return VerificationResult(valid=False, failure=VerificationFailure.MALFORMED)

        if not signature_ok:
            await self._reject(db, action, VerificationFailure.BAD_SIGNATURE, token, claims,
                               ip_address=ip_address, user_agent=user_agent)
            return VerificationResult(valid=False, failure=VerificationFailure.BAD_SIGNATURE)

        row = await self._find_row(db, token, claims)
        if row is None:
            await self._reject(db, action, VerificationFailure.UNKNOWN, token, claims,
                               ip_address=ip_address, user_agent=user_agent)
            return VerificationResult(valid=False, failure=VerificationFailure.UNKNOWN)

        row_id = row.id
        now = utcnow()
        state = row.state_at(now)

        if state == DeviceTokenState.EXPIRED:
            row.expire(now)
            await db.commit()
            await self._reject(db, action, VerificationFailure.EXPIRED, token, claims, row_id,
                               ip_address=ip_address, user_agent=user_agent)
            return VerificationResult(valid=False, failure=VerificationFailure.EXPIRED)

        if state == DeviceTokenState.REVOKED:
            await self._reject(db, action, VerificationFailure.REVOKED, token, claims, row_id,
                               ip_address=ip_address, user_agent=user_agent)
            return VerificationResult(valid=False, failure=VerificationFailure.REVOKED)

        user = await db.get(User, row.user_id)
        if user is None or not user.is_active:
            await self._reject(db, action, VerificationFailure.INACTIVE_USER, token, claims, row_id,
                               ip_address=ip_address, user_agent=user_agent)
            return VerificationResult(valid=False, failure=VerificationFailure.INACTIVE_USER)

        device_user = DeviceUser.from_user(user)
        row.touch(ip_address, user_agent, now)
        await db.commit()

        return VerificationResult(valid=True, credential=CredentialInfo.from_row(row, device_user))

    async def refresh(
        self,
        db: AsyncSession,
        raw_credential: str,
        device_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshResult:
        """Exchange a previously issued credential for a new one.

        The presented credential must verify, belong to ``device_id`` and
        still be on file. A credential that has expired is accepted until
        ``device_token_refresh_grace_days`` past its expiry, unless another
        credential has since been issued for the same device.
        """
        action = "token_refresh_failed"

        def failed(reason: VerificationFailure) -> RefreshResult:
            return RefreshResult(success=False, failure=reason)

        try:
            claims = DeviceCredential.decode(raw_credential)
            signature_ok = has_valid_signature(raw_credential, self.secret)
        except CredentialFormatError:
            await self._reject(db, action, VerificationFailure.MALFORMED, raw_credential,
                               ip_address=ip_address, user_agent=user_agent)
            return failed(VerificationFailure.MALFORMED)

        if not signature_ok:
            await self._reject(db, action, VerificationFailure.BAD_SIGNATURE, raw_credential, claims,
                               ip_address=ip_address, user_agent=user_agent)
            return failed(VerificationFailure.BAD_SIGNATURE)

        if claims.device_id != device_id:
            await self._reject(db, action, VerificationFailure.DEVICE_MISMATCH, raw_credential, claims,
                               ip_address=ip_address, user_agent=user_agent)
            return failed(VerificationFailure.DEVICE_MISMATCH)

        row = await self._find_row(db, raw_credential, claims)
        if row is None:
            await self._reject(db, action, VerificationFailure.UNKNOWN, raw_credential, claims,
                               ip_address=ip_address, user_agent=user_agent)
            return failed(VerificationFailure.UNKNOWN)

        row_id = row.id
        now = utcnow()
        grace = timedelta(days=get_settings().device_token_refresh_grace_days)

        reason = None
        if row.is_revoked and row.revocation_reason != REASON_EXPIRED:
            reason = VerificationFailure.REVOKED
        elif row.expires_at + grace <= now:
            row.expire(now)
            await db.commit()
            reason = VerificationFailure.EXPIRED
        elif row.is_revoked:
            # Lazily expired; only revivable while no newer credential is live
            live = await self._live_row(db, claims.user_id, claims.device_id)
            if live is not None and live.id != row_id:
                reason = VerificationFailure.REVOKED

        user = await db.get(User, row.user_id)
        if reason is None and (user is None or not user.is_active):
            reason = VerificationFailure.INACTIVE_USER

        if reason is not None:
            await self._reject(db, action, reason, raw_credential, claims, row_id,
                               ip_address=ip_address, user_agent=user_agent)
            return failed(reason)

        device_user = DeviceUser.from_user(user)
        token = self.issue(device_user.id, device_id)
        expires_at = now + timedelta(days=get_settings().device_token_lifetime_days)
        row.rotate(token, expires_at, now)
        row.touch(ip_address, user_agent, now)
        await db.commit()

        logger.info("Device credential refreshed", user_id=device_user.id, device_id=device_id)
        await self.audit.emit(db, AuditEvent(
            action="device_token_refreshed",
            entity_type="device_token",
            entity_id=row_id,
            user_id=device_user.id,
            new_values={"deviceId": device_id, "expiresAt": expires_at.isoformat()},
            ip_address=ip_address,
            user_agent=user_agent,
        ))

        return RefreshResult(
            success=True,
            issued=IssuedCredential(
                token=token,
                expires_at=expires_at,
                credential=CredentialInfo.from_row(row, device_user),
            ),
        )

    async def revoke(
        self,
        db: AsyncSession,
        credential_id: str,
        revoked_by: str | None,
        reason: str = REASON_REVOKED,
    ) -> bool:
        """Revoke a credential by row id.

        Revoking an already revoked credential is a no-op that still returns
        True. Returns False if the row does not exist or the write failed.
        """
        try:
            row = await db.get(DeviceToken, credential_id)
            if row is None:
                return False
            if row.revoke(revoked_by, reason=reason):
                await db.commit()
                logger.info("Device credential revoked", credential_id=credential_id, reason=reason)
            return True
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Failed to revoke device credential", credential_id=credential_id, error=str(e))
            return False

    async def revoke_all(
        self,
        db: AsyncSession,
        user_id: str,
        revoked_by: str | None,
        exclude_id: str | None = None,
    ) -> int:
        """Revoke every live credential of a user. Returns the number revoked."""
        query = select(DeviceToken).where(
            DeviceToken.user_id == user_id,
            DeviceToken.is_revoked == False,  # noqa: E712
        )
        if exclude_id:
            query = query.where(DeviceToken.id != exclude_id)

        result = await db.execute(query)
        now = utcnow()
        count = sum(1 for row in result.scalars().all() if row.revoke(revoked_by, now=now))
        await db.commit()

        logger.info("Device credentials revoked", user_id=user_id, count=count)
        return count

    async def _info(self, db: AsyncSession, row: DeviceToken) -> CredentialInfo:
        user = await db.get(User, row.user_id)
        return CredentialInfo.from_row(row, DeviceUser.from_user(user))

    async def get(self, db: AsyncSession, credential_id: str) -> CredentialInfo | None:
        """Look up a credential by row id."""
        row = await db.get(DeviceToken, credential_id)
        if row is None:
            return None
        return await self._info(db, row)

    async def find_by_raw_token(self, db: AsyncSession, token: str) -> CredentialInfo | None:
        """Look up a credential by its string, regardless of state.

        The signature must verify; an unsigned or forged string never reaches
        the database.
        """
        try:
            claims = DeviceCredential.decode(token)
            if not has_valid_signature(token, self.secret):
                return None
        except CredentialFormatError:
            return None

        row = await self._find_row(db, token, claims)
        if row is None:
            return None
        return await self._info(db, row)

    async def list_for_user(self, db: AsyncSession, user_id: str) -> list[CredentialInfo]:
        """All credentials of a user, most recently used first."""
        result = await db.execute(
            select(DeviceToken)
            .where(DeviceToken.user_id == user_id)
            .order_by(DeviceToken.last_used_at.desc())
        )
        return [await self._info(db, row) for row in result.scalars().all()]


# Singleton instance
device_credential_manager = DeviceCredentialManager()
