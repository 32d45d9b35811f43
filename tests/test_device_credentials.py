"""Tests for device credential issuance, verification and lifecycle."""

import base64
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from fieldsync.core.device_credentials import (
    DeviceCredential,
    CredentialFormatError,
    VerificationFailure,
    has_valid_signature,
)
from fieldsync.database import utcnow
from fieldsync.models import DeviceToken, DeviceTokenState

DEVICE_ID = "android-device-0001"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _unb64(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


async def _live_rows(db_session, user_id, device_id=DEVICE_ID):
    result = await db_session.execute(
        select(DeviceToken).where(
            DeviceToken.user_id == user_id,
            DeviceToken.device_id == device_id,
            DeviceToken.is_revoked == False,  # noqa: E712
        )
    )
    return result.scalars().all()


class TestCredentialFormat:
    """Tests for the credential string format."""

    def test_encode_has_three_segments(self, credential_manager):
        """Test the credential is header.payload.signature."""
        token = credential_manager.issue("user-1", DEVICE_ID)

        assert token.count(".") == 2
        assert "=" not in token

    def test_header_and_payload(self, credential_manager):
        """Test header and claims are deterministic JSON."""
        token = credential_manager.issue("user-1", DEVICE_ID)
        header, payload, _ = token.split(".")

        assert _unb64(header) == b'{"alg":"HS256","typ":"FSD"}'
        claims = json.loads(_unb64(payload))
        assert claims["userId"] == "user-1"
        assert claims["deviceId"] == DEVICE_ID
        assert claims["type"] == "device_token"
        assert isinstance(claims["timestamp"], int)
        assert len(claims["random"]) == 32

    def test_decode_roundtrip(self, credential_manager):
        """Test decoding recovers the claims."""
        token = credential_manager.issue("user-1", DEVICE_ID)

        claims = DeviceCredential.decode(token)

        assert claims.user_id == "user-1"
        assert claims.device_id == DEVICE_ID
        assert has_valid_signature(token, credential_manager.secret)

    def test_each_issue_is_unique(self, credential_manager):
        """Test two credentials for the same pair differ."""
        assert credential_manager.issue("user-1", DEVICE_ID) != credential_manager.issue("user-1", DEVICE_ID)

    @pytest.mark.parametrize("token", [
        "",
        "abc",
        "a.b",
        "a.b.c.d",
        "..",
        "!!!.@@@.###",
    ])
    def test_decode_rejects_malformed(self, token):
        """Test malformed strings raise CredentialFormatError."""
        with pytest.raises(CredentialFormatError):
            DeviceCredential.decode(token)

    def test_decode_rejects_foreign_type(self, credential_manager):
        """Test a signed token of another type is not a device credential."""
        header = _b64(b'{"alg":"HS256","typ":"FSD"}')
        payload = _b64(b'{"type":"session","userId":"u","deviceId":"d","timestamp":1,"random":"x"}')

        with pytest.raises(CredentialFormatError):
            DeviceCredential.decode(f"{header}.{payload}.sig")


class TestVerify:
    """Tests for credential verification."""

    @pytest.mark.asyncio
    async def test_issue_then_verify(self, db_session, credential_manager, team_user):
        """Test a freshly issued credential verifies to the same user."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        result = await credential_manager.verify(db_session, issued.token, "10.0.0.1", "okhttp/4")

        assert result.valid is True
        assert result.failure is None
        assert result.credential.user.id == team_user.id
        assert result.credential.user.role == team_user.role
        assert result.credential.device_id == DEVICE_ID
        assert result.credential.ip_address == "10.0.0.1"
        assert result.credential.user_agent == "okhttp/4"

    @pytest.mark.asyncio
    async def test_issue_sets_expiry_one_year_out(self, db_session, credential_manager, team_user):
        """Test the default lifetime."""
        before = utcnow()
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        assert issued.expires_at - before >= timedelta(days=365)
        assert issued.expires_at - before < timedelta(days=365, minutes=1)

    @pytest.mark.asyncio
    async def test_signature_bit_flips_fail(self, db_session, credential_manager, audit_recorder, team_user):
        """Test flipping any single bit of the signature is rejected."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        header, payload, signature = issued.token.split(".")
        raw = _unb64(signature)

        for bit in range(len(raw) * 8):
            flipped = bytearray(raw)
            flipped[bit // 8] ^= 1 << (bit % 8)
            forged = f"{header}.{payload}.{_b64(bytes(flipped))}"

            result = await credential_manager.verify(db_session, forged)

            assert result.valid is False
            assert result.failure == VerificationFailure.BAD_SIGNATURE

        assert audit_recorder.actions().count("token_verification_failed") == len(raw) * 8

    @pytest.mark.asyncio
    async def test_tampered_payload_fails(self, db_session, credential_manager, team_user):
        """Test a payload naming another user does not verify."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        header, payload, signature = issued.token.split(".")
        claims = json.loads(_unb64(payload))
        claims["userId"] = "someone-else"
        forged_payload = _b64(json.dumps(claims, sort_keys=True, separators=(",", ":")).encode())

        result = await credential_manager.verify(db_session, f"{header}.{forged_payload}.{signature}")

        assert result.failure == VerificationFailure.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_malformed_is_rejected(self, db_session, credential_manager, audit_recorder):
        """Test garbage input is rejected as malformed and audited."""
        result = await credential_manager.verify(db_session, "not-a-credential")

        assert result.valid is False
        assert result.failure == VerificationFailure.MALFORMED
        assert audit_recorder.events[-1].new_values["reason"] == "malformed"

    @pytest.mark.asyncio
    async def test_signed_but_unknown_is_rejected(self, db_session, credential_manager, team_user):
        """Test a validly signed credential that was never stored."""
        token = credential_manager.issue(team_user.id, DEVICE_ID)

        result = await credential_manager.verify(db_session, token)

        assert result.failure == VerificationFailure.UNKNOWN

    @pytest.mark.asyncio
    async def test_expired_is_lazily_revoked(self, db_session, credential_manager, audit_recorder, team_user):
        """Test the first verification of an expired credential revokes the row."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        row = await db_session.get(DeviceToken, issued.credential.id)
        row.expires_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()
        assert row.is_revoked is False

        result = await credential_manager.verify(db_session, issued.token)

        assert result.valid is False
        assert result.failure == VerificationFailure.EXPIRED
        assert result.requires_reauth is True
        await db_session.refresh(row)
        assert row.is_revoked is True
        assert row.revoked_at is not None
        assert audit_recorder.events[-1].new_values["reason"] == "expired"

        again = await credential_manager.verify(db_session, issued.token)
        assert again.failure == VerificationFailure.REVOKED

    @pytest.mark.asyncio
    async def test_inactive_user_is_rejected(self, db_session, credential_manager, team_user):
        """Test a deactivated user's credential stops working."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        team_user.is_active = False
        await db_session.commit()

        result = await credential_manager.verify(db_session, issued.token)

        assert result.failure == VerificationFailure.INACTIVE_USER


class TestIssueAndStore:
    """Tests for the one-live-credential-per-device invariant."""

    @pytest.mark.asyncio
    async def test_issue_twice_leaves_one_live_row(self, db_session, credential_manager, team_user):
        """Test re-issuing for the same pair overwrites in place."""
        first = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        second = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        rows = await _live_rows(db_session, team_user.id)
        assert len(rows) == 1
        assert rows[0].id == first.credential.id == second.credential.id
        assert rows[0].token == second.token

        old = await credential_manager.verify(db_session, first.token)
        assert old.failure == VerificationFailure.UNKNOWN
        new = await credential_manager.verify(db_session, second.token)
        assert new.valid is True

    @pytest.mark.asyncio
    async def test_devices_are_independent(self, db_session, credential_manager, team_user):
        """Test different devices get separate rows."""
        await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        await credential_manager.issue_and_store(db_session, team_user, "android-device-0002")

        assert len(await _live_rows(db_session, team_user.id)) == 1
        assert len(await _live_rows(db_session, team_user.id, "android-device-0002")) == 1

    @pytest.mark.asyncio
    async def test_issue_after_revoke_creates_new_row(self, db_session, credential_manager, team_user):
        """Test a revoked row is kept and a new live row is created."""
        first = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        await credential_manager.revoke(db_session, first.credential.id, team_user.id)

        second = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        assert second.credential.id != first.credential.id
        assert len(await _live_rows(db_session, team_user.id)) == 1
        assert len(await credential_manager.list_for_user(db_session, team_user.id)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_insert_retried_as_update(self, db_session, credential_manager, team_user, monkeypatch):
        """Test losing the live-pair index race updates the winner's row."""
        user_id = team_user.id
        winner = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        live_row = credential_manager._live_row
        lookups = []

        async def missed_first_lookup(db, uid, device_id):
            lookups.append(device_id)
            if len(lookups) == 1:
                return None
            return await live_row(db, uid, device_id)

        monkeypatch.setattr(credential_manager, "_live_row", missed_first_lookup)

        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID, device_info="Pixel 8")

        assert len(lookups) == 2
        assert issued.credential.id == winner.credential.id
        assert issued.credential.device_info == "Pixel 8"
        rows = await _live_rows(db_session, user_id)
        assert len(rows) == 1
        assert rows[0].token == issued.token
        assert (await credential_manager.verify(db_session, issued.token)).valid is True


class TestRevoke:
    """Tests for revocation."""

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, db_session, credential_manager, team_user):
        """Test revoking twice keeps the first revocation intact."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        assert await credential_manager.revoke(db_session, issued.credential.id, team_user.id) is True
        row = await db_session.get(DeviceToken, issued.credential.id)
        first_revoked_at = row.revoked_at

        assert await credential_manager.revoke(db_session, issued.credential.id, "other") is True
        await db_session.refresh(row)
        assert row.is_revoked is True
        assert row.revoked_at == first_revoked_at
        assert row.revoked_by == team_user.id

    @pytest.mark.asyncio
    async def test_revoked_credential_fails_verification(self, db_session, credential_manager, team_user):
        """Test revocation takes effect immediately."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        await credential_manager.revoke(db_session, issued.credential.id, team_user.id)

        result = await credential_manager.verify(db_session, issued.token)

        assert result.failure == VerificationFailure.REVOKED
        assert result.requires_reauth is True

    @pytest.mark.asyncio
    async def test_revoke_unknown_id(self, db_session, credential_manager):
        """Test revoking a missing row returns False."""
        assert await credential_manager.revoke(db_session, "00000000-0000-4000-8000-000000000000", None) is False

    @pytest.mark.asyncio
    async def test_revoke_all_counts_current(self, db_session, credential_manager, team_user):
        """Test revoke_all includes the current credential unless excluded."""
        a = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        await credential_manager.issue_and_store(db_session, team_user, "android-device-0002")
        await credential_manager.issue_and_store(db_session, team_user, "android-device-0003")

        count = await credential_manager.revoke_all(db_session, team_user.id, team_user.id, exclude_id=a.credential.id)
        assert count == 2
        assert (await credential_manager.verify(db_session, a.token)).valid is True

        assert await credential_manager.revoke_all(db_session, team_user.id, team_user.id) == 1
        assert (await credential_manager.verify(db_session, a.token)).valid is False


class TestRefresh:
    """Tests for credential refresh."""

    @pytest.mark.asyncio
    async def test_refresh_active(self, db_session, credential_manager, team_user):
        """Test refreshing replaces the string on the same row."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        result = await credential_manager.refresh(db_session, issued.token, DEVICE_ID)

        assert result.success is True
        assert result.issued.credential.id == issued.credential.id
        assert result.issued.token != issued.token
        assert (await credential_manager.verify(db_session, issued.token)).valid is False
        assert (await credential_manager.verify(db_session, result.issued.token)).valid is True

    @pytest.mark.asyncio
    async def test_refresh_requires_matching_device(self, db_session, credential_manager, team_user):
        """Test a credential cannot be refreshed for another device."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        result = await credential_manager.refresh(db_session, issued.token, "android-device-9999")

        assert result.success is False
        assert result.failure == VerificationFailure.DEVICE_MISMATCH

    @pytest.mark.asyncio
    async def test_refresh_rejects_forged_artifact(self, db_session, credential_manager, team_user):
        """Test a guessable userId:timestamp style artifact is refused."""
        result = await credential_manager.refresh(db_session, f"{team_user.id}:1700000000000", DEVICE_ID)

        assert result.failure == VerificationFailure.MALFORMED

    @pytest.mark.asyncio
    async def test_refresh_within_grace(self, db_session, credential_manager, team_user):
        """Test an expired credential can be refreshed during the grace period."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        row = await db_session.get(DeviceToken, issued.credential.id)
        row.expires_at = utcnow() - timedelta(days=3)
        await db_session.commit()

        # Verification observes the expiry first
        assert (await credential_manager.verify(db_session, issued.token)).failure == VerificationFailure.EXPIRED

        result = await credential_manager.refresh(db_session, issued.token, DEVICE_ID)

        assert result.success is True
        await db_session.refresh(row)
        assert row.state_at() == DeviceTokenState.ACTIVE

    @pytest.mark.asyncio
    async def test_refresh_after_grace(self, db_session, credential_manager, team_user):
        """Test a credential expired beyond the grace period cannot be refreshed."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        row = await db_session.get(DeviceToken, issued.credential.id)
        row.expires_at = utcnow() - timedelta(days=31)
        await db_session.commit()

        result = await credential_manager.refresh(db_session, issued.token, DEVICE_ID)

        assert result.failure == VerificationFailure.EXPIRED

    @pytest.mark.asyncio
    async def test_refresh_revoked(self, db_session, credential_manager, team_user):
        """Test an explicitly revoked credential cannot be refreshed."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        await credential_manager.revoke(db_session, issued.credential.id, team_user.id)

        result = await credential_manager.refresh(db_session, issued.token, DEVICE_ID)

        assert result.failure == VerificationFailure.REVOKED

    @pytest.mark.asyncio
    async def test_refresh_superseded_expired(self, db_session, credential_manager, team_user):
        """Test an expired credential is not revived once the device signed in again."""
        first = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        row = await db_session.get(DeviceToken, first.credential.id)
        row.expires_at = utcnow() - timedelta(days=1)
        await db_session.commit()
        await credential_manager.verify(db_session, first.token)
        await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        result = await credential_manager.refresh(db_session, first.token, DEVICE_ID)

        assert result.failure == VerificationFailure.REVOKED
        assert len(await _live_rows(db_session, team_user.id)) == 1


class TestLookup:
    """Tests for credential lookup helpers."""

    @pytest.mark.asyncio
    async def test_find_by_raw_token(self, db_session, credential_manager, team_user):
        """Test looking up a row by its credential string."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)

        found = await credential_manager.find_by_raw_token(db_session, issued.token)

        assert found.id == issued.credential.id

    @pytest.mark.asyncio
    async def test_find_by_raw_token_requires_signature(self, db_session, credential_manager, team_user):
        """Test a forged string is never looked up."""
        issued = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        header, payload, _ = issued.token.split(".")

        assert await credential_manager.find_by_raw_token(db_session, f"{header}.{payload}.AAAA") is None

    @pytest.mark.asyncio
    async def test_list_orders_by_last_use(self, db_session, credential_manager, team_user):
        """Test the most recently used credential comes first."""
        a = await credential_manager.issue_and_store(db_session, team_user, DEVICE_ID)
        b = await credential_manager.issue_and_store(db_session, team_user, "android-device-0002")
        row = await db_session.get(DeviceToken, a.credential.id)
        row.last_used_at = utcnow() + timedelta(minutes=5)
        await db_session.commit()

        listed = await credential_manager.list_for_user(db_session, team_user.id)

        assert [c.id for c in listed] == [a.credential.id, b.credential.id]
