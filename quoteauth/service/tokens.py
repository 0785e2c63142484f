from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from quoteauth.config import Settings, portal_for_role
from quoteauth.logging import get_logger, log_security_event
from quoteauth.service.account_status import AccountStatusMachine
from quoteauth.service.devices import DeviceBindingManager
from quoteauth.storage.common import AuthStore, hash_token
from quoteauth.storage.errors import ConstraintViolation
from quoteauth.storage.models import (
    Account,
    FailureReason,
    RefreshToken,
    RevocationReason,
    utcnow,
)

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 48
_REUSE_REASONS = {RevocationReason.ROTATED.value, RevocationReason.REUSE_DETECTED.value}


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    family_id: str
    token_type: str = "bearer"


@dataclass(frozen=True)
class RefreshOutcome:
    tokens: Optional[TokenPair] = None
    account: Optional[Account] = None
    record: Optional[RefreshToken] = None
    failure: Optional[FailureReason] = None
    ip_mismatch: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None and self.tokens is not None


class TokenIssuer:
    """Stateless access tokens and rotating, single-use refresh tokens.

    Refresh tokens are opaque random strings; only their SHA-256 digest is
    persisted. Each login starts a family and each refresh replaces the live
    member of that family in a single store transaction.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        devices: DeviceBindingManager,
        statuses: AccountStatusMachine,
    ) -> None:
        self.store = store
        self.settings = settings
        self.devices = devices
        self.statuses = statuses
        # Allowance for small clock skew across nodes when checking JWT expiry
        self._clock_skew_leeway = timedelta(seconds=120)

    # -- JWT ----------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def decode_access(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        return payload

    def issue_purpose_token(
        self, account_id: str, purpose: str, ttl: timedelta
    ) -> str:
        """Signed single-purpose token, e.g. email verification."""
        exp = int((utcnow() + ttl).timestamp())
        return self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": account_id,
                "token_type": purpose,
                "jti": str(uuid.uuid4()),
                "exp": exp,
            }
        )

    def decode_purpose_token(self, token: str, purpose: str) -> Optional[str]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != purpose:
            return None
        return payload.get("sub")

    # -- issuance -----------------------------------------------------------

    def _access_token(self, account: Account) -> tuple[str, datetime]:
        now = utcnow()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "role": account.role,
            "portal": portal_for_role(account.role).value,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def _new_refresh(
        self, account_id: str, family_id: Optional[str] = None
    ) -> tuple[str, RefreshToken]:
        raw = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        record = RefreshToken.new(
            account_id,
            hash_token(raw),
            self.settings.refresh_token_ttl_minutes,
            family_id=family_id,
        )
        return raw, record

    def _pair(self, account: Account, raw_refresh: str, record: RefreshToken) -> TokenPair:
        access_token, access_exp = self._access_token(account)
        return TokenPair(
            access_token=access_token,
            refresh_token=raw_refresh,
            access_expires_at=access_exp,
            refresh_expires_at=record.expires_at,
            family_id=record.family_id,
        )

    def issue(self, account: Account) -> TokenPair:
        """Start a new token family for a fresh login."""
        raw, record = self._new_refresh(account.id)
        self.store.create_refresh_token(record)
        logger.info(
            "token_family_issued",
            account_id=account.id,
            family_id=record.family_id,
        )
        return self._pair(account, raw, record)

    # -- refresh ------------------------------------------------------------

    def lookup(self, raw_refresh: str) -> Optional[RefreshToken]:
        if not raw_refresh:
            return None
        return self.store.get_refresh_token_by_hash(hash_token(raw_refresh))

    def _handle_reuse(self, record: RefreshToken) -> RefreshOutcome:
        revoked = self.revoke_family(record.family_id, RevocationReason.REUSE_DETECTED.value)
        log_security_event(
            "refresh_token_reuse_detected",
            logger,
            account_id=record.account_id,
            family_id=record.family_id,
            token_id=record.id,
            superseded_by=record.superseded_by,
            revoked_tokens=revoked,
        )
        return RefreshOutcome(record=record, failure=FailureReason.TOKEN_REUSED)

    def refresh(
        self,
        raw_refresh: str,
        fingerprint: Optional[str],
        *,
        ip: Optional[str] = None,
    ) -> RefreshOutcome:
        record = self.lookup(raw_refresh)
        if not record:
            return RefreshOutcome(failure=FailureReason.TOKEN_INVALID)
        if record.revoked and record.revoked_reason in _REUSE_REASONS:
            return self._handle_reuse(record)

        account = self.store.get_account(record.account_id)
        if not account:
            return RefreshOutcome(record=record, failure=FailureReason.TOKEN_INVALID)
        policy = self.settings.portal_policy(portal_for_role(account.role))
        status = self.statuses.check(account, policy)
        if not status.allowed:
            return RefreshOutcome(account=account, record=record, failure=status.reason)

        if record.revoked:
            return RefreshOutcome(
                account=account, record=record, failure=FailureReason.TOKEN_INVALID
            )
        if record.is_expired():
            return RefreshOutcome(
                account=account, record=record, failure=FailureReason.TOKEN_EXPIRED
            )

        ip_mismatch = False
        if policy.requires_device_binding:
            binding = self.devices.verify(account.id, fingerprint, ip)
            if not binding.ok:
                return RefreshOutcome(
                    account=account, record=record, failure=FailureReason.DEVICE_MISMATCH
                )
            ip_mismatch = binding.ip_mismatch

        raw, successor = self._new_refresh(account.id, family_id=record.family_id)
        try:
            rotated = self.store.rotate_refresh_token(record.id, successor)
        except ConstraintViolation:
            rotated = False
        if not rotated:
            # A concurrent refresh won; this presentation is now a replay
            current = self.store.get_refresh_token(record.id) or record
            if current.revoked_reason in _REUSE_REASONS:
                return self._handle_reuse(current)
            return RefreshOutcome(
                account=account, record=current, failure=FailureReason.TOKEN_INVALID
            )
        logger.info(
            "refresh_token_rotated",
            account_id=account.id,
            family_id=successor.family_id,
            previous_token_id=record.id,
            token_id=successor.id,
        )
        return RefreshOutcome(
            tokens=self._pair(account, raw, successor),
            account=account,
            record=successor,
            ip_mismatch=ip_mismatch,
        )

    # -- revocation ---------------------------------------------------------

    def revoke_family(self, family_id: str, reason: str = RevocationReason.ADMIN.value) -> int:
        revoked = self.store.revoke_refresh_family(family_id, reason)
        logger.info(
            "token_family_revoked", family_id=family_id, reason=reason, revoked=revoked
        )
        return revoked

    def revoke_all_for_account(
        self,
        account_id: str,
        reason: str = RevocationReason.ADMIN.value,
        *,
        except_family_id: Optional[str] = None,
    ) -> int:
        revoked = self.store.revoke_account_refresh_tokens(
            account_id, reason, except_family_id=except_family_id
        )
        logger.info(
            "account_tokens_revoked",
            account_id=account_id,
            reason=reason,
            revoked=revoked,
            kept_family_id=except_family_id,
        )
        return revoked
