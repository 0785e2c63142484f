"""Storage contract and helpers shared between memory and postgres implementations.

The services only depend on :class:`AuthStore`; both backends honour the same
conditional-write semantics so that the concurrency guarantees hold whichever
store is configured.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from quoteauth.storage.models import (
    Account,
    AuditEvent,
    Credential,
    DeviceBinding,
    LoginAttempt,
    RefreshToken,
)

MAX_HISTORY_LIMIT = 500


# ============================================================================
# STORE CONTRACT
# ============================================================================


class AuthStore(Protocol):
    # accounts
    def create_account(
        self,
        email: str,
        *,
        role: str,
        status: str,
        email_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account_status(
        self,
        account_id: str,
        status: str,
        *,
        expected_from: Optional[Iterable[str]] = None,
    ) -> Optional[Account]: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]: ...

    # credentials
    def save_credential(self, credential: Credential) -> None: ...

    def get_credential(self, account_id: str) -> Optional[Credential]: ...

    def replace_credential(
        self, account_id: str, expected_hash: str, credential: Credential
    ) -> bool: ...

    # device bindings
    def get_active_binding(self, account_id: str) -> Optional[DeviceBinding]: ...

    def create_active_binding(self, binding: DeviceBinding) -> DeviceBinding: ...

    def deactivate_binding(
        self,
        account_id: str,
        *,
        deactivated_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[DeviceBinding]: ...

    def list_bindings(self, account_id: str) -> List[DeviceBinding]: ...

    # login attempts
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt: ...

    def list_login_attempts(self, account_id: str, limit: int = 50) -> List[LoginAttempt]: ...

    def count_recent_failures(self, email: str, since: datetime) -> int: ...

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(self, old_token_id: str, successor: RefreshToken) -> bool: ...

    def revoke_refresh_family(self, family_id: str, reason: str) -> int: ...

    def revoke_account_refresh_tokens(
        self, account_id: str, reason: str, *, except_family_id: Optional[str] = None
    ) -> int: ...

    def list_refresh_tokens(
        self, account_id: str, *, family_id: Optional[str] = None
    ) -> List[RefreshToken]: ...

    # admin audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(self, entity_id: str, limit: int = 50) -> List[AuditEvent]: ...


# ============================================================================
# HELPERS
# ============================================================================


def hash_token(raw_token: str) -> str:
    """Digest used to persist refresh tokens without storing the bearer value."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def clamp_limit(limit: Optional[int], default: int = 50) -> int:
    if limit is None or limit <= 0:
        return default
    return min(int(limit), MAX_HISTORY_LIMIT)


def is_login_failure_counted(attempt: LoginAttempt) -> bool:
    """Failures that count toward the per-email lockout window.

    Rejections issued by the lockout itself are excluded so the window
    does not extend on every retry.
    """
    return (
        not attempt.success
        and attempt.attempt_type == "login"
        and attempt.failure_reason != "too_many_attempts"
    )


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column that drivers may hand back as str or dict."""
    if raw_meta is None:
        return None
    if isinstance(raw_meta, dict):
        return raw_meta
    if isinstance(raw_meta, (bytes, bytearray)):
        raw_meta = raw_meta.decode()
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None
