from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_FINGERPRINT_LENGTH = 512
MAX_JSON_DEPTH = 10


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_suspended",
    "account_deactivated",
    "account_pending",
    "device_mismatch",
    "token_expired",
    "token_invalid",
    "token_reused",
    "weak_password",
    "too_many_attempts",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_browser_info(value: Optional[dict]) -> Optional[dict]:
    # Descriptive only; never consulted for security decisions
    if value is None:
        return None
    _validate_json_depth(value)
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)
    device_fingerprint: Optional[str] = Field(default=None, max_length=MAX_FINGERPRINT_LENGTH)
    browser_info: Optional[dict] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("browser_info")
    @classmethod
    def _validate_browser_info(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_browser_info(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)
    device_fingerprint: Optional[str] = Field(default=None, max_length=MAX_FINGERPRINT_LENGTH)
    browser_info: Optional[dict] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("browser_info")
    @classmethod
    def _validate_browser_info(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_browser_info(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)
    device_fingerprint: Optional[str] = Field(default=None, max_length=MAX_FINGERPRINT_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., max_length=4096)


class PasswordChangeRequest(BaseModel):
    old_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class AccountResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str
    email_verified: bool
    created_at: datetime


class AuthResponse(BaseModel):
    account: AccountResponse
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    device_binding: Optional[str] = None
    ip_mismatch_warning: bool = False
    verification_token: Optional[str] = None


class MeResponse(BaseModel):
    account_id: str
    role: str
    portal: str


class AdminActionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class LoginAttemptResponse(BaseModel):
    id: str
    account_id: Optional[str] = None
    email: Optional[str] = None
    success: bool
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    presented_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_mismatch_warning: bool = False
    attempt_type: str
    timestamp: datetime


class LoginHistoryResponse(BaseModel):
    account_id: str
    items: List[LoginAttemptResponse]


class AuditEventResponse(BaseModel):
    id: str
    action: str
    performed_by: Optional[str] = None
    reason: Optional[str] = None
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    created_at: datetime


class AuditListResponse(BaseModel):
    account_id: str
    items: List[AuditEventResponse]


class DeviceResetResponse(BaseModel):
    account: AccountResponse
    previous_binding_id: Optional[str] = None


class ResendVerificationRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class DeviceBindingResponse(BaseModel):
    id: str
    fingerprint: str
    registered_ip: Optional[str] = None
    browser_info: Optional[dict] = None
    is_active: bool
    created_at: datetime
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    deactivation_reason: Optional[str] = None


class AccountDetailResponse(BaseModel):
    account: AccountResponse
    active_binding: Optional[DeviceBindingResponse] = None
    bindings: List[DeviceBindingResponse]
