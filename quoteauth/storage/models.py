from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountRole(str, Enum):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    ADMIN = "admin"
    EMPLOYEE = "employee"


STAFF_ROLES = frozenset({AccountRole.ADMIN.value, AccountRole.EMPLOYEE.value})


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"


class FailureReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    DEVICE_MISMATCH = "device_mismatch"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    ACCOUNT_PENDING = "account_pending"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    TOKEN_REUSED = "token_reused"
    FORBIDDEN = "forbidden"


class AttemptType(str, Enum):
    LOGIN = "login"
    REFRESH = "refresh"
    REGISTER = "register"


class RevocationReason(str, Enum):
    ROTATED = "rotated"
    LOGOUT = "logout"
    NEW_LOGIN = "new_login"
    REUSE_DETECTED = "reuse_detected"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    DEVICE_RESET = "device_reset"
    PASSWORD_CHANGED = "password_changed"
    ADMIN = "admin"


@dataclass
class Account:
    id: str
    email: str
    role: str = AccountRole.CUSTOMER.value
    status: str = AccountStatus.PENDING.value
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


@dataclass
class Credential:
    account_id: str
    password_hash: str
    salt: str
    algorithm: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class DeviceBinding:
    id: str
    account_id: str
    fingerprint: str
    browser_info: Dict | None = None
    registered_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    deactivation_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        fingerprint: str,
        *,
        registered_ip: Optional[str] = None,
        browser_info: Dict | None = None,
    ) -> "DeviceBinding":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            fingerprint=fingerprint,
            browser_info=browser_info,
            registered_ip=registered_ip,
        )


@dataclass
class LoginAttempt:
    id: str
    account_id: Optional[str]
    email: Optional[str]
    success: bool
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    presented_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_mismatch_warning: bool = False
    attempt_type: str = AttemptType.LOGIN.value
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    account_id: str
    family_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    superseded_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        ttl_minutes: int,
        *,
        family_id: Optional[str] = None,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            family_id=family_id or str(uuid.uuid4()),
            token_hash=token_hash,
            issued_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class AuditEvent:
    id: str
    entity_type: str
    entity_id: str
    action: str
    performed_by: Optional[str] = None
    old_values: Dict | None = None
    new_values: Dict | None = None
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
