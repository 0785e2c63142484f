from __future__ import annotations

import dataclasses
import uuid
from typing import List, Optional

from quoteauth.logging import get_logger, truncate_fingerprint
from quoteauth.storage.common import AuthStore, clamp_limit, normalize_email
from quoteauth.storage.models import (
    AttemptType,
    AuditEvent,
    FailureReason,
    LoginAttempt,
)

logger = get_logger(__name__)


class SessionAuditLog:
    """Append-only record of authentication attempts and admin overrides."""

    def __init__(self, store: AuthStore, *, default_limit: int = 50) -> None:
        self.store = store
        self.default_limit = default_limit

    def record(
        self,
        account_id: Optional[str],
        success: bool,
        failure_reason: Optional[FailureReason | str] = None,
        *,
        ip: Optional[str] = None,
        fingerprint: Optional[str] = None,
        ip_mismatch_warning: bool = False,
        email: Optional[str] = None,
        user_agent: Optional[str] = None,
        attempt_type: AttemptType | str = AttemptType.LOGIN,
    ) -> LoginAttempt:
        reason = (
            failure_reason.value
            if isinstance(failure_reason, FailureReason)
            else failure_reason
        )
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            account_id=account_id,
            email=normalize_email(email) if email else None,
            success=success,
            failure_reason=None if success else reason,
            ip_address=ip,
            presented_fingerprint=fingerprint,
            user_agent=user_agent,
            ip_mismatch_warning=ip_mismatch_warning,
            attempt_type=(
                attempt_type.value if isinstance(attempt_type, AttemptType) else attempt_type
            ),
        )
        self.store.record_login_attempt(attempt)
        log_fn = logger.info if success else logger.warning
        log_fn(
            "auth_attempt_recorded",
            account_id=account_id,
            success=success,
            failure_reason=attempt.failure_reason,
            attempt_type=attempt.attempt_type,
            ip=ip,
            ip_mismatch_warning=ip_mismatch_warning,
        )
        return attempt

    def list_for_account(
        self, account_id: str, limit: Optional[int] = None, *, viewer_is_admin: bool = False
    ) -> List[LoginAttempt]:
        rows = self.store.list_login_attempts(
            account_id, clamp_limit(limit, self.default_limit)
        )
        if viewer_is_admin:
            return rows
        return [
            dataclasses.replace(
                row, presented_fingerprint=truncate_fingerprint(row.presented_fingerprint)
            )
            for row in rows
        ]

    def record_admin_action(
        self,
        account_id: str,
        action: str,
        *,
        performed_by: Optional[str],
        reason: Optional[str] = None,
        old_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            entity_type="account",
            entity_id=account_id,
            action=action,
            performed_by=performed_by,
            old_values=old_values,
            new_values=new_values,
            reason=reason,
        )
        self.store.append_audit_event(event)
        logger.info(
            "admin_action_audited",
            account_id=account_id,
            action=action,
            performed_by=performed_by,
            reason=reason,
        )
        return event

    def list_admin_actions(self, account_id: str, limit: Optional[int] = None) -> List[AuditEvent]:
        return self.store.list_audit_events(account_id, clamp_limit(limit, self.default_limit))
