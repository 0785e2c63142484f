from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from quoteauth.logging import get_logger
from quoteauth.service.account_status import DEACTIVATED, SUSPENDED, AccountStatusMachine
from quoteauth.service.audit import SessionAuditLog
from quoteauth.service.devices import DeviceBindingManager
from quoteauth.service.errors import ConflictError, Forbidden, NotFoundError
from quoteauth.service.tokens import TokenIssuer
from quoteauth.storage.common import AuthStore
from quoteauth.storage.models import (
    STAFF_ROLES,
    Account,
    AuditEvent,
    DeviceBinding,
    LoginAttempt,
    RevocationReason,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Authenticated principal resolved from an access token."""

    account_id: str
    role: str
    portal: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


@dataclass(frozen=True)
class DeviceResetResult:
    account: Account
    previous_binding: Optional[DeviceBinding]


@dataclass(frozen=True)
class AccountDetail:
    account: Account
    active_binding: Optional[DeviceBinding]
    bindings: List[DeviceBinding]


class AdminOverrideService:
    """Administrative holds and device resets, each written to the audit log."""

    def __init__(
        self,
        store: AuthStore,
        statuses: AccountStatusMachine,
        devices: DeviceBindingManager,
        tokens: TokenIssuer,
        audit: SessionAuditLog,
    ) -> None:
        self.store = store
        self.statuses = statuses
        self.devices = devices
        self.tokens = tokens
        self.audit = audit

    def _require_staff(self, actor: AuthContext, action: str) -> None:
        if not actor.is_staff:
            logger.warning(
                "admin_action_forbidden",
                actor_id=actor.account_id,
                role=actor.role,
                action=action,
            )
            raise Forbidden("admin access required")

    def _load(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    def suspend(self, actor: AuthContext, account_id: str, reason: Optional[str] = None) -> Account:
        self._require_staff(actor, "suspend")
        account = self._load(account_id)
        if account.status == SUSPENDED:
            raise ConflictError("account is already suspended")
        updated = self.statuses.suspend(account_id)
        revoked = self.tokens.revoke_all_for_account(
            account_id, RevocationReason.ACCOUNT_SUSPENDED.value
        )
        self.audit.record_admin_action(
            account_id,
            "suspend",
            performed_by=actor.account_id,
            reason=reason,
            old_values={"status": account.status},
            new_values={"status": updated.status, "revoked_tokens": revoked},
        )
        return updated

    def reactivate(self, actor: AuthContext, account_id: str, note: Optional[str] = None) -> Account:
        """Lift a suspension. Revoked refresh tokens stay revoked."""
        self._require_staff(actor, "reactivate")
        account = self._load(account_id)
        if account.status != SUSPENDED:
            raise ConflictError(
                "only suspended accounts can be reactivated",
                detail={"status": account.status},
            )
        updated = self.statuses.reactivate(account_id)
        self.audit.record_admin_action(
            account_id,
            "reactivate",
            performed_by=actor.account_id,
            reason=note,
            old_values={"status": account.status},
            new_values={"status": updated.status},
        )
        return updated

    def deactivate(self, actor: AuthContext, account_id: str, reason: Optional[str] = None) -> Account:
        """Close an account for good and revoke every refresh-token family."""
        self._require_staff(actor, "deactivate")
        account = self._load(account_id)
        if account.status == DEACTIVATED:
            raise ConflictError("account is already deactivated")
        if account.id == actor.account_id:
            raise Forbidden("administrators cannot deactivate their own account")
        updated = self.statuses.deactivate(account_id)
        revoked = self.tokens.revoke_all_for_account(
            account_id, RevocationReason.ACCOUNT_DEACTIVATED.value
        )
        self.audit.record_admin_action(
            account_id,
            "deactivate",
            performed_by=actor.account_id,
            reason=reason,
            old_values={"status": account.status},
            new_values={"status": updated.status, "revoked_tokens": revoked},
        )
        return updated

    def account_detail(self, actor: AuthContext, account_id: str) -> AccountDetail:
        self._require_staff(actor, "account_detail")
        account = self._load(account_id)
        bindings = self.devices.history(account_id)
        active = next((b for b in bindings if b.is_active), None)
        return AccountDetail(account=account, active_binding=active, bindings=bindings)

    def reset_device_binding(
        self, actor: AuthContext, account_id: str, reason: Optional[str] = None
    ) -> DeviceResetResult:
        self._require_staff(actor, "reset_device")
        account = self._load(account_id)
        previous = self.devices.reset(
            account_id, reason=reason, performed_by=actor.account_id
        )
        self.audit.record_admin_action(
            account_id,
            "reset_device",
            performed_by=actor.account_id,
            reason=reason,
            old_values={"binding_id": previous.id} if previous else None,
            new_values={"binding_id": None},
        )
        return DeviceResetResult(account=account, previous_binding=previous)

    def list_login_history(
        self, actor: AuthContext, account_id: str, limit: Optional[int] = None
    ) -> List[LoginAttempt]:
        self._require_staff(actor, "login_history")
        self._load(account_id)
        return self.audit.list_for_account(account_id, limit, viewer_is_admin=True)

    def list_audit_events(
        self, actor: AuthContext, account_id: str, limit: Optional[int] = None
    ) -> List[AuditEvent]:
        self._require_staff(actor, "audit_events")
        self._load(account_id)
        return self.audit.list_admin_actions(account_id, limit)
