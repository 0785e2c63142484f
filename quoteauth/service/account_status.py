from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from quoteauth.config import PortalPolicy
from quoteauth.logging import get_logger
from quoteauth.service.errors import ConflictError, NotFoundError
from quoteauth.storage.common import AuthStore
from quoteauth.storage.models import Account, AccountStatus, FailureReason

logger = get_logger(__name__)

PENDING = AccountStatus.PENDING.value
ACTIVE = AccountStatus.ACTIVE.value
SUSPENDED = AccountStatus.SUSPENDED.value
DEACTIVATED = AccountStatus.DEACTIVATED.value

# deactivated is terminal and never reachable straight from pending
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({ACTIVE, SUSPENDED}),
    ACTIVE: frozenset({SUSPENDED, DEACTIVATED}),
    SUSPENDED: frozenset({ACTIVE, DEACTIVATED}),
    DEACTIVATED: frozenset(),
}

_BLOCKED_REASONS = {
    SUSPENDED: FailureReason.ACCOUNT_SUSPENDED,
    DEACTIVATED: FailureReason.ACCOUNT_DEACTIVATED,
    PENDING: FailureReason.ACCOUNT_PENDING,
}


@dataclass(frozen=True)
class StatusCheck:
    allowed: bool
    reason: Optional[FailureReason] = None


class AccountStatusMachine:
    """Account lifecycle: pending, active, suspended, deactivated.

    Transitions are compare-and-set against the status read beforehand, so
    two administrators acting at once cannot both apply a transition from
    the same starting state.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    @staticmethod
    def can_authenticate(status: str, *, allow_pending: bool = False) -> bool:
        if status == ACTIVE:
            return True
        return status == PENDING and allow_pending

    def check(self, account: Account, policy: Optional[PortalPolicy] = None) -> StatusCheck:
        allow_pending = bool(policy and policy.allow_pending_login)
        if self.can_authenticate(account.status, allow_pending=allow_pending):
            return StatusCheck(True)
        reason = _BLOCKED_REASONS.get(account.status, FailureReason.ACCOUNT_DEACTIVATED)
        return StatusCheck(False, reason)

    def transition(
        self,
        account_id: str,
        target: str,
        *,
        allowed_from: Optional[FrozenSet[str]] = None,
    ) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        permitted = target in TRANSITIONS.get(account.status, frozenset())
        if allowed_from is not None:
            permitted = permitted and account.status in allowed_from
        if not permitted:
            raise ConflictError(
                f"cannot change account status from {account.status} to {target}",
                detail={"status": account.status, "target": target},
            )
        updated = self.store.update_account_status(
            account_id, target, expected_from=[account.status]
        )
        if not updated:
            # Someone else moved the account first; report what they left behind
            current = self.store.get_account(account_id)
            raise ConflictError(
                "account status changed concurrently",
                detail={"status": current.status if current else None, "target": target},
            )
        logger.info(
            "account_status_changed",
            account_id=account_id,
            from_status=account.status,
            to_status=target,
        )
        return updated

    def activate(self, account_id: str) -> Account:
        return self.transition(account_id, ACTIVE, allowed_from=frozenset({PENDING}))

    def suspend(self, account_id: str) -> Account:
        return self.transition(account_id, SUSPENDED)

    def reactivate(self, account_id: str) -> Account:
        return self.transition(account_id, ACTIVE, allowed_from=frozenset({SUSPENDED}))

    def deactivate(self, account_id: str) -> Account:
        return self.transition(account_id, DEACTIVATED)
