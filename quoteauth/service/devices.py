from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from quoteauth.logging import get_logger, truncate_fingerprint
from quoteauth.storage.common import AuthStore
from quoteauth.storage.errors import ConstraintViolation
from quoteauth.storage.models import DeviceBinding, RevocationReason

logger = get_logger(__name__)

# A lost first-bind race normally resolves on the first re-read; the bound
# only matters if a reset lands between the insert and the re-read.
_MAX_BIND_ATTEMPTS = 3


class BindingOutcome(str, Enum):
    BOUND_NEW = "bound_new"
    BOUND_EXISTING = "bound_existing"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class BindingResult:
    outcome: BindingOutcome
    binding: Optional[DeviceBinding] = None
    # Advisory only: the fingerprint matched but the network changed
    ip_mismatch: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome != BindingOutcome.MISMATCH


class TokenRevoker(Protocol):
    def revoke_all_for_account(
        self, account_id: str, reason: str = ..., *, except_family_id: Optional[str] = None
    ) -> int: ...


class DeviceBindingManager:
    """One trusted device per account.

    First use binds, repeat use verifies, and a conflicting fingerprint fails
    closed. A changed IP on a matching fingerprint only raises a warning flag.
    """

    def __init__(self, store: AuthStore, revoker: Optional[TokenRevoker] = None) -> None:
        self.store = store
        self.revoker = revoker

    def bind_revoker(self, revoker: TokenRevoker) -> None:
        self.revoker = revoker

    def _evaluate(
        self, binding: DeviceBinding, fingerprint: str, ip: Optional[str]
    ) -> BindingResult:
        if binding.fingerprint != fingerprint:
            return BindingResult(BindingOutcome.MISMATCH, binding)
        ip_mismatch = bool(
            ip and binding.registered_ip and ip != binding.registered_ip
        )
        return BindingResult(BindingOutcome.BOUND_EXISTING, binding, ip_mismatch=ip_mismatch)

    def bind_or_verify(
        self,
        account_id: str,
        fingerprint: Optional[str],
        ip: Optional[str] = None,
        browser_info: Optional[dict] = None,
    ) -> BindingResult:
        if not fingerprint:
            logger.warning("device_fingerprint_missing", account_id=account_id)
            return BindingResult(BindingOutcome.MISMATCH)

        for _ in range(_MAX_BIND_ATTEMPTS):
            active = self.store.get_active_binding(account_id)
            if active:
                return self._evaluate(active, fingerprint, ip)
            try:
                created = self.store.create_active_binding(
                    DeviceBinding.new(
                        account_id,
                        fingerprint,
                        registered_ip=ip,
                        browser_info=browser_info,
                    )
                )
            except ConstraintViolation:
                # Another request bound first; judge this one against the winner
                logger.info("device_binding_race_lost", account_id=account_id)
                continue
            logger.info(
                "device_binding_created",
                account_id=account_id,
                binding_id=created.id,
                fingerprint_prefix=truncate_fingerprint(fingerprint),
                registered_ip=ip,
            )
            return BindingResult(BindingOutcome.BOUND_NEW, created)

        logger.error("device_binding_unresolved", account_id=account_id)
        return BindingResult(BindingOutcome.MISMATCH)

    def verify(
        self, account_id: str, fingerprint: Optional[str], ip: Optional[str] = None
    ) -> BindingResult:
        """Check a fingerprint without ever creating a binding."""
        active = self.store.get_active_binding(account_id)
        if not active or not fingerprint:
            return BindingResult(BindingOutcome.MISMATCH, active)
        return self._evaluate(active, fingerprint, ip)

    def reset(
        self,
        account_id: str,
        *,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> Optional[DeviceBinding]:
        """Move the active binding to history and revoke every token family.

        Returns the deactivated binding, or None when nothing was bound. Token
        revocation happens either way so a stale device cannot keep a session.
        """
        if self.revoker is None:
            raise RuntimeError("device reset requires a token revoker")
        previous = self.store.deactivate_binding(
            account_id, deactivated_by=performed_by, reason=reason
        )
        revoked = self.revoker.revoke_all_for_account(
            account_id, RevocationReason.DEVICE_RESET.value
        )
        logger.info(
            "device_binding_reset",
            account_id=account_id,
            binding_id=previous.id if previous else None,
            performed_by=performed_by,
            reason=reason,
            revoked_tokens=revoked,
        )
        return previous

    def history(self, account_id: str) -> list[DeviceBinding]:
        return self.store.list_bindings(account_id)
