from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from quoteauth.config import Portal, Settings, portal_for_role
from quoteauth.logging import get_logger
from quoteauth.service.account_status import AccountStatusMachine
from quoteauth.service.admin import AuthContext
from quoteauth.service.audit import SessionAuditLog
from quoteauth.service.credentials import CredentialStore
from quoteauth.service.devices import BindingOutcome, DeviceBindingManager
from quoteauth.service.errors import (
    AccountDeactivated,
    AccountPending,
    AccountSuspended,
    ConflictError,
    DeviceMismatch,
    Forbidden,
    InvalidCredentials,
    ServiceError,
    TokenExpired,
    TokenInvalid,
    TokenReused,
    TooManyAttempts,
    ValidationError,
)
from quoteauth.service.tokens import TokenIssuer, TokenPair
from quoteauth.storage.common import AuthStore, normalize_email
from quoteauth.storage.errors import ConstraintViolation
from quoteauth.storage.models import (
    STAFF_ROLES,
    Account,
    AccountStatus,
    AttemptType,
    FailureReason,
    RevocationReason,
    utcnow,
)

logger = get_logger(__name__)

EMAIL_VERIFY_PURPOSE = "email_verify"

_FAILURE_ERRORS = {
    FailureReason.INVALID_CREDENTIALS: InvalidCredentials,
    FailureReason.DEVICE_MISMATCH: DeviceMismatch,
    FailureReason.ACCOUNT_SUSPENDED: AccountSuspended,
    FailureReason.ACCOUNT_DEACTIVATED: AccountDeactivated,
    FailureReason.ACCOUNT_PENDING: AccountPending,
    FailureReason.EMAIL_NOT_VERIFIED: AccountPending,
    FailureReason.TOKEN_EXPIRED: TokenExpired,
    FailureReason.TOKEN_INVALID: TokenInvalid,
    FailureReason.TOKEN_REUSED: TokenReused,
}


def error_for(reason: FailureReason) -> ServiceError:
    """External error for an internal failure reason."""
    if reason == FailureReason.TOO_MANY_ATTEMPTS:
        return TooManyAttempts("too many failed attempts; try again later")
    if reason == FailureReason.FORBIDDEN:
        return Forbidden("this portal is restricted to staff accounts")
    return _FAILURE_ERRORS.get(reason, InvalidCredentials)()


@dataclass(frozen=True)
class AuthResult:
    account: Account
    tokens: Optional[TokenPair] = None
    binding: Optional[BindingOutcome] = None
    ip_mismatch_warning: bool = False
    verification_token: Optional[str] = None


class AuthService:
    """Register, login, refresh and logout flows across the portals.

    The components below return typed results; this class alone turns them
    into external errors, and every login or refresh attempt leaves exactly
    one row in the audit log before returning or raising.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        credentials: CredentialStore,
        devices: DeviceBindingManager,
        statuses: AccountStatusMachine,
        tokens: TokenIssuer,
        audit: SessionAuditLog,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.devices = devices
        self.statuses = statuses
        self.tokens = tokens
        self.audit = audit

    def _fail(
        self,
        reason: FailureReason,
        *,
        account_id: Optional[str],
        email: Optional[str],
        ip: Optional[str],
        fingerprint: Optional[str],
        user_agent: Optional[str],
        attempt_type: AttemptType = AttemptType.LOGIN,
    ) -> ServiceError:
        self.audit.record(
            account_id,
            False,
            reason,
            ip=ip,
            fingerprint=fingerprint,
            email=email,
            user_agent=user_agent,
            attempt_type=attempt_type,
        )
        logger.warning(
            f"{attempt_type.value}_failed",
            account_id=account_id,
            reason=reason.value,
            ip=ip,
        )
        return error_for(reason)

    # -- registration -------------------------------------------------------

    def register(
        self,
        portal: Portal | str,
        email: str,
        password: str,
        fingerprint: Optional[str] = None,
        *,
        ip: Optional[str] = None,
        browser_info: Optional[dict] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        portal = Portal(portal)
        if portal == Portal.ADMIN:
            raise Forbidden("staff accounts are provisioned by administrators")
        policy = self.settings.portal_policy(portal)
        email = normalize_email(email)
        if not email or "@" not in email:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if policy.bind_on_register and not fingerprint:
            raise ValidationError(
                "device fingerprint is required", detail={"field": "device_fingerprint"}
            )
        # Reject a weak password before the account row exists
        self.credentials.policy.enforce(password)

        try:
            account = self.store.create_account(
                email, role=policy.role, status=AccountStatus.PENDING.value
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.credentials.create(account.id, password)

        binding = None
        if policy.bind_on_register:
            result = self.devices.bind_or_verify(account.id, fingerprint, ip, browser_info)
            binding = result.outcome

        if policy.requires_email_verification:
            verification = self.tokens.issue_purpose_token(
                account.id,
                EMAIL_VERIFY_PURPOSE,
                timedelta(hours=self.settings.email_verification_ttl_hours),
            )
            logger.info("account_registered", account_id=account.id, portal=portal.value)
            return AuthResult(
                account=account, binding=binding, verification_token=verification
            )

        account = self.statuses.activate(account.id)
        tokens = self.tokens.issue(account)
        self.audit.record(
            account.id,
            True,
            ip=ip,
            fingerprint=fingerprint,
            email=email,
            user_agent=user_agent,
            attempt_type=AttemptType.REGISTER,
        )
        logger.info("account_registered", account_id=account.id, portal=portal.value)
        return AuthResult(account=account, tokens=tokens, binding=binding)

    def verify_email(self, token: str) -> Account:
        account_id = self.tokens.decode_purpose_token(token, EMAIL_VERIFY_PURPOSE)
        account = self.store.get_account(account_id) if account_id else None
        if not account:
            raise TokenInvalid("invalid or expired verification token")
        if not account.email_verified:
            account = self.store.mark_email_verified(account.id) or account
        if account.status == AccountStatus.PENDING.value:
            account = self.statuses.activate(account.id)
        logger.info("email_verified", account_id=account.id)
        return account

    def resend_verification(self, email: str) -> Optional[str]:
        """Issue a fresh verification token for a pending, unverified account.

        Returns None for unknown, verified or non-pending accounts; callers
        must answer the same way in every case.
        """
        account = self.store.get_account_by_email(normalize_email(email))
        if (
            not account
            or account.email_verified
            or account.status != AccountStatus.PENDING.value
        ):
            logger.info("verification_resend_skipped")
            return None
        policy = self.settings.portal_policy(portal_for_role(account.role))
        if not policy.requires_email_verification:
            logger.info("verification_resend_skipped")
            return None
        token = self.tokens.issue_purpose_token(
            account.id,
            EMAIL_VERIFY_PURPOSE,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        logger.info("verification_resent", account_id=account.id)
        return token

    def provision_staff(self, email: str, password: str, *, role: str = "admin") -> Account:
        """Create or promote an active staff account for the admin portal."""
        if role not in STAFF_ROLES:
            raise ValidationError("role must be a staff role", detail={"role": role})
        email = normalize_email(email)
        account = self.store.get_account_by_email(email)
        if account is None:
            self.credentials.policy.enforce(password)
            account = self.store.create_account(
                email, role=role, status=AccountStatus.ACTIVE.value, email_verified=True
            )
            self.credentials.create(account.id, password)
        else:
            account = self.store.update_account_role(account.id, role) or account
            if account.status == AccountStatus.PENDING.value:
                account = self.statuses.activate(account.id)
        logger.info("staff_account_provisioned", account_id=account.id, role=role)
        return account

    # -- login --------------------------------------------------------------

    def _locked_out(self, email: str) -> bool:
        since = utcnow() - timedelta(minutes=self.settings.login_lockout_minutes)
        return self.store.count_recent_failures(email, since) >= self.settings.max_login_attempts

    def login(
        self,
        portal: Portal | str,
        email: str,
        password: str,
        fingerprint: Optional[str] = None,
        *,
        ip: Optional[str] = None,
        browser_info: Optional[dict] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        portal = Portal(portal)
        policy = self.settings.portal_policy(portal)
        email = normalize_email(email)
        context = dict(email=email, ip=ip, fingerprint=fingerprint, user_agent=user_agent)

        if self._locked_out(email):
            raise self._fail(FailureReason.TOO_MANY_ATTEMPTS, account_id=None, **context)

        # Unknown email and wrong password must look identical from outside
        account = self.store.get_account_by_email(email)
        verified = self.credentials.verify(account.id if account else None, password)
        if not account or not verified:
            raise self._fail(
                FailureReason.INVALID_CREDENTIALS,
                account_id=account.id if account else None,
                **context,
            )
        if portal_for_role(account.role) != portal:
            reason = (
                FailureReason.FORBIDDEN
                if portal == Portal.ADMIN
                else FailureReason.INVALID_CREDENTIALS
            )
            raise self._fail(reason, account_id=account.id, **context)

        status = self.statuses.check(account, policy)
        if not status.allowed:
            raise self._fail(status.reason, account_id=account.id, **context)

        binding = None
        ip_mismatch = False
        if policy.requires_device_binding:
            result = self.devices.bind_or_verify(account.id, fingerprint, ip, browser_info)
            if not result.ok:
                raise self._fail(
                    FailureReason.DEVICE_MISMATCH, account_id=account.id, **context
                )
            binding = result.outcome
            ip_mismatch = result.ip_mismatch

        if self.settings.single_session_on_login:
            self.tokens.revoke_all_for_account(account.id, RevocationReason.NEW_LOGIN.value)
        tokens = self.tokens.issue(account)
        self.audit.record(
            account.id,
            True,
            ip_mismatch_warning=ip_mismatch,
            attempt_type=AttemptType.LOGIN,
            **context,
        )
        logger.info(
            "login_succeeded",
            account_id=account.id,
            portal=portal.value,
            binding=binding.value if binding else None,
            ip_mismatch_warning=ip_mismatch,
        )
        return AuthResult(
            account=account, tokens=tokens, binding=binding, ip_mismatch_warning=ip_mismatch
        )

    # -- refresh / logout ---------------------------------------------------

    def refresh(
        self,
        refresh_token: str,
        fingerprint: Optional[str] = None,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        portal: Optional[Portal | str] = None,
    ) -> AuthResult:
        if portal is not None:
            self._check_refresh_portal(
                refresh_token,
                Portal(portal),
                ip=ip,
                fingerprint=fingerprint,
                user_agent=user_agent,
            )
        outcome = self.tokens.refresh(refresh_token, fingerprint, ip=ip)
        account_id = (
            outcome.account.id
            if outcome.account
            else (outcome.record.account_id if outcome.record else None)
        )
        context = dict(
            ip=ip,
            fingerprint=fingerprint,
            user_agent=user_agent,
            email=outcome.account.email if outcome.account else None,
            attempt_type=AttemptType.REFRESH,
        )
        if not outcome.ok:
            raise self._fail(outcome.failure, account_id=account_id, **context)
        self.audit.record(
            account_id, True, ip_mismatch_warning=outcome.ip_mismatch, **context
        )
        return AuthResult(
            account=outcome.account,
            tokens=outcome.tokens,
            ip_mismatch_warning=outcome.ip_mismatch,
        )

    def _check_refresh_portal(
        self,
        refresh_token: str,
        portal: Portal,
        *,
        ip: Optional[str],
        fingerprint: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        # Runs before rotation so a token presented at the wrong portal stays usable
        record = self.tokens.lookup(refresh_token)
        account = self.store.get_account(record.account_id) if record else None
        if account and portal_for_role(account.role) != portal:
            raise self._fail(
                FailureReason.TOKEN_INVALID,
                account_id=account.id,
                email=account.email,
                ip=ip,
                fingerprint=fingerprint,
                user_agent=user_agent,
                attempt_type=AttemptType.REFRESH,
            )

    def logout(self, refresh_token: str) -> bool:
        """Revoke the presented token's family; unknown tokens are a no-op."""
        record = self.tokens.lookup(refresh_token)
        if not record:
            return False
        self.tokens.revoke_family(record.family_id, RevocationReason.LOGOUT.value)
        logger.info("logout", account_id=record.account_id, family_id=record.family_id)
        return True

    # -- authenticated requests ---------------------------------------------

    def authenticate(
        self,
        access_token: Optional[str],
        *,
        portal: Optional[Portal | str] = None,
        fingerprint: Optional[str] = None,
        verify_device: bool = False,
        required_staff: bool = False,
    ) -> AuthContext:
        payload = self.tokens.decode_access(access_token) if access_token else None
        if not payload:
            raise TokenInvalid()
        account = self.store.get_account(payload.get("sub", ""))
        if not account:
            raise TokenInvalid()
        account_portal = portal_for_role(account.role)
        policy = self.settings.portal_policy(account_portal)
        status = self.statuses.check(account, policy)
        if not status.allowed:
            raise error_for(status.reason)
        if portal is not None and Portal(portal) != account_portal:
            raise Forbidden("token was not issued for this portal")
        if required_staff and not account.is_staff:
            raise Forbidden("admin access required")
        if verify_device and policy.requires_device_binding:
            if not self.devices.verify(account.id, fingerprint).ok:
                raise DeviceMismatch()
        return AuthContext(
            account_id=account.id, role=account.role, portal=account_portal.value
        )

    def change_password(
        self, principal: AuthContext, old_password: str, new_password: str
    ) -> int:
        """Replace the password and revoke every refresh-token family.

        Returns the number of refresh tokens revoked.
        """
        if not self.credentials.change_password(
            principal.account_id, old_password, new_password
        ):
            raise InvalidCredentials("current password is incorrect")
        return self.tokens.revoke_all_for_account(
            principal.account_id, RevocationReason.PASSWORD_CHANGED.value
        )
