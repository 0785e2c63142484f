from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from quoteauth.api.schemas import (
    AccountDetailResponse,
    AccountResponse,
    AdminActionRequest,
    AuditEventResponse,
    AuditListResponse,
    AuthResponse,
    DeviceBindingResponse,
    DeviceResetResponse,
    Envelope,
    LoginAttemptResponse,
    LoginHistoryResponse,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    PasswordChangeRequest,
    RegisterRequest,
    ResendVerificationRequest,
    TokenRefreshRequest,
    VerifyEmailRequest,
)
from quoteauth.config import Portal
from quoteauth.logging import get_logger
from quoteauth.service.admin import AuthContext
from quoteauth.service.auth import AuthResult
from quoteauth.service.runtime import check_rate_limit, get_runtime
from quoteauth.storage.models import Account, DeviceBinding

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Apply a token-bucket limit, raising 429 once the bucket is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token.strip()


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        role=account.role,
        status=account.status,
        email_verified=account.email_verified,
        created_at=account.created_at,
    )


def _binding_response(binding: DeviceBinding) -> DeviceBindingResponse:
    return DeviceBindingResponse(
        id=binding.id,
        fingerprint=binding.fingerprint,
        registered_ip=binding.registered_ip,
        browser_info=binding.browser_info,
        is_active=binding.is_active,
        created_at=binding.created_at,
        deactivated_at=binding.deactivated_at,
        deactivated_by=binding.deactivated_by,
        deactivation_reason=binding.deactivation_reason,
    )


def _auth_response(result: AuthResult, *, echo_verification: bool = False) -> AuthResponse:
    tokens = result.tokens
    return AuthResponse(
        account=_account_response(result.account),
        access_token=tokens.access_token if tokens else None,
        refresh_token=tokens.refresh_token if tokens else None,
        token_type=tokens.token_type if tokens else None,
        expires_at=tokens.access_expires_at if tokens else None,
        refresh_expires_at=tokens.refresh_expires_at if tokens else None,
        device_binding=result.binding.value if result.binding else None,
        ip_mismatch_warning=result.ip_mismatch_warning,
        # Delivery is out of band; only test deployments echo the token
        verification_token=result.verification_token if echo_verification else None,
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
) -> AuthContext:
    runtime = get_runtime()
    return await asyncio.to_thread(
        runtime.auth.authenticate,
        _bearer_token(authorization),
        portal=request.path_params.get("portal"),
        fingerprint=x_device_fingerprint,
        verify_device=True,
    )


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await asyncio.to_thread(
        runtime.auth.authenticate,
        _bearer_token(authorization),
        portal=Portal.ADMIN,
        required_staff=True,
    )


# -- portal authentication ---------------------------------------------------


@router.post("/{portal}/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest, request: Request, portal: Portal = Path(...)):
    """Create a customer or supplier account.

    Customers bind the presented device immediately and receive tokens.
    Suppliers start pending until their email address is verified.
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime, f"register:{ip}", runtime.settings.register_rate_limit_per_minute, 60
    )
    result = await asyncio.to_thread(
        runtime.auth.register,
        portal,
        body.email,
        body.password,
        body.device_fingerprint,
        ip=ip,
        browser_info=body.browser_info,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(
        status="ok",
        data=_auth_response(result, echo_verification=runtime.settings.test_mode),
    )


@router.post("/supplier/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    account = await asyncio.to_thread(runtime.auth.verify_email, body.token)
    return Envelope(status="ok", data=_account_response(account))


@router.post("/supplier/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, request: Request):
    """Send a new verification token if the address belongs to a pending account.

    The response does not reveal whether the address is registered.
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime, f"resend:{ip}", runtime.settings.register_rate_limit_per_minute, 60
    )
    token = await asyncio.to_thread(runtime.auth.resend_verification, body.email)
    data: dict[str, object] = {"accepted": True}
    if runtime.settings.test_mode and token:
        data["verification_token"] = token
    return Envelope(status="ok", data=data)


@router.post("/{portal}/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, request: Request, response: Response, portal: Portal = Path(...)
):
    """Authenticate with email, password and device fingerprint.

    Raises:
        401: invalid credentials or device mismatch
        403: account suspended, deactivated or pending
        429: too many failed attempts or rate limit exceeded
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{ip}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await asyncio.to_thread(
        runtime.auth.login,
        portal,
        body.email,
        body.password,
        body.device_fingerprint,
        ip=ip,
        browser_info=body.browser_info,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/{portal}/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest,
    request: Request,
    portal: Portal = Path(...),
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime, f"refresh:{ip}", runtime.settings.login_rate_limit_per_minute, 60
    )
    result = await asyncio.to_thread(
        runtime.auth.refresh,
        body.refresh_token,
        body.device_fingerprint or x_device_fingerprint,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        portal=portal,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/{portal}/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, portal: Portal = Path(...)):
    runtime = get_runtime()
    revoked = await asyncio.to_thread(runtime.auth.logout, body.refresh_token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/{portal}/auth/me", response_model=Envelope, tags=["auth"])
async def me(portal: Portal = Path(...), principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=MeResponse(
            account_id=principal.account_id, role=principal.role, portal=principal.portal
        ),
    )


@router.post("/{portal}/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    portal: Portal = Path(...),
    principal: AuthContext = Depends(get_user),
):
    """Change the caller's password and sign out every session."""
    runtime = get_runtime()
    revoked = await asyncio.to_thread(
        runtime.auth.change_password, principal, body.old_password, body.new_password
    )
    return Envelope(status="ok", data={"revoked_tokens": revoked})


# -- admin overrides -----------------------------------------------------------


@router.post("/admin/accounts/{account_id}/suspend", response_model=Envelope, tags=["admin"])
async def suspend_account(
    account_id: str,
    body: Optional[AdminActionRequest] = None,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await asyncio.to_thread(
        runtime.admin.suspend, principal, account_id, body.reason if body else None
    )
    return Envelope(status="ok", data=_account_response(account))


@router.post("/admin/accounts/{account_id}/reactivate", response_model=Envelope, tags=["admin"])
async def reactivate_account(
    account_id: str,
    body: Optional[AdminActionRequest] = None,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await asyncio.to_thread(
        runtime.admin.reactivate, principal, account_id, body.reason if body else None
    )
    return Envelope(status="ok", data=_account_response(account))


@router.post("/admin/accounts/{account_id}/deactivate", response_model=Envelope, tags=["admin"])
async def deactivate_account(
    account_id: str,
    body: Optional[AdminActionRequest] = None,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await asyncio.to_thread(
        runtime.admin.deactivate, principal, account_id, body.reason if body else None
    )
    return Envelope(status="ok", data=_account_response(account))


@router.get("/admin/accounts/{account_id}", response_model=Envelope, tags=["admin"])
async def account_detail(
    account_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    """Account status with its active device binding and binding history."""
    runtime = get_runtime()
    detail = await asyncio.to_thread(runtime.admin.account_detail, principal, account_id)
    return Envelope(
        status="ok",
        data=AccountDetailResponse(
            account=_account_response(detail.account),
            active_binding=(
                _binding_response(detail.active_binding) if detail.active_binding else None
            ),
            bindings=[_binding_response(binding) for binding in detail.bindings],
        ),
    )


@router.post("/admin/accounts/{account_id}/reset-device", response_model=Envelope, tags=["admin"])
async def reset_device(
    account_id: str,
    body: Optional[AdminActionRequest] = None,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.admin.reset_device_binding,
        principal,
        account_id,
        body.reason if body else None,
    )
    return Envelope(
        status="ok",
        data=DeviceResetResponse(
            account=_account_response(result.account),
            previous_binding_id=(
                result.previous_binding.id if result.previous_binding else None
            ),
        ),
    )


@router.get("/admin/accounts/{account_id}/login-history", response_model=Envelope, tags=["admin"])
async def login_history(
    account_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    attempts = await asyncio.to_thread(
        runtime.admin.list_login_history, principal, account_id, limit
    )
    return Envelope(
        status="ok",
        data=LoginHistoryResponse(
            account_id=account_id,
            items=[
                LoginAttemptResponse(
                    id=attempt.id,
                    account_id=attempt.account_id,
                    email=attempt.email,
                    success=attempt.success,
                    failure_reason=attempt.failure_reason,
                    ip_address=attempt.ip_address,
                    presented_fingerprint=attempt.presented_fingerprint,
                    user_agent=attempt.user_agent,
                    ip_mismatch_warning=attempt.ip_mismatch_warning,
                    attempt_type=attempt.attempt_type,
                    timestamp=attempt.timestamp,
                )
                for attempt in attempts
            ],
        ),
    )


@router.get("/admin/accounts/{account_id}/audit", response_model=Envelope, tags=["admin"])
async def account_audit(
    account_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    events = await asyncio.to_thread(
        runtime.admin.list_audit_events, principal, account_id, limit
    )
    return Envelope(
        status="ok",
        data=AuditListResponse(
            account_id=account_id,
            items=[
                AuditEventResponse(
                    id=event.id,
                    action=event.action,
                    performed_by=event.performed_by,
                    reason=event.reason,
                    old_values=event.old_values,
                    new_values=event.new_values,
                    created_at=event.created_at,
                )
                for event in events
            ],
        ),
    )
