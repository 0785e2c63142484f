from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from quoteauth.logging import get_logger

logger = get_logger(__name__)


class Portal(str, Enum):
    """Entry points sharing the authentication core."""

    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    ADMIN = "admin"


@dataclass(frozen=True)
class PortalPolicy:
    """Per-portal differences in registration, binding and activation.

    - bind_on_register: fingerprint is bound during registration
    - requires_device_binding: logins and refreshes verify the bound device
    - requires_email_verification: accounts start pending until verified
    - allow_pending_login: pending accounts may still log in
    """

    portal: Portal
    role: str
    bind_on_register: bool
    requires_device_binding: bool
    requires_email_verification: bool
    allow_pending_login: bool


def portal_for_role(role: str) -> Portal:
    """Portal an account signs in through; staff roles share the admin portal."""
    if role == "customer":
        return Portal.CUSTOMER
    if role == "supplier":
        return Portal.SUPPLIER
    return Portal.ADMIN


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/quoteauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/quoteauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; echoes verification tokens in responses.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("quoteauth", "JWT_ISSUER")
    jwt_audience: str = env_field("quote-portals", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", description="Stateless access token lifetime"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Persisted refresh token lifetime",
    )
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_require_upper: bool = env_field(True, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(True, "PASSWORD_REQUIRE_LOWER")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_symbol: bool = env_field(False, "PASSWORD_REQUIRE_SYMBOL")
    # argon2id cost parameters; tests lower these to keep hashing fast
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    customer_bind_on_register: bool = env_field(True, "CUSTOMER_BIND_ON_REGISTER")
    supplier_bind_on_register: bool = env_field(False, "SUPPLIER_BIND_ON_REGISTER")
    supplier_requires_email_verification: bool = env_field(
        True, "SUPPLIER_REQUIRES_EMAIL_VERIFICATION"
    )
    supplier_allow_pending_login: bool = env_field(True, "SUPPLIER_ALLOW_PENDING_LOGIN")

    max_login_attempts: int = env_field(
        5, "MAX_LOGIN_ATTEMPTS", description="Failed attempts per email before lockout"
    )
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES")
    login_rate_limit_per_minute: int = env_field(30, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(10, "REGISTER_RATE_LIMIT_PER_MINUTE")
    single_session_on_login: bool = env_field(
        False,
        "SINGLE_SESSION_ON_LOGIN",
        description="Revoke every other refresh-token family on successful login",
    )
    login_history_default_limit: int = env_field(50, "LOGIN_HISTORY_DEFAULT_LIMIT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "email_verification_ttl_hours",
        "password_min_length",
        "max_login_attempts",
        "login_lockout_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/quoteauth"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def portal_policy(self, portal: Portal | str) -> PortalPolicy:
        portal = Portal(portal)
        if portal == Portal.CUSTOMER:
            return PortalPolicy(
                portal=portal,
                role="customer",
                bind_on_register=self.customer_bind_on_register,
                requires_device_binding=True,
                requires_email_verification=False,
                allow_pending_login=False,
            )
        if portal == Portal.SUPPLIER:
            return PortalPolicy(
                portal=portal,
                role="supplier",
                bind_on_register=self.supplier_bind_on_register,
                requires_device_binding=True,
                requires_email_verification=self.supplier_requires_email_verification,
                allow_pending_login=self.supplier_allow_pending_login,
            )
        return PortalPolicy(
            portal=portal,
            role="admin",
            bind_on_register=False,
            requires_device_binding=False,
            requires_email_verification=False,
            allow_pending_login=False,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
