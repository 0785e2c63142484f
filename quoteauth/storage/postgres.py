from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from quoteauth.logging import get_logger
from quoteauth.storage.common import clamp_limit, normalize_email, parse_json_meta
from quoteauth.storage.errors import ConstraintViolation
from quoteauth.storage.models import (
    Account,
    AuditEvent,
    Credential,
    DeviceBinding,
    LoginAttempt,
    RefreshToken,
)

REQUIRED_TABLES = [
    "accounts",
    "credentials",
    "device_bindings",
    "login_attempts",
    "refresh_tokens",
    "audit_log",
]

_ACCOUNT_COLUMNS = "id, email, role, status, email_verified, created_at, updated_at"
_BINDING_COLUMNS = (
    "id, account_id, fingerprint, browser_info, registered_ip, created_at, is_active, "
    "deactivated_at, deactivated_by, deactivation_reason"
)
_REFRESH_COLUMNS = (
    "id, account_id, family_id, token_hash, issued_at, expires_at, revoked, "
    "revoked_at, revoked_reason, superseded_by"
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store; uniqueness and conditional writes live in SQL."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when the tables from sql/schema.sql are not installed."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "customer"),
            status=row.get("status", "pending"),
            email_verified=bool(row.get("email_verified", False)),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _binding_from_row(row: dict) -> DeviceBinding:
        return DeviceBinding(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            fingerprint=row["fingerprint"],
            browser_info=parse_json_meta(row.get("browser_info")),
            registered_ip=row.get("registered_ip"),
            created_at=row["created_at"],
            is_active=bool(row.get("is_active")),
            deactivated_at=row.get("deactivated_at"),
            deactivated_by=_str_or_none(row.get("deactivated_by")),
            deactivation_reason=row.get("deactivation_reason"),
        )

    @staticmethod
    def _attempt_from_row(row: dict) -> LoginAttempt:
        return LoginAttempt(
            id=str(row["id"]),
            account_id=_str_or_none(row.get("account_id")),
            email=row.get("email"),
            success=bool(row["success"]),
            failure_reason=row.get("failure_reason"),
            ip_address=row.get("ip_address"),
            presented_fingerprint=row.get("presented_fingerprint"),
            user_agent=row.get("user_agent"),
            ip_mismatch_warning=bool(row.get("ip_mismatch_warning", False)),
            attempt_type=row.get("attempt_type", "login"),
            timestamp=row["timestamp"],
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            family_id=str(row["family_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked")),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            superseded_by=_str_or_none(row.get("superseded_by")),
        )

    @staticmethod
    def _audit_from_row(row: dict) -> AuditEvent:
        return AuditEvent(
            id=str(row["id"]),
            entity_type=row["entity_type"],
            entity_id=str(row["entity_id"]),
            action=row["action"],
            performed_by=_str_or_none(row.get("performed_by")),
            old_values=parse_json_meta(row.get("old_values")),
            new_values=parse_json_meta(row.get("new_values")),
            reason=row.get("reason"),
            created_at=row["created_at"],
        )

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        *,
        role: str,
        status: str,
        email_verified: bool = False,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO accounts (id, email, role, status, email_verified)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (account_id, normalize_email(email), role, status, email_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        # Ids arrive from URL paths; the column type would reject anything else
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account_status(
        self,
        account_id: str,
        status: str,
        *,
        expected_from: Optional[Iterable[str]] = None,
    ) -> Optional[Account]:
        query = "UPDATE accounts SET status = %s, updated_at = now() WHERE id = %s"
        params: list[Any] = [status, account_id]
        if expected_from is not None:
            query += " AND status = ANY(%s)"
            params.append(list(expected_from))
        with self._connect() as conn:
            row = conn.execute(
                f"{query} RETURNING {_ACCOUNT_COLUMNS}", params
            ).fetchone()
        return self._account_from_row(row) if row else None

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE accounts SET email_verified = true, updated_at = now()
                WHERE id = %s RETURNING {_ACCOUNT_COLUMNS}
                """,
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE accounts SET role = %s, updated_at = now()
                WHERE id = %s RETURNING {_ACCOUNT_COLUMNS}
                """,
                (role, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # -- credentials --------------------------------------------------------

    def save_credential(self, credential: Credential) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO credentials (account_id, password_hash, salt, algorithm, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (account_id) DO UPDATE SET
                    password_hash = EXCLUDED.password_hash,
                    salt = EXCLUDED.salt,
                    algorithm = EXCLUDED.algorithm,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    credential.account_id,
                    credential.password_hash,
                    credential.salt,
                    credential.algorithm,
                    credential.updated_at,
                ),
            )

    def get_credential(self, account_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT account_id, password_hash, salt, algorithm, updated_at
                FROM credentials WHERE account_id = %s
                """,
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return Credential(
            account_id=str(row["account_id"]),
            password_hash=row["password_hash"],
            salt=row["salt"],
            algorithm=row["algorithm"],
            updated_at=row["updated_at"],
        )

    def replace_credential(
        self, account_id: str, expected_hash: str, credential: Credential
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE credentials
                SET password_hash = %s, salt = %s, algorithm = %s, updated_at = %s
                WHERE account_id = %s AND password_hash = %s
                """,
                (
                    credential.password_hash,
                    credential.salt,
                    credential.algorithm,
                    credential.updated_at,
                    account_id,
                    expected_hash,
                ),
            )
            return cur.rowcount == 1

    # -- device bindings ----------------------------------------------------

    def get_active_binding(self, account_id: str) -> Optional[DeviceBinding]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_BINDING_COLUMNS} FROM device_bindings
                WHERE account_id = %s AND is_active
                """,
                (account_id,),
            ).fetchone()
        return self._binding_from_row(row) if row else None

    def create_active_binding(self, binding: DeviceBinding) -> DeviceBinding:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO device_bindings
                        (id, account_id, fingerprint, browser_info, registered_ip, created_at, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, true)
                    RETURNING {_BINDING_COLUMNS}
                    """,
                    (
                        binding.id,
                        binding.account_id,
                        binding.fingerprint,
                        json.dumps(binding.browser_info) if binding.browser_info else None,
                        binding.registered_ip,
                        binding.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "active device binding already exists",
                {"field": "account_id", "account_id": binding.account_id},
            )
        return self._binding_from_row(row)

    def deactivate_binding(
        self,
        account_id: str,
        *,
        deactivated_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[DeviceBinding]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE device_bindings
                SET is_active = false, deactivated_at = now(),
                    deactivated_by = %s, deactivation_reason = %s
                WHERE account_id = %s AND is_active
                RETURNING {_BINDING_COLUMNS}
                """,
                (deactivated_by, reason, account_id),
            ).fetchone()
        return self._binding_from_row(row) if row else None

    def list_bindings(self, account_id: str) -> List[DeviceBinding]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_BINDING_COLUMNS} FROM device_bindings
                WHERE account_id = %s ORDER BY created_at DESC
                """,
                (account_id,),
            ).fetchall()
        return [self._binding_from_row(row) for row in rows]

    # -- login attempts -----------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempts
                    (id, account_id, email, success, failure_reason, ip_address,
                     presented_fingerprint, user_agent, ip_mismatch_warning, attempt_type, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.account_id,
                    attempt.email,
                    attempt.success,
                    attempt.failure_reason,
                    attempt.ip_address,
                    attempt.presented_fingerprint,
                    attempt.user_agent,
                    attempt.ip_mismatch_warning,
                    attempt.attempt_type,
                    attempt.timestamp,
                ),
            )
        return attempt

    def list_login_attempts(self, account_id: str, limit: int = 50) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempts WHERE account_id = %s
                ORDER BY timestamp DESC LIMIT %s
                """,
                (account_id, clamp_limit(limit)),
            ).fetchall()
        return [self._attempt_from_row(row) for row in rows]

    def count_recent_failures(self, email: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS failures FROM login_attempts
                WHERE email = %s AND NOT success AND timestamp >= %s
                  AND attempt_type = 'login'
                  AND coalesce(failure_reason, '') <> 'too_many_attempts'
                """,
                (normalize_email(email), since),
            ).fetchone()
        return int(row["failures"]) if row else 0

    # -- refresh tokens -----------------------------------------------------

    def _insert_refresh_token(self, conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_tokens
                (id, account_id, family_id, token_hash, issued_at, expires_at, revoked)
            VALUES (%s, %s, %s, %s, %s, %s, false)
            """,
            (
                token.id,
                token.account_id,
                token.family_id,
                token.token_hash,
                token.issued_at,
                token.expires_at,
            ),
        )

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "token family already has a live token",
                {"field": "family_id", "family_id": token.family_id},
            )
        return token

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_tokens WHERE id = %s",
                (token_id,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_tokens WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(self, old_token_id: str, successor: RefreshToken) -> bool:
        """Revoke the presented token and insert its successor in one transaction.

        The conditional UPDATE serialises concurrent rotations on the row lock:
        the loser sees ``revoked = true``, matches zero rows and nothing is
        inserted on its behalf.
        """
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE refresh_tokens
                    SET revoked = true, revoked_at = now(),
                        revoked_reason = 'rotated', superseded_by = %s
                    WHERE id = %s AND NOT revoked
                    RETURNING family_id
                    """,
                    (successor.id, old_token_id),
                ).fetchone()
                if not row:
                    return False
                successor.family_id = str(row["family_id"])
                self._insert_refresh_token(conn, successor)
        return True

    def revoke_refresh_family(self, family_id: str, reason: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens
                SET revoked = true, revoked_at = now(), revoked_reason = %s
                WHERE family_id = %s AND NOT revoked
                """,
                (reason, family_id),
            )
            return cur.rowcount

    def revoke_account_refresh_tokens(
        self, account_id: str, reason: str, *, except_family_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens
                SET revoked = true, revoked_at = now(), revoked_reason = %s
                WHERE account_id = %s AND NOT revoked
                  AND (%s::uuid IS NULL OR family_id <> %s::uuid)
                """,
                (reason, account_id, except_family_id, except_family_id),
            )
            return cur.rowcount

    def list_refresh_tokens(
        self, account_id: str, *, family_id: Optional[str] = None
    ) -> List[RefreshToken]:
        query = f"SELECT {_REFRESH_COLUMNS} FROM refresh_tokens WHERE account_id = %s"
        params: list[Any] = [account_id]
        if family_id is not None:
            query += " AND family_id = %s"
            params.append(family_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY issued_at", params).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    # -- admin audit --------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                    (id, entity_type, entity_id, action, performed_by,
                     old_values, new_values, reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.entity_type,
                    event.entity_id,
                    event.action,
                    event.performed_by,
                    json.dumps(event.old_values) if event.old_values is not None else None,
                    json.dumps(event.new_values) if event.new_values is not None else None,
                    event.reason,
                    event.created_at,
                ),
            )
        return event

    def list_audit_events(self, entity_id: str, limit: int = 50) -> List[AuditEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM audit_log WHERE entity_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (entity_id, clamp_limit(limit)),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]
