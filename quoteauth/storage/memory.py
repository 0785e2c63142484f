from __future__ import annotations

import dataclasses
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from quoteauth.logging import get_logger
from quoteauth.storage.common import (
    clamp_limit,
    is_login_failure_counted,
    normalize_email,
)
from quoteauth.storage.errors import ConstraintViolation
from quoteauth.storage.models import (
    Account,
    AuditEvent,
    Credential,
    DeviceBinding,
    LoginAttempt,
    RefreshToken,
    utcnow,
)

_T = TypeVar("_T")

_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "deactivated_at",
    "timestamp",
    "issued_at",
    "expires_at",
    "revoked_at",
}


class MemoryStore:
    """In-process store for tests and single-node development.

    Every read and write happens under one re-entrant lock, which makes the
    conditional writes (first device binding, refresh rotation, status
    compare-and-set) atomic with respect to concurrent request handlers.
    """

    def __init__(self, fs_root: str = "/tmp/quoteauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, Credential] = {}
        self.device_bindings: Dict[str, List[DeviceBinding]] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        *,
        role: str,
        status: str,
        email_verified: bool = False,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                role=role,
                status=status,
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return dataclasses.replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return dataclasses.replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return dataclasses.replace(account) if account else None

    def update_account_status(
        self,
        account_id: str,
        status: str,
        *,
        expected_from: Optional[Iterable[str]] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if expected_from is not None and account.status not in set(expected_from):
                return None
            account.status = status
            account.updated_at = utcnow()
            self._persist_state()
            return dataclasses.replace(account)

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified = True
            account.updated_at = utcnow()
            self._persist_state()
            return dataclasses.replace(account)

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            account.updated_at = utcnow()
            self._persist_state()
            return dataclasses.replace(account)

    # -- credentials --------------------------------------------------------

    def save_credential(self, credential: Credential) -> None:
        with self._data_lock:
            self.credentials[credential.account_id] = dataclasses.replace(credential)
            self._persist_state()

    def get_credential(self, account_id: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(account_id)
            return dataclasses.replace(credential) if credential else None

    def replace_credential(
        self, account_id: str, expected_hash: str, credential: Credential
    ) -> bool:
        with self._data_lock:
            current = self.credentials.get(account_id)
            if not current or current.password_hash != expected_hash:
                return False
            self.credentials[account_id] = dataclasses.replace(credential)
            self._persist_state()
            return True

    # -- device bindings ----------------------------------------------------

    def get_active_binding(self, account_id: str) -> Optional[DeviceBinding]:
        with self._data_lock:
            for binding in self.device_bindings.get(account_id, []):
                if binding.is_active:
                    return dataclasses.replace(binding)
            return None

    def create_active_binding(self, binding: DeviceBinding) -> DeviceBinding:
        with self._data_lock:
            history = self.device_bindings.setdefault(binding.account_id, [])
            if any(existing.is_active for existing in history):
                raise ConstraintViolation(
                    "active device binding already exists",
                    {"field": "account_id", "account_id": binding.account_id},
                )
            stored = dataclasses.replace(binding, is_active=True)
            history.append(stored)
            self._persist_state()
            return dataclasses.replace(stored)

    def deactivate_binding(
        self,
        account_id: str,
        *,
        deactivated_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[DeviceBinding]:
        with self._data_lock:
            for binding in self.device_bindings.get(account_id, []):
                if binding.is_active:
                    binding.is_active = False
                    binding.deactivated_at = utcnow()
                    binding.deactivated_by = deactivated_by
                    binding.deactivation_reason = reason
                    self._persist_state()
                    return dataclasses.replace(binding)
            return None

    def list_bindings(self, account_id: str) -> List[DeviceBinding]:
        with self._data_lock:
            history = self.device_bindings.get(account_id, [])
            return [
                dataclasses.replace(b)
                for b in sorted(reversed(history), key=lambda b: b.created_at, reverse=True)
            ]

    # -- login attempts -----------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            self.login_attempts.append(dataclasses.replace(attempt))
            self._persist_state()
            return attempt

    def list_login_attempts(self, account_id: str, limit: int = 50) -> List[LoginAttempt]:
        limit = clamp_limit(limit)
        with self._data_lock:
            rows = [a for a in reversed(self.login_attempts) if a.account_id == account_id]
            rows.sort(key=lambda a: a.timestamp, reverse=True)
            return [dataclasses.replace(a) for a in rows[:limit]]

    def count_recent_failures(self, email: str, since: datetime) -> int:
        normalized = normalize_email(email)
        with self._data_lock:
            return sum(
                1
                for attempt in self.login_attempts
                if attempt.email == normalized
                and attempt.timestamp >= since
                and is_login_failure_counted(attempt)
            )

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if any(
                existing.family_id == token.family_id and not existing.revoked
                for existing in self.refresh_tokens.values()
            ):
                raise ConstraintViolation(
                    "token family already has a live token",
                    {"field": "family_id", "family_id": token.family_id},
                )
            stored = dataclasses.replace(token)
            self.refresh_tokens[stored.id] = stored
            self._refresh_by_hash[stored.token_hash] = stored.id
            self._persist_state()
            return dataclasses.replace(stored)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            return dataclasses.replace(token) if token else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            if not token_id:
                return None
            return self.get_refresh_token(token_id)

    def rotate_refresh_token(self, old_token_id: str, successor: RefreshToken) -> bool:
        """Revoke ``old_token_id`` and insert its successor as one step.

        Returns False, leaving state untouched, when the old token is already
        revoked (a concurrent rotation or revocation won).
        """
        with self._data_lock:
            current = self.refresh_tokens.get(old_token_id)
            if not current or current.revoked:
                return False
            current.revoked = True
            current.revoked_at = utcnow()
            current.revoked_reason = "rotated"
            current.superseded_by = successor.id
            stored = dataclasses.replace(successor, family_id=current.family_id)
            self.refresh_tokens[stored.id] = stored
            self._refresh_by_hash[stored.token_hash] = stored.id
            self._persist_state()
            return True

    def revoke_refresh_family(self, family_id: str, reason: str) -> int:
        with self._data_lock:
            return self._revoke_where(lambda t: t.family_id == family_id, reason)

    def revoke_account_refresh_tokens(
        self, account_id: str, reason: str, *, except_family_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            return self._revoke_where(
                lambda t: t.account_id == account_id and t.family_id != except_family_id,
                reason,
            )

    def _revoke_where(self, predicate, reason: str) -> int:
        now = utcnow()
        revoked = 0
        for token in self.refresh_tokens.values():
            if not token.revoked and predicate(token):
                token.revoked = True
                token.revoked_at = now
                token.revoked_reason = reason
                revoked += 1
        if revoked:
            self._persist_state()
        return revoked

    def list_refresh_tokens(
        self, account_id: str, *, family_id: Optional[str] = None
    ) -> List[RefreshToken]:
        with self._data_lock:
            rows = [
                t
                for t in self.refresh_tokens.values()
                if t.account_id == account_id and (family_id is None or t.family_id == family_id)
            ]
            rows.sort(key=lambda t: t.issued_at)
            return [dataclasses.replace(t) for t in rows]

    # -- admin audit --------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(dataclasses.replace(event))
            self._persist_state()
            return event

    def list_audit_events(self, entity_id: str, limit: int = 50) -> List[AuditEvent]:
        limit = clamp_limit(limit)
        with self._data_lock:
            rows = [e for e in reversed(self.audit_events) if e.entity_id == entity_id]
            rows.sort(key=lambda e: e.created_at, reverse=True)
            return [dataclasses.replace(e) for e in rows[:limit]]

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize(a) for a in self.accounts.values()],
            "credentials": [self._serialize(c) for c in self.credentials.values()],
            "device_bindings": [
                self._serialize(b)
                for history in self.device_bindings.values()
                for b in history
            ],
            "login_attempts": [self._serialize(a) for a in self.login_attempts],
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
            "audit_events": [self._serialize(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a.id: a for a in (self._deserialize(Account, row) for row in data.get("accounts", []))
        }
        self.credentials = {
            c.account_id: c
            for c in (self._deserialize(Credential, row) for row in data.get("credentials", []))
        }
        self.device_bindings = {}
        for row in data.get("device_bindings", []):
            binding = self._deserialize(DeviceBinding, row)
            self.device_bindings.setdefault(binding.account_id, []).append(binding)
        self.login_attempts = [
            self._deserialize(LoginAttempt, row) for row in data.get("login_attempts", [])
        ]
        self.refresh_tokens = {
            t.id: t
            for t in (
                self._deserialize(RefreshToken, row) for row in data.get("refresh_tokens", [])
            )
        }
        self._refresh_by_hash = {t.token_hash: t.id for t in self.refresh_tokens.values()}
        self.audit_events = [
            self._deserialize(AuditEvent, row) for row in data.get("audit_events", [])
        ]
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = dataclasses.asdict(obj)
        for key in _DATETIME_FIELDS.intersection(data):
            if isinstance(data[key], datetime):
                data[key] = data[key].isoformat()
        return data

    @staticmethod
    def _deserialize(model: Type[_T], data: dict) -> _T:
        names = {f.name for f in dataclasses.fields(model)}
        values = {k: v for k, v in data.items() if k in names}
        for key in _DATETIME_FIELDS.intersection(values):
            if isinstance(values[key], str):
                values[key] = datetime.fromisoformat(values[key])
        return model(**values)
