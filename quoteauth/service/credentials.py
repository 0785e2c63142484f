from __future__ import annotations

import hmac
import secrets
import string
from dataclasses import dataclass
from typing import List, Optional

from argon2 import Type
from argon2.low_level import ARGON2_VERSION, hash_secret_raw

from quoteauth.config import Settings
from quoteauth.logging import get_logger
from quoteauth.service.errors import WeakPassword
from quoteauth.storage.common import AuthStore
from quoteauth.storage.models import Credential, utcnow

logger = get_logger(__name__)

SALT_BYTES = 16
HASH_BYTES = 32
ALGORITHM_PREFIX = "argon2id"


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 128
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_symbol: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_upper=settings.password_require_upper,
            require_lower=settings.password_require_lower,
            require_digit=settings.password_require_digit,
            require_symbol=settings.password_require_symbol,
        )

    def violations(self, password: str) -> List[str]:
        problems: List[str] = []
        if len(password) < self.min_length:
            problems.append(f"must be at least {self.min_length} characters")
        if len(password) > self.max_length:
            problems.append(f"must be at most {self.max_length} characters")
        if self.require_upper and not any(c.isupper() for c in password):
            problems.append("must contain an uppercase letter")
        if self.require_lower and not any(c.islower() for c in password):
            problems.append("must contain a lowercase letter")
        if self.require_digit and not any(c.isdigit() for c in password):
            problems.append("must contain a digit")
        if self.require_symbol and not any(c in string.punctuation for c in password):
            problems.append("must contain a symbol")
        return problems

    def enforce(self, password: str) -> None:
        problems = self.violations(password)
        if problems:
            raise WeakPassword(
                "password does not meet policy", detail={"violations": problems}
            )


@dataclass(frozen=True)
class HashParams:
    time_cost: int
    memory_cost: int
    parallelism: int
    hash_len: int = HASH_BYTES
    version: int = ARGON2_VERSION

    def algorithm(self) -> str:
        """Self-describing algorithm tag stored beside each hash."""
        return (
            f"{ALGORITHM_PREFIX}$v={self.version}"
            f"$t={self.time_cost},m={self.memory_cost},p={self.parallelism},l={self.hash_len}"
        )

    @classmethod
    def parse(cls, algorithm: str) -> Optional["HashParams"]:
        try:
            prefix, version_part, params_part = algorithm.split("$")
            if prefix != ALGORITHM_PREFIX or not version_part.startswith("v="):
                return None
            values = dict(item.split("=", 1) for item in params_part.split(","))
            return cls(
                time_cost=int(values["t"]),
                memory_cost=int(values["m"]),
                parallelism=int(values["p"]),
                hash_len=int(values["l"]),
                version=int(version_part[2:]),
            )
        except (ValueError, KeyError):
            return None


class CredentialStore:
    """Salted argon2id password hashes, one credential per account.

    The salt is generated here and stored next to the hash; verification
    recomputes the digest with the stored salt and parameters and compares
    in constant time.
    """

    def __init__(
        self,
        store: AuthStore,
        policy: PasswordPolicy,
        params: HashParams,
    ) -> None:
        self.store = store
        self.policy = policy
        self.params = params
        # Burned on lookups with no credential so they cost one real hash
        self._dummy_salt = secrets.token_bytes(SALT_BYTES)

    @classmethod
    def from_settings(cls, store: AuthStore, settings: Settings) -> "CredentialStore":
        return cls(
            store,
            PasswordPolicy.from_settings(settings),
            HashParams(
                time_cost=settings.password_hash_time_cost,
                memory_cost=settings.password_hash_memory_cost,
                parallelism=settings.password_hash_parallelism,
            ),
        )

    def _hash(self, password: str, salt: bytes, params: HashParams) -> bytes:
        return hash_secret_raw(
            password.encode("utf-8"),
            salt,
            time_cost=params.time_cost,
            memory_cost=params.memory_cost,
            parallelism=params.parallelism,
            hash_len=params.hash_len,
            type=Type.ID,
            version=params.version,
        )

    def _build(self, account_id: str, password: str) -> Credential:
        self.policy.enforce(password)
        salt = secrets.token_bytes(SALT_BYTES)
        digest = self._hash(password, salt, self.params)
        return Credential(
            account_id=account_id,
            password_hash=digest.hex(),
            salt=salt.hex(),
            algorithm=self.params.algorithm(),
            updated_at=utcnow(),
        )

    def create(self, account_id: str, password: str) -> Credential:
        credential = self._build(account_id, password)
        self.store.save_credential(credential)
        logger.info("credential_created", account_id=account_id)
        return credential

    def verify(self, account_id: Optional[str], password: str) -> bool:
        """Check a password; unknown accounts still pay for one hash."""
        credential = self.store.get_credential(account_id) if account_id else None
        if not credential:
            self._hash(password, self._dummy_salt, self.params)
            return False
        return self._matches(credential, password)

    def _matches(self, credential: Credential, password: str) -> bool:
        params = HashParams.parse(credential.algorithm)
        if params is None:
            logger.warning(
                "password_algo_mismatch",
                account_id=credential.account_id,
                algo=credential.algorithm,
            )
            return False
        try:
            salt = bytes.fromhex(credential.salt)
            expected = bytes.fromhex(credential.password_hash)
        except ValueError:
            logger.warning("password_record_corrupt", account_id=credential.account_id)
            return False
        candidate = self._hash(password, salt, params)
        return hmac.compare_digest(candidate, expected)

    def change_password(self, account_id: str, old_password: str, new_password: str) -> bool:
        """Replace hash and salt after re-verifying the old password.

        Returns False when the old password is wrong or another change won the
        race. Sessions are left alone; revoking them is the caller's call.
        """
        current = self.store.get_credential(account_id)
        if not current or not self._matches(current, old_password):
            return False
        replacement = self._build(account_id, new_password)
        replaced = self.store.replace_credential(
            account_id, current.password_hash, replacement
        )
        if replaced:
            logger.info("password_changed", account_id=account_id)
        else:
            logger.warning("password_change_conflict", account_id=account_id)
        return replaced
