from __future__ import annotations

import enum
import hmac
import secrets

from argon2 import Type
from argon2.low_level import hash_secret_raw

from userservice.config import Settings
from userservice.logging import get_logger
from userservice.storage.models import Credential

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordMatch(enum.Enum):
    MATCH = "match"
    MISMATCH = "mismatch"


class PasswordHasher:
    """argon2id over an explicit, separately stored salt.

    The salt is kept beside the hash so a candidate password can be hashed
    under the *current* salt and compared byte for byte; that is what lets a
    password change detect an unchanged password.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self.hash_len = hash_len
        self.salt_len = salt_len

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
        )

    def new_salt(self) -> str:
        return secrets.token_hex(self.salt_len)

    def hash(self, password: str, salt: str) -> str:
        digest = hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=bytes.fromhex(salt),
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=self.hash_len,
            type=Type.ID,
        )
        return digest.hex()

    def compare(self, credential: Credential, password: str) -> PasswordMatch:
        """Hash ``password`` with the credential's salt; pure, no mutation."""
        if credential.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch",
                user_id=credential.user_id,
                algo=credential.password_algo,
            )
            return PasswordMatch.MISMATCH
        candidate = self.hash(password, credential.salt)
        if hmac.compare_digest(candidate, credential.password_hash):
            return PasswordMatch.MATCH
        return PasswordMatch.MISMATCH
