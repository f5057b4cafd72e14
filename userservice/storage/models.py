from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Profile:
    """Public view of a user; never carries hash, salt or failure bookkeeping."""

    user_id: str
    name: str
    last_login: Optional[datetime] = None
    mtime: datetime = field(default_factory=_utcnow)
    ctime: datetime = field(default_factory=_utcnow)


@dataclass
class Credential:
    user_id: str
    name: str
    password_hash: str
    salt: str
    password_algo: str = "argon2id"
    login_success: Optional[datetime] = None
    login_failure: Optional[datetime] = None
    failure_count: int = 0
    mtime: datetime = field(default_factory=_utcnow)
    ctime: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        name: str,
        password_hash: str,
        salt: str,
        *,
        now: datetime,
        password_algo: str = "argon2id",
    ) -> "Credential":
        return cls(
            user_id=user_id,
            name=name,
            password_hash=password_hash,
            salt=salt,
            password_algo=password_algo,
            mtime=now,
            ctime=now,
        )

    def profile(self) -> Profile:
        return Profile(
            user_id=self.user_id,
            name=self.name,
            last_login=self.login_success,
            mtime=self.mtime,
            ctime=self.ctime,
        )
