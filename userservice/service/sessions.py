from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, TypeVar

from userservice.config import Settings
from userservice.logging import get_logger
from userservice.service.errors import (
    ForbiddenError,
    ServerError,
    TooManySessionsError,
    ValidationError,
)
from userservice.service.metrics import (
    OUTCOME_FORBIDDEN,
    OUTCOME_NONE,
    OUTCOME_STORE_ERROR,
    OUTCOME_TOO_MANY_SESSIONS,
    LogReporter,
    MetricsReporter,
)
from userservice.storage.errors import StorageError

logger = get_logger(__name__)

TOKEN_PREFIX = "token:"
LOGINS_PREFIX = "logins:"
PAD_PREFIX = "pad:"

FIELD_USERID = "userid"
FIELD_REMOTE = "remote"
FIELD_REDIRECT = "redirect"

T = TypeVar("T")


class SessionStore(Protocol):
    async def exists(self, key: str) -> bool:
        ...

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        ...

    async def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        ...

    async def hget(self, key: str, field: str) -> Optional[str]:
        ...

    async def hgetall(self, key: str) -> Dict[str, str]:
        ...

    async def hdel(self, key: str, *fields: str) -> int:
        ...

    async def sadd(self, key: str, *members: str) -> int:
        ...

    async def srem(self, key: str, *members: str) -> int:
        ...

    async def smembers(self, key: str) -> List[str]:
        ...


@dataclass
class SessionGrant:
    """What a caller needs to hand a session back to a client."""

    token: str
    expires_at: datetime
    ttl_seconds: int
    user_id: Optional[str] = None


def _logins_key(user_id: str) -> str:
    return f"{LOGINS_PREFIX}{user_id}"


class SessionValidator:
    """Issues, validates, slides and revokes session tokens and one-time pads.

    Token hashes live at ``token:<value>`` and pad hashes at ``pad:<value>``;
    both are listed in the owner's ``logins:<user_id>`` set and both count
    against ``max_concurrent_sessions``.

    The cap check is a read-modify-write over a non-transactional store: two
    concurrent issuances may both see room and transiently exceed the cap
    until the next reconciliation. Issuance is not rolled back on a partial
    write; an orphaned hash is reclaimed by its TTL.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        reporter: Optional[MetricsReporter] = None,
        clock: Optional[Callable[[], datetime]] = None,
        token_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.reporter: MetricsReporter = reporter or LogReporter()
        self._clock = clock
        self._token_factory = token_factory or secrets.token_urlsafe

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @property
    def ttl_seconds(self) -> int:
        return self.settings.session_ttl_seconds

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(
                awaitable, timeout=self.settings.store_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.error("session_store_timeout", operation=operation)
            raise ServerError.for_operation(operation) from exc
        except StorageError as exc:
            logger.error("session_store_failed", operation=operation, error=str(exc))
            raise ServerError.for_operation(operation) from exc

    def _grant(self, token: str, user_id: Optional[str] = None) -> SessionGrant:
        return SessionGrant(
            token=token,
            expires_at=self._now() + timedelta(seconds=self.ttl_seconds),
            ttl_seconds=self.ttl_seconds,
            user_id=user_id,
        )

    async def _check_count(self, user_id: str) -> bool:
        """True when ``user_id`` may hold one more session.

        Below the cap nothing is reconciled. At or above it, members whose
        hash has expired are removed in one batch and capacity is rechecked.
        """
        key = _logins_key(user_id)
        members = await self._call("smembers", self.store.smembers(key))
        if len(members) < self.settings.max_concurrent_sessions:
            return True

        stale = []
        for member in members:
            if not await self._call("exists", self.store.exists(member)):
                stale.append(member)
        if not stale:
            return False

        removed = await self._call("srem", self.store.srem(key, *stale))
        logger.info("stale_sessions_reclaimed", user_id=user_id, removed=removed)
        return len(members) - removed < self.settings.max_concurrent_sessions

    async def _create(self, operation: str, prefix: str, user_id: str, fields: Dict[str, str]) -> str:
        if not user_id:
            raise ValidationError("user id is required")
        if not await self._check_count(user_id):
            self.reporter.observe(operation, OUTCOME_TOO_MANY_SESSIONS)
            logger.warning("session_cap_reached", operation=operation, user_id=user_id)
            raise TooManySessionsError()

        value = self._token_factory()
        key = f"{prefix}{value}"
        await self._call("hset", self.store.hset(key, {FIELD_USERID: user_id, **fields}))
        if not await self._call("expire", self.store.expire(key, self.ttl_seconds)):
            logger.error("session_expire_lost", operation=operation, user_id=user_id)
            raise ServerError.for_operation("expire")
        added = await self._call("sadd", self.store.sadd(_logins_key(user_id), key))
        if added == 0:
            logger.error("session_not_tracked", operation=operation, user_id=user_id)
            raise ServerError.for_operation("sadd")
        return value

    async def login(self, user_id: str, remote: str) -> SessionGrant:
        """Mint a token for an authenticated user.

        A cancelled or timed-out call may still have written the token;
        callers treat it as possibly issued.
        """
        try:
            token = await self._create(
                "issue_session", TOKEN_PREFIX, user_id, {FIELD_REMOTE: remote}
            )
        except ServerError:
            self.reporter.observe("issue_session", OUTCOME_STORE_ERROR)
            raise
        self.reporter.observe("issue_session", OUTCOME_NONE)
        logger.info("session_issued", user_id=user_id)
        return self._grant(token, user_id)

    async def _refresh(self, operation: str, token: str) -> str:
        key = f"{TOKEN_PREFIX}{token}"
        if not token or not await self._call("exists", self.store.exists(key)):
            self.reporter.observe(operation, OUTCOME_FORBIDDEN)
            raise ForbiddenError()
        if not await self._call("expire", self.store.expire(key, self.ttl_seconds)):
            # Expired between the existence check and the refresh
            logger.error("session_refresh_lost", operation=operation)
            raise ServerError.for_operation("expire")
        return key

    async def valid(self, token: str) -> SessionGrant:
        """Check a token and slide its TTL forward by the issuance duration."""
        try:
            await self._refresh("validate_session", token)
        except ServerError:
            self.reporter.observe("validate_session", OUTCOME_STORE_ERROR)
            raise
        self.reporter.observe("validate_session", OUTCOME_NONE)
        return self._grant(token)

    async def logout(self, token: str) -> None:
        """Revoke a currently valid token."""
        operation = "revoke_session"
        try:
            key = await self._refresh(operation, token)
            user_id = await self._call("hget", self.store.hget(key, FIELD_USERID))
            if user_id is None:
                self.reporter.observe(operation, OUTCOME_FORBIDDEN)
                raise ForbiddenError()
            await self._call("hdel", self.store.hdel(key, FIELD_USERID, FIELD_REMOTE))
            await self._call("srem", self.store.srem(_logins_key(user_id), key))
        except ServerError:
            self.reporter.observe(operation, OUTCOME_STORE_ERROR)
            raise
        self.reporter.observe(operation, OUTCOME_NONE)
        logger.info("session_revoked", user_id=user_id)

    async def issue_pad(self, user_id: str, remote: str, redirect: str) -> str:
        try:
            pad = await self._create(
                "issue_pad",
                PAD_PREFIX,
                user_id,
                {FIELD_REMOTE: remote, FIELD_REDIRECT: redirect},
            )
        except ServerError:
            self.reporter.observe("issue_pad", OUTCOME_STORE_ERROR)
            raise
        self.reporter.observe("issue_pad", OUTCOME_NONE)
        logger.info("pad_issued", user_id=user_id)
        return pad

    async def _read_pad(self, operation: str, pad: str) -> Dict[str, str]:
        fields: Dict[str, str] = {}
        if pad:
            fields = await self._call("hgetall", self.store.hgetall(f"{PAD_PREFIX}{pad}"))
        if not fields:
            self.reporter.observe(operation, OUTCOME_FORBIDDEN)
            raise ForbiddenError("unknown or expired pad")
        if not fields.get(FIELD_USERID):
            raise ValidationError("pad has no owner")
        return fields

    async def redeem_pad(self, pad: str) -> str:
        """Return the redirect target a pad was issued for."""
        try:
            fields = await self._read_pad("redeem_pad", pad)
        except ServerError:
            self.reporter.observe("redeem_pad", OUTCOME_STORE_ERROR)
            raise
        redirect = fields.get(FIELD_REDIRECT)
        if not redirect:
            raise ValidationError("pad has no redirect")
        self.reporter.observe("redeem_pad", OUTCOME_NONE)
        return redirect

    async def complete_pad(self, pad: str, *, owner: Optional[str] = None) -> str:
        """Consume a pad: revoke every session and pad of its owner.

        With ``owner`` set, a pad issued to anyone else is refused before
        anything is revoked.
        """
        try:
            fields = await self._read_pad("complete_pad", pad)
            user_id = fields[FIELD_USERID]
            if owner is not None and owner != user_id:
                self.reporter.observe("complete_pad", OUTCOME_FORBIDDEN)
                raise ForbiddenError("unknown or expired pad")
            await self.clear_logins(user_id)
        except ServerError:
            self.reporter.observe("complete_pad", OUTCOME_STORE_ERROR)
            raise
        self.reporter.observe("complete_pad", OUTCOME_NONE)
        return user_id

    async def clear_logins(self, user_id: str) -> int:
        key = _logins_key(user_id)
        members = await self._call("smembers", self.store.smembers(key))
        for member in members:
            await self._call(
                "hdel",
                self.store.hdel(member, FIELD_USERID, FIELD_REMOTE, FIELD_REDIRECT),
            )
            await self._call("srem", self.store.srem(key, member))
        logger.info("logins_cleared", user_id=user_id, removed=len(members))
        return len(members)
