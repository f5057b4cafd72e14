from __future__ import annotations

import asyncio
import hmac
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from userservice.config import Settings
from userservice.logging import get_logger
from userservice.service.errors import (
    BadCredentialsError,
    LockedOutError,
    PasswordsUnchangedError,
    ServerError,
    ValidationError,
)
from userservice.service.metrics import (
    OUTCOME_BAD_PASSWORD,
    OUTCOME_BAD_USERNAME,
    OUTCOME_NONE,
    OUTCOME_PASSWORD_LOCKOUT,
    OUTCOME_PASSWORDS_UNCHANGED,
    OUTCOME_STORE_ERROR,
    LogReporter,
    MetricsReporter,
)
from userservice.service.passwords import PasswordHasher, PasswordMatch
from userservice.storage.errors import ConstraintViolation, StorageError
from userservice.storage.models import Credential, Profile

logger = get_logger(__name__)

# Fresh ids tried before an account insert is given up as a server error
MAX_ID_ATTEMPTS = 3


class CredentialStore(Protocol):
    def fetch_credential(self, identifier: str) -> Optional[Credential]:
        ...

    def insert_credential(self, credential: Credential) -> None:
        ...

    def record_login_success(self, user_id: str, when: datetime) -> None:
        ...

    def record_login_failure(self, user_id: str, when: datetime) -> None:
        ...

    def reset_credential(
        self, user_id: str, password_hash: str, salt: str, when: datetime
    ) -> None:
        ...


def _new_user_id() -> str:
    return str(uuid.uuid4())


class LoginService:
    """Password authentication and failure accounting over a credential store.

    Every store call runs in a worker thread under ``store_timeout_seconds``.
    Read and write within one attempt are sequenced but not compare-and-swap,
    so a concurrent burst against one identifier may under-count failures.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        settings: Settings,
        *,
        reporter: Optional[MetricsReporter] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.reporter: MetricsReporter = reporter or LogReporter()
        self._clock = clock
        self._id_factory = id_factory or _new_user_id

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _store_call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args),
                timeout=self.settings.store_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("credential_store_timeout", operation=operation)
            raise ServerError.for_operation(operation) from exc
        except StorageError as exc:
            logger.error("credential_store_failed", operation=operation, error=str(exc))
            raise ServerError.for_operation(operation) from exc

    async def _authenticate(self, operation: str, identifier: str, password: str) -> Credential:
        """Run one attempt; returns the credential as read *before* success was recorded."""
        credential = await self._store_call(
            "fetch_credential", self.store.fetch_credential, identifier
        )
        if credential is None:
            self.reporter.observe(operation, OUTCOME_BAD_USERNAME)
            logger.info("login_rejected", operation=operation, reason=OUTCOME_BAD_USERNAME)
            raise BadCredentialsError()

        if credential.failure_count > self.settings.lockout_threshold:
            self.reporter.observe(operation, OUTCOME_PASSWORD_LOCKOUT)
            logger.warning(
                "login_rejected",
                operation=operation,
                reason=OUTCOME_PASSWORD_LOCKOUT,
                user_id=credential.user_id,
                failure_count=credential.failure_count,
            )
            raise LockedOutError()

        outcome = await asyncio.to_thread(self.hasher.compare, credential, password)
        if outcome is PasswordMatch.MISMATCH:
            await self._store_call(
                "record_login_failure",
                self.store.record_login_failure,
                credential.user_id,
                self._now(),
            )
            self.reporter.observe(operation, OUTCOME_BAD_PASSWORD)
            logger.info(
                "login_rejected",
                operation=operation,
                reason=OUTCOME_BAD_PASSWORD,
                user_id=credential.user_id,
                failure_count=credential.failure_count + 1,
            )
            raise BadCredentialsError()

        await self._store_call(
            "record_login_success",
            self.store.record_login_success,
            credential.user_id,
            self._now(),
        )
        return credential

    async def login(self, identifier: str, password: str) -> Profile:
        """Authenticate; the profile's ``last_login`` is the previous success."""
        try:
            credential = await self._authenticate("login", identifier, password)
        except ServerError:
            self.reporter.observe("login", OUTCOME_STORE_ERROR)
            raise
        self.reporter.observe("login", OUTCOME_NONE)
        logger.info("login_succeeded", user_id=credential.user_id)
        return credential.profile()

    async def _replace_password(
        self, operation: str, credential: Credential, new_password: str
    ) -> None:
        unchanged = await asyncio.to_thread(self.hasher.hash, new_password, credential.salt)
        if hmac.compare_digest(unchanged, credential.password_hash):
            self.reporter.observe(operation, OUTCOME_PASSWORDS_UNCHANGED)
            raise PasswordsUnchangedError()
        salt = self.hasher.new_salt()
        digest = await asyncio.to_thread(self.hasher.hash, new_password, salt)
        await self._store_call(
            "reset_credential",
            self.store.reset_credential,
            credential.user_id,
            digest,
            salt,
            self._now(),
        )

    async def change_password(
        self, identifier: str, old_password: str, new_password: str
    ) -> None:
        try:
            credential = await self._authenticate("change_password", identifier, old_password)
            await self._replace_password("change_password", credential, new_password)
        except ServerError:
            self.reporter.observe("change_password", OUTCOME_STORE_ERROR)
            raise
        self.reporter.observe("change_password", OUTCOME_NONE)
        logger.info("password_changed", user_id=credential.user_id)

    async def reset_password(self, user_id: str, new_password: str) -> None:
        """Replace the password of an already-authorized user (completed pad).

        Also clears the failure count, which is how a locked-out user recovers.
        """
        try:
            credential = await self._store_call(
                "fetch_credential", self.store.fetch_credential, user_id
            )
            if credential is None or credential.user_id != user_id:
                self.reporter.observe("reset_password", OUTCOME_BAD_USERNAME)
                raise BadCredentialsError()
            await self._replace_password("reset_password", credential, new_password)
        except ServerError:
            self.reporter.observe("reset_password", OUTCOME_STORE_ERROR)
            raise
        self.reporter.observe("reset_password", OUTCOME_NONE)
        logger.info("password_reset", user_id=user_id)

    async def create_account(self, name: str, password: str) -> Profile:
        if not name or not password:
            raise ValidationError("name and password are required")
        salt = self.hasher.new_salt()
        digest = await asyncio.to_thread(self.hasher.hash, password, salt)
        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            credential = Credential.new(
                self._id_factory(), name, digest, salt, now=self._now()
            )
            try:
                await self._store_call(
                    "insert_credential", self.store.insert_credential, credential
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "id":
                    raise
                logger.warning("credential_id_collision", attempt=attempt)
                continue
            logger.info("account_created", user_id=credential.user_id)
            return credential.profile()
        logger.error("credential_id_exhausted", attempts=MAX_ID_ATTEMPTS)
        raise ServerError.for_operation("insert_credential")

    async def get_profile(self, identifier: str) -> Profile:
        credential = await self._store_call(
            "fetch_credential", self.store.fetch_credential, identifier
        )
        if credential is None:
            raise BadCredentialsError()
        return credential.profile()
