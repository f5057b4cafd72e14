from __future__ import annotations

from typing import Optional

from userservice.logging import get_logger
from userservice.service.errors import (
    BadCredentialsError,
    ServerError,
    TooManySessionsError,
)
from userservice.service.login import LoginService
from userservice.service.notify import LogPadNotifier, PadNotifier
from userservice.service.sessions import SessionGrant, SessionValidator
from userservice.storage.models import Profile

logger = get_logger(__name__)


class AuthService:
    """Entry point for collaborators: password login plus session lifecycle.

    Knows nothing about HTTP, cookies or JSON. Every failure is raised as a
    :class:`~userservice.service.errors.ServiceError` subclass.
    """

    def __init__(
        self,
        logins: LoginService,
        sessions: SessionValidator,
        *,
        notifier: Optional[PadNotifier] = None,
    ) -> None:
        self.logins = logins
        self.sessions = sessions
        self.notifier: PadNotifier = notifier or LogPadNotifier()

    async def login(self, identifier: str, password: str) -> Profile:
        return await self.logins.login(identifier, password)

    async def change_password(
        self, identifier: str, old_password: str, new_password: str
    ) -> None:
        await self.logins.change_password(identifier, old_password, new_password)

    async def issue_session(self, user_id: str, remote: str) -> SessionGrant:
        return await self.sessions.login(user_id, remote)

    async def validate_session(self, token: str) -> SessionGrant:
        return await self.sessions.valid(token)

    async def revoke_session(self, token: str) -> None:
        await self.sessions.logout(token)

    async def create_account(self, name: str, password: str) -> Profile:
        return await self.logins.create_account(name, password)

    async def get_profile(self, identifier: str) -> Profile:
        return await self.logins.get_profile(identifier)

    async def request_password_reset(
        self, identifier: str, remote: str, redirect: str
    ) -> None:
        """Hand a one-time pad to the owner of ``identifier``.

        Returns the same way whether or not the identifier exists, so the
        answer cannot be used to enumerate accounts. Only a failure of the
        initial lookup raises; later failures are logged.
        """
        try:
            profile = await self.logins.get_profile(identifier)
        except BadCredentialsError:
            logger.info("password_reset_unknown_identifier")
            return
        try:
            pad = await self.sessions.issue_pad(profile.user_id, remote, redirect)
            await self.notifier.deliver(profile.user_id, pad, redirect)
        except TooManySessionsError:
            logger.warning("password_reset_capped", user_id=profile.user_id)
        except ServerError as exc:
            logger.error(
                "password_reset_pad_failed",
                user_id=profile.user_id,
                detail=exc.detail,
            )

    async def redeem_pad(self, pad: str) -> str:
        return await self.sessions.redeem_pad(pad)

    async def reset_password_with_pad(
        self, identifier: str, pad: str, new_password: str
    ) -> Profile:
        """Consume ``pad`` for ``identifier`` and set a new password.

        Every session of the user is revoked first; the pad is spent even
        when the new password is then rejected.
        """
        profile = await self.logins.get_profile(identifier)
        await self.sessions.complete_pad(pad, owner=profile.user_id)
        await self.logins.reset_password(profile.user_id, new_password)
        return profile
