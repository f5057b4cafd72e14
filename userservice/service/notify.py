from __future__ import annotations

from typing import Protocol

from userservice.logging import get_logger

logger = get_logger(__name__)


class PadNotifier(Protocol):
    """Outbound hand-off of a one-time pad to its owner (mail, SMS, ...)."""

    async def deliver(self, user_id: str, pad: str, redirect: str) -> None:
        ...


class LogPadNotifier:
    """Fallback when no delivery channel is configured; logs the hand-off only."""

    async def deliver(self, user_id: str, pad: str, redirect: str) -> None:
        # The pad itself is a bearer secret and stays out of the log
        logger.info("pad_delivery_dev_mode", user_id=user_id, redirect=redirect)
