import logging
from typing import Protocol

from app.settings import Settings

logger = logging.getLogger(__name__)


class MailDeliveryError(Exception):
    pass


class Mailer(Protocol):
    async def send_password_reset(self, email: str, reset_url: str) -> None:
        """Deliver a reset link. Raises MailDeliveryError when the message cannot be sent."""
        ...


class LoggingMailer:
    """Writes outgoing mail to the log instead of sending it. Meant for development."""

    async def send_password_reset(self, email: str, reset_url: str) -> None:
        logger.info("Password reset link for %s: %s", email, reset_url)


def build_mailer(settings: Settings) -> Mailer:
    if settings.MAIL_BACKEND == "logging":
        return LoggingMailer()
    raise ValueError(f"Unknown MAIL_BACKEND {settings.MAIL_BACKEND!r}")
