from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class MailerError(Exception):
    pass


@dataclass(frozen=True)
class EmailMessage:
    to: List[str]
    subject: str
    html: str
    sender: Optional[str] = None


class Mailer(ABC):
    @abstractmethod
    async def send(self, message: EmailMessage) -> Optional[str]:
        """Deliver `message`, return the provider id. Raises MailerError."""


class ResendMailer(Mailer):
    def __init__(self, http: httpx.AsyncClient, *, api_key: str,
                 from_email: str, from_name: str = "Shutupnraveee") -> None:
        self.http = http
        self.api_key = api_key
        self.default_sender = f"{from_name} <{from_email}>"

    async def send(self, message: EmailMessage) -> Optional[str]:
        body = {
            "from": message.sender or self.default_sender,
            "to": list(message.to),
            "subject": message.subject,
            "html": message.html,
        }
        try:
            r = await self.http.post(
                RESEND_API_URL, json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            r.raise_for_status()
            email_id = r.json().get("id")
        except (httpx.HTTPError, ValueError) as e:
            raise MailerError(f"resend send failed: {e!r}") from e
        logger.info("mailer.sent", to=message.to, subject=message.subject,
                    email_id=email_id)
        return email_id


class LogMailer(Mailer):
    """Development mailer: logs instead of sending."""

    async def send(self, message: EmailMessage) -> Optional[str]:
        logger.info("mailer.logged", to=message.to, subject=message.subject,
                    html_bytes=len(message.html))
        return None


def new_mailer(settings, http: httpx.AsyncClient) -> Mailer:
    if settings.resend_api_key:
        return ResendMailer(http, api_key=settings.resend_api_key,
                            from_email=settings.resend_from_email)
    return LogMailer()
