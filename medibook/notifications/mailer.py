"""Async httpx client for the Resend transactional email API."""

from __future__ import annotations

import logging

import httpx

from medibook.config import settings
from medibook.schemas.notifications import MailResult

logger = logging.getLogger(__name__)


class ResendMailer:
    """Thin async wrapper around Resend's send endpoint.

    Endpoint: POST {base_url}/emails
    Auth: Bearer API key
    """

    def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
        self._base_url = (base_url or settings.mail.resend_api_url).rstrip("/")
        self._api_key = settings.mail.resend_api_key if api_key is None else api_key
        self._from = settings.mail.email_from_address
        self._timeout = httpx.Timeout(10.0, connect=5.0)

    @property
    def _bypass_mode(self) -> bool:
        """Return True if API key is not configured (dev/test bypass)."""
        return not self._api_key

    async def send_email(self, to: str, subject: str, html: str) -> MailResult:
        """Send one email. Never raises; failures come back as success=False.

        In bypass mode (no API key configured) the message is logged and
        reported as sent without making any HTTP request.
        """
        if self._bypass_mode:
            logger.debug("Email bypass mode active, not sending %r to %s", subject, to)
            return MailResult(success=True)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/emails",
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={"from": self._from, "to": [to], "subject": subject, "html": html},
                )
                response.raise_for_status()
                payload: dict = response.json()

        except httpx.TimeoutException:
            logger.warning("Resend API timeout sending %r", subject)
            return MailResult(success=False, error="timeout")

        except httpx.HTTPStatusError as exc:
            logger.warning("Resend API HTTP error %s sending %r", exc.response.status_code, subject)
            return MailResult(success=False, error=f"http_{exc.response.status_code}")

        except httpx.HTTPError as exc:
            logger.warning("Resend API transport error sending %r: %s", subject, exc)
            return MailResult(success=False, error="transport")

        return MailResult(success=True, message_id=payload.get("id"))


# Module-level singleton
mailer = ResendMailer()
