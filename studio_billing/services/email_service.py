"""Billing email transport via the Resend API."""

import asyncio
import logging

import resend

logger = logging.getLogger(__name__)


class ResendEmailSender:
    """Async callable ``(to_email, subject, html_body) -> bool`` used by the notification dispatcher.

    Never raises: a missing API key or a provider error is logged and
    reported as False so the dispatcher can mark the notification failed.
    """

    def __init__(self, api_key: str, from_address: str, reply_to: str | None = None):
        self._api_key = api_key
        self._from_address = from_address
        self._reply_to = reply_to
        if api_key:
            resend.api_key = api_key

    async def __call__(self, to_email: str, subject: str, html_body: str) -> bool:
        if not self._api_key:
            logger.warning("Resend API key not configured, not sending %r to %s", subject, to_email)
            return False

        params: resend.Emails.SendParams = {
            "from": self._from_address,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
            "tags": [{"name": "category", "value": "billing"}],
        }
        if self._reply_to:
            params["reply_to"] = self._reply_to

        try:
            response = await asyncio.to_thread(resend.Emails.send, params)
        except Exception as e:
            logger.error("Resend rejected email to %s (%s): %s", to_email, subject, e)
            return False

        logger.info("Billing email %s sent to %s", response.get("id") if response else None, to_email)
        return True
