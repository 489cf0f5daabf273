"""
Transactional email through the SendGrid v3 HTTP API.

Billing notifications are fire-and-forget: callers go through
``notify_safely`` so a delivery failure is logged and never interrupts the
state change that triggered it.
"""

import httpx
import structlog

from studio.config import EmailConfig, require

logger = structlog.get_logger(__name__)


class EmailDeliveryError(RuntimeError):
    """SendGrid rejected the message."""


class EmailNotifier:
    """Sends plain-text notifications."""

    def __init__(self, config: EmailConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    async def send_notification(
        self,
        *,
        to: str,
        subject: str,
        body: str,
        category: str | None = None,
    ) -> None:
        api_key = require(self.config.sendgrid_api_key, "EMAIL__SENDGRID_API_KEY")
        from_email = require(self.config.from_email, "EMAIL__FROM_EMAIL")

        payload: dict = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        if category:
            payload["categories"] = [category]

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds),
            transport=self._transport,
        ) as client:
            response = await client.post(
                self.config.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
            )

        if response.is_error:
            raise EmailDeliveryError(
                f"SendGrid API error: {response.status_code} {response.text}"
            )
        logger.info("email_sent", category=category, subject=subject)


async def notify_safely(
    notifier: EmailNotifier | None,
    *,
    to: str | None,
    subject: str,
    body: str,
    category: str,
) -> bool:
    """Send a notification, logging instead of raising. Returns True on delivery."""
    if notifier is None:
        logger.info("email_notifier_not_configured", category=category)
        return False
    if not to:
        logger.warning("email_recipient_missing", category=category)
        return False
    try:
        await notifier.send_notification(to=to, subject=subject, body=body, category=category)
    except Exception as e:
        logger.warning("email_send_failed", category=category, error=str(e))
        return False
    return True
