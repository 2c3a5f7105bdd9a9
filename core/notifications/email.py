import asyncio
import logging
import re

import aiohttp

from config import settings
from core.notifications import DeliveryResult, NotificationClient
from db.models import Channel

log = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
RESEND_API = "https://api.resend.com/emails"


def is_valid_email(address: str | None) -> bool:
    if not address:
        return False
    return EMAIL_PATTERN.match(address.strip()) is not None


class ResendClient(NotificationClient):
    channel = Channel.EMAIL

    def __init__(
        self,
        api_key: str | None = None,
        from_address: str | None = None,
        api_url: str = RESEND_API,
        timeout: float | None = None,
    ):
        self._api_key = api_key or settings.resend_api_key
        super().__init__(enabled=bool(self._api_key))
        self.from_address = from_address or settings.email_from_address
        self._api_url = api_url
        self._timeout = aiohttp.ClientTimeout(total=timeout or settings.http_timeout_seconds)
        self.send_delay = settings.email_send_delay_seconds

    def validate_recipient(self, recipient: str | None) -> bool:
        return is_valid_email(recipient)

    async def send(self, recipient: str, subject: str | None, body: str) -> DeliveryResult:
        if not self.is_enabled():
            return DeliveryResult(False, error="Email service not configured")
        if not self.validate_recipient(recipient):
            return DeliveryResult(False, error="Invalid recipient email address")

        payload = {
            "from": self.from_address,
            "to": recipient.strip(),
            "subject": subject or "New Rental Match",
            "html": body,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self._api_url, json=payload, headers=headers) as resp:
                    data = await resp.json(content_type=None)
                    if resp.status == 200 and isinstance(data, dict) and data.get("id"):
                        log.info(f"Email sent ({data['id']})")
                        return DeliveryResult(True, message_id=data["id"], status="sent")

                    message = data.get("message") if isinstance(data, dict) else None
                    log.error(f"Resend email failed: {resp.status} {message}")
                    return DeliveryResult(
                        False, status="failed", error=message or "Failed to send email"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.error(f"Resend email error: {e}", exc_info=True)
            return DeliveryResult(False, error=str(e) or "Unknown error sending email")
