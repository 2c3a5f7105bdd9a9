import asyncio
import logging
import re

import aiohttp

from config import settings
from core.notifications import DeliveryResult, NotificationClient
from db.models import Channel

log = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
TWILIO_API = "https://api.twilio.com/2010-04-01"

TWILIO_ERRORS = {
    21211: "Invalid phone number",
    21408: "Permission denied to send to this number",
    21610: "Message blocked by carrier",
    21614: "Invalid mobile number",
    21608: "Number not verified (trial account restriction)",
    14107: "Rate limit exceeded. Please try again later.",
    21611: "Message queue full for this number",
    20429: "Too many concurrent requests",
}
DEFAULT_SMS_ERROR = "Failed to send SMS. Please try again."


def is_valid_e164(phone_number: str | None) -> bool:
    return bool(phone_number) and E164_PATTERN.match(phone_number) is not None  # type: ignore[arg-type]


def map_twilio_error(code: int | None) -> str:
    return TWILIO_ERRORS.get(code or 0, DEFAULT_SMS_ERROR)


class TwilioClient(NotificationClient):
    channel = Channel.SMS

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        api_base: str = TWILIO_API,
        timeout: float | None = None,
    ):
        self._account_sid = account_sid or settings.twilio_account_sid
        self._auth_token = auth_token or settings.twilio_auth_token
        self._from_number = from_number or settings.twilio_phone_number
        super().__init__(
            enabled=bool(self._account_sid and self._auth_token and self._from_number)
        )
        self._api_base = api_base
        self._timeout = aiohttp.ClientTimeout(total=timeout or settings.http_timeout_seconds)

    def validate_recipient(self, recipient: str | None) -> bool:
        return is_valid_e164(recipient)

    async def send(self, recipient: str, subject: str | None, body: str) -> DeliveryResult:
        if not self.is_enabled():
            return DeliveryResult(False, error="Twilio is not configured")
        if not self.validate_recipient(recipient):
            return DeliveryResult(
                False, error="Invalid phone number format. Must be E.164 (e.g. +15551234567)"
            )
        if not body or not body.strip():
            return DeliveryResult(False, error="Message body cannot be empty")

        url = f"{self._api_base}/Accounts/{self._account_sid}/Messages.json"
        payload = {"To": recipient, "From": self._from_number, "Body": body}

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                auth = aiohttp.BasicAuth(self._account_sid, self._auth_token)  # type: ignore[arg-type]
                async with session.post(url, data=payload, auth=auth) as resp:
                    data = await resp.json(content_type=None)
                    if resp.status in (200, 201):
                        log.info(f"SMS sent to ...{recipient[-4:]} ({data.get('sid')})")
                        return DeliveryResult(
                            True, message_id=data.get("sid"), status=data.get("status")
                        )

                    code = data.get("code") if isinstance(data, dict) else None
                    log.error(
                        f"Twilio SMS failed: {resp.status} code={code} "
                        f"message={data.get('message') if isinstance(data, dict) else data}"
                    )
                    return DeliveryResult(False, status="failed", error=map_twilio_error(code))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.error(f"Twilio SMS error: {e}", exc_info=True)
            return DeliveryResult(False, error=DEFAULT_SMS_ERROR)
