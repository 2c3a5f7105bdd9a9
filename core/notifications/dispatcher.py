import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from config import settings
from core.notifications import DeliveryResult, NotificationClient
from db.models import Channel, Notification

if TYPE_CHECKING:
    from db.store import Store

log = logging.getLogger(__name__)


@dataclass
class DispatchStats:
    channel: Channel
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    invalid: int = 0
    skipped: bool = False


class ChannelDispatcher:
    """Drains one channel's pending notification queue through its provider client.

    Records are taken oldest first, one page per drain. Each record ends
    ``sent`` or ``failed``; a failure never stops the rest of the page.
    """

    def __init__(
        self,
        store: "Store",
        client: NotificationClient,
        page_size: int | None = None,
        concurrency: int = 1,
        delay: float = 0.0,
    ):
        self.store = store
        self.client = client
        self.page_size = page_size or settings.dispatch_page_size
        self.concurrency = max(concurrency, 1)
        self.delay = delay

    @classmethod
    def for_sms(cls, store: "Store", client: NotificationClient) -> "ChannelDispatcher":
        return cls(
            store,
            client,
            concurrency=settings.sms_chunk_size,
            delay=settings.sms_chunk_delay_seconds,
        )

    @classmethod
    def for_email(cls, store: "Store", client: NotificationClient) -> "ChannelDispatcher":
        return cls(store, client, delay=settings.email_send_delay_seconds)

    async def drain(self, now: datetime | None = None) -> DispatchStats:
        channel = self.client.channel
        stats = DispatchStats(channel=channel)
        if not self.client.is_enabled():
            log.debug(f"{channel.value} client disabled, leaving queue pending")
            stats.skipped = True
            return stats

        pending = await self.store.get_pending_notifications(channel, self.page_size)
        if not pending:
            return stats

        deliverable: list[Notification] = []
        for record in pending:
            if self.client.validate_recipient(record.recipient):
                deliverable.append(record)
                continue
            stats.invalid += 1
            stats.failed += 1
            await self.store.mark_notification_failed(
                record.id, f"Invalid recipient: {record.recipient or 'missing'}"  # type: ignore[arg-type]
            )
            log.warning(f"Notification #{record.id}: invalid {channel.value} recipient")

        for start in range(0, len(deliverable), self.concurrency):
            chunk = deliverable[start : start + self.concurrency]
            results = await asyncio.gather(
                *(self.client.send(r.recipient, r.subject, r.body or "") for r in chunk),  # type: ignore[arg-type]
                return_exceptions=True,
            )
            for record, result in zip(chunk, results):
                stats.attempted += 1
                await self._record(record, result, now, stats)

            if self.delay and start + self.concurrency < len(deliverable):
                await asyncio.sleep(self.delay)

        log.info(
            f"{channel.value} dispatch: {stats.sent} sent, {stats.failed} failed "
            f"({stats.invalid} invalid recipients)"
        )
        return stats

    async def _record(
        self,
        record: Notification,
        result: DeliveryResult | BaseException,
        now: datetime | None,
        stats: DispatchStats,
    ) -> None:
        if isinstance(result, BaseException):
            log.error(f"Notification #{record.id} send raised: {result}", exc_info=result)
            await self.store.mark_notification_failed(record.id, str(result) or type(result).__name__)  # type: ignore[arg-type]
            stats.failed += 1
        elif result.success:
            await self.store.mark_notification_sent(record.id, result.message_id, now)  # type: ignore[arg-type]
            stats.sent += 1
        else:
            log.warning(f"Notification #{record.id} failed: {result.error}")
            await self.store.mark_notification_failed(record.id, result.error or "Delivery failed")  # type: ignore[arg-type]
            stats.failed += 1
