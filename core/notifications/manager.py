import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from core.notifications.templates import (
    format_email_html,
    format_email_subject,
    format_plain_text,
    format_sms,
)
from db.models import Channel, Criterion, Listing, NotificationDraft, User

if TYPE_CHECKING:
    from db.store import Store

log = logging.getLogger(__name__)


@dataclass
class FanoutResult:
    channels: list[Channel] = field(default_factory=list)
    created: int = 0
    by_channel: dict[Channel, int] = field(default_factory=dict)
    notification_ids: list[int] = field(default_factory=list)


class NotificationFanout:
    def __init__(self, store: "Store"):
        self.store = store

    def resolve_channels(self, criterion: Criterion, user: User | None) -> list[Channel]:
        channels = []
        if criterion.notify_sms:
            if user and user.phone_number:
                channels.append(Channel.SMS)
            else:
                log.debug(f"Criterion #{criterion.id}: SMS enabled but no phone number on file")
        if criterion.notify_email:
            if user and user.email:
                channels.append(Channel.EMAIL)
            else:
                log.debug(f"Criterion #{criterion.id}: email enabled but no address on file")
        if criterion.notify_in_app:
            channels.append(Channel.IN_APP)
        return channels

    def render(
        self, channel: Channel, criterion: Criterion, user: User | None, listing: Listing
    ) -> NotificationDraft:
        if channel == Channel.SMS:
            recipient, subject, body = user.phone_number, None, format_sms(listing)  # type: ignore[union-attr]
        elif channel == Channel.EMAIL:
            recipient = user.email  # type: ignore[union-attr]
            subject = format_email_subject(listing)
            body = format_email_html(listing, criterion)
        else:
            recipient = None
            subject = format_email_subject(listing)
            body = format_plain_text(listing, criterion)

        return NotificationDraft(
            user_id=criterion.user_id,
            criterion_id=criterion.id,  # type: ignore[arg-type]
            listing_id=listing.id,  # type: ignore[arg-type]
            channel=channel,
            recipient=recipient,
            subject=subject,
            body=body,
        )

    async def fanout(
        self, criterion: Criterion, user: User | None, listings: list[Listing]
    ) -> FanoutResult:
        """Create one pending notification per (channel, listing) in one transaction."""
        result = FanoutResult(channels=self.resolve_channels(criterion, user))
        if not listings or not result.channels:
            return result

        drafts = [
            self.render(channel, criterion, user, listing)
            for listing in listings
            for channel in result.channels
        ]
        result.notification_ids = await self.store.create_notifications(drafts)
        result.created = len(result.notification_ids)
        for draft in drafts:
            result.by_channel[draft.channel] = result.by_channel.get(draft.channel, 0) + 1

        log.info(
            f"Criterion #{criterion.id}: queued {result.created} notifications "
            f"({', '.join(c.value for c in result.channels)}) for {len(listings)} listings"
        )
        return result
