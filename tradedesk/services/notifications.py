"""
Trade event notifications.
Persists in-app notifications in the caller's transaction, so a notification
exists exactly when the transition that caused it committed.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.db.database import generate_id
from tradedesk.db.models import Notification, NotificationType, User
from tradedesk.utils.logging import get_logger

logger = get_logger(__name__)


# type -> (title, message template); {name} is the other party
NOTIFICATION_TEMPLATES: dict[NotificationType, tuple[str, str]] = {
    NotificationType.TRADE_PROPOSED: ("New Trade Proposal", "{name} wants to trade with you!"),
    NotificationType.TRADE_ACCEPTED: ("Trade Accepted", "{name} accepted your trade proposal."),
    NotificationType.TRADE_REJECTED: ("Trade Declined", "{name} declined your trade proposal."),
    NotificationType.TRADE_CANCELLED: ("Trade Cancelled", "{name} cancelled the trade."),
    NotificationType.COUNTER_OFFER: ("Counter Offer", "{name} sent a counter offer."),
    NotificationType.ESCROW_FUNDED: ("Payment Received", "{name} funded the escrow. Money is secured!"),
    NotificationType.ESCROW_RELEASED: ("Payment Released", "Escrow payment has been released."),
    NotificationType.ESCROW_REFUNDED: ("Payment Refunded", "Escrow payment has been refunded."),
    NotificationType.TRACKING_ADDED: ("Shipment Update", "{name} added tracking info for their shipment."),
    NotificationType.ITEMS_VERIFIED: ("Items Verified", "{name} verified receipt of items."),
    NotificationType.TRADE_COMPLETED: ("Trade Complete!", "Your trade with {name} is complete."),
    NotificationType.RATING_RECEIVED: ("New Rating", "{name} rated your trade."),
    NotificationType.DISPUTE_OPENED: ("Dispute Opened", "{name} opened a dispute on your trade."),
    NotificationType.DISPUTE_RESPONDED: ("Dispute Response", "{name} responded to the dispute."),
    NotificationType.DISPUTE_RESOLVED: ("Dispute Resolved", "The dispute on your trade with {name} was resolved."),
}

DEFAULT_TEMPLATE = ("Trade Update", "There's an update on your trade with {name}.")


class Notifier:
    """Writes notification rows for trade events."""

    async def notify(
        self,
        session: AsyncSession,
        notification_type: NotificationType,
        recipient_id: str,
        trade_id: Optional[str],
        other_user_id: Optional[str] = None,
    ) -> Notification:
        """Queue a notification for ``recipient_id`` in the current transaction."""
        name = "Someone"
        if other_user_id:
            other = await session.get(User, other_user_id)
            if other is not None:
                name = other.name

        title, template = NOTIFICATION_TEMPLATES.get(notification_type, DEFAULT_TEMPLATE)
        notification = Notification(
            id=generate_id(),
            user_id=recipient_id,
            type=notification_type,
            trade_id=trade_id,
            title=title,
            message=template.format(name=name),
            is_read=False,
        )
        session.add(notification)

        logger.info(
            "Notification queued",
            type=notification_type.value,
            user_id=recipient_id,
            trade_id=trade_id,
        )
        return notification

    async def notify_both(
        self,
        session: AsyncSession,
        notification_type: NotificationType,
        user_a: str,
        user_b: str,
        trade_id: Optional[str],
    ) -> None:
        await self.notify(session, notification_type, user_a, trade_id, other_user_id=user_b)
        await self.notify(session, notification_type, user_b, trade_id, other_user_id=user_a)
