"""
Tests for in-app notifications.
"""

from tradedesk.db import database as db
from tradedesk.db.models import NotificationType
from tradedesk.services.notifications import NOTIFICATION_TEMPLATES


class TestNotifier:

    def test_every_type_has_a_template(self):
        assert set(NOTIFICATION_TEMPLATES) == set(NotificationType)

    async def test_message_names_other_party(self, notifier, alice, bob):
        async with db.get_session() as session:
            notification = await notifier.notify(
                session, NotificationType.TRADE_COMPLETED, alice.id, None, other_user_id=bob.id
            )

        assert notification.title == "Trade Complete!"
        assert notification.message == "Your trade with Bob is complete."
        assert notification.is_read is False

    async def test_unknown_other_party(self, notifier, alice):
        async with db.get_session() as session:
            notification = await notifier.notify(
                session, NotificationType.TRADE_PROPOSED, alice.id, None, other_user_id="ghost"
            )

        assert notification.message == "Someone wants to trade with you!"

    async def test_rolled_back_with_transition(self, notifier, alice, bob):
        """A failed transaction leaves no notification behind."""
        try:
            async with db.get_session() as session:
                await notifier.notify(session, NotificationType.TRADE_ACCEPTED, alice.id, None, other_user_id=bob.id)
                raise RuntimeError("transition failed")
        except RuntimeError:
            pass

        assert await db.get_notifications_for_user(alice.id) == []


class TestReadState:

    async def test_unread_count_and_mark_read(self, trades, alice, bob, make_item):
        a1 = await make_item(alice, 1000)
        first = await trades.propose(alice.id, bob.id, [a1.id], [])
        await trades.cancel(first.id, alice.id)
        await trades.propose(alice.id, bob.id, [a1.id], [])

        assert await db.get_unread_count(bob.id) == 3

        notifications = await db.get_notifications_for_user(bob.id)
        assert await db.mark_notification_read(notifications[0].id)
        assert await db.get_unread_count(bob.id) == 2

        assert await db.mark_all_notifications_read(bob.id) == 2
        assert await db.get_unread_count(bob.id) == 0
        assert await db.mark_all_notifications_read(bob.id) == 0

    async def test_mark_unknown_notification(self, database):
        assert await db.mark_notification_read("missing") is False

    async def test_limit(self, trades, alice, bob, make_item):
        a1 = await make_item(alice, 1000)
        for _ in range(3):
            await trades.propose(alice.id, bob.id, [a1.id], [])

        assert len(await db.get_notifications_for_user(bob.id, limit=2)) == 2
