"""
Tests for blind mutual ratings.
"""

import pytest

from tradedesk.db import database as db
from tradedesk.db.models import NotificationType, TradeStatus
from tradedesk.errors import AlreadyRated, Forbidden, InvalidStateTransition, ValidationError


@pytest.fixture
async def settled_trade(trades, alice, bob, make_item):
    a1 = await make_item(alice, 2000)
    b1 = await make_item(bob, 2000)
    trade = await trades.propose(alice.id, bob.id, [a1.id], [b1.id])
    return await trades.respond(trade.id, bob.id, "accept")


class TestRate:
    """Ratings stay hidden until both parties have rated."""

    async def test_first_rating_is_hidden(self, ratings, trades, settled_trade, alice, bob):
        rating = await ratings.rate(
            settled_trade.id,
            alice.id,
            overall_score=5,
            item_accuracy_score=4,
            communication_score=5,
            shipping_speed_score=3,
            public_comment="Smooth trade",
            private_feedback="Packaging could be better",
        )

        assert rating.ratee_id == bob.id
        assert rating.is_revealed is False
        assert rating.item_accuracy_score == 4

        trade = await trades.get_trade(settled_trade.id)
        assert trade.proposer_rated
        assert not trade.receiver_rated
        assert trade.status == TradeStatus.COMPLETED_AWAITING_RATING

        assert await ratings.get_ratings_for_user(bob.id) == []
        notifications = await db.get_notifications_for_user(bob.id)
        assert NotificationType.RATING_RECEIVED in [n.type for n in notifications]

    async def test_second_rating_reveals_both_and_completes(self, ratings, trades, settled_trade, alice, bob):
        await ratings.rate(settled_trade.id, alice.id, overall_score=5)
        await ratings.rate(settled_trade.id, bob.id, overall_score=2, public_comment="Slow shipping")

        trade = await trades.get_trade(settled_trade.id)
        assert trade.status == TradeStatus.COMPLETED

        for_bob = await ratings.get_ratings_for_user(bob.id)
        for_alice = await ratings.get_ratings_for_user(alice.id)
        assert [r.overall_score for r in for_bob] == [5]
        assert [r.overall_score for r in for_alice] == [2]
        assert for_alice[0].public_comment == "Slow shipping"
        assert all(r.is_revealed for r in for_bob + for_alice)

    async def test_cannot_rate_twice(self, ratings, settled_trade, alice, bob):
        await ratings.rate(settled_trade.id, alice.id, overall_score=4)

        with pytest.raises(AlreadyRated) as exc_info:
            await ratings.rate(settled_trade.id, alice.id, overall_score=1)
        assert str(exc_info.value) == "You have already rated this trade"

        # Still rejected after the trade completes
        await ratings.rate(settled_trade.id, bob.id, overall_score=4)
        with pytest.raises(AlreadyRated):
            await ratings.rate(settled_trade.id, bob.id, overall_score=4)

    async def test_outsider_cannot_rate(self, ratings, settled_trade, carol):
        with pytest.raises(Forbidden):
            await ratings.rate(settled_trade.id, carol.id, overall_score=5)

    @pytest.mark.parametrize("field", ["overall_score", "item_accuracy_score", "communication_score", "shipping_speed_score"])
    @pytest.mark.parametrize("value", [0, 6, -1, True, "5"])
    async def test_invalid_scores(self, ratings, settled_trade, alice, field, value):
        scores = {"overall_score": 3, field: value}
        with pytest.raises(ValidationError):
            await ratings.rate(settled_trade.id, alice.id, **scores)

    async def test_overall_score_required(self, ratings, settled_trade, alice):
        with pytest.raises(ValidationError):
            await ratings.rate(settled_trade.id, alice.id, overall_score=None)

    async def test_cannot_rate_before_settlement(self, ratings, escrow_trade, alice):
        trade, _, _ = escrow_trade

        with pytest.raises(InvalidStateTransition):
            await ratings.rate(trade.id, alice.id, overall_score=5)


class TestRatingsForUser:

    async def test_only_revealed_ratings_listed(self, ratings, trades, alice, bob, carol, make_item):
        """A hidden rating on one trade never leaks into the listing."""
        a1 = await make_item(alice, 1000)
        b1 = await make_item(bob, 1000)
        c1 = await make_item(carol, 1000)

        first = await trades.propose(alice.id, bob.id, [a1.id], [b1.id])
        await trades.respond(first.id, bob.id, "accept")
        second = await trades.propose(carol.id, alice.id, [c1.id], [b1.id])
        await trades.respond(second.id, alice.id, "accept")

        await ratings.rate(first.id, alice.id, overall_score=5)
        await ratings.rate(first.id, bob.id, overall_score=4)
        await ratings.rate(second.id, carol.id, overall_score=1)

        listed = await ratings.get_ratings_for_user(alice.id)
        assert [(r.rater_id, r.overall_score) for r in listed] == [(bob.id, 4)]
