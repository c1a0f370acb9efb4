"""
Blind mutual ratings.
Each party rates the other once; ratings stay hidden until both are in, then
both are revealed and the trade completes in the same transaction.
"""

from typing import Optional

from sqlalchemy.exc import IntegrityError

from tradedesk.db.database import generate_id, get_ratings_for_trade, get_ratings_for_user, get_session, lock_trade
from tradedesk.db.models import NotificationType, TradeRating, TradeStatus
from tradedesk.errors import AlreadyRated, Forbidden, InvalidStateTransition, ValidationError
from tradedesk.services.notifications import Notifier
from tradedesk.utils.logging import LoggerMixin, trade_context

RATEABLE_STATUSES = (TradeStatus.COMPLETED_AWAITING_RATING, TradeStatus.COMPLETED)

MIN_SCORE = 1
MAX_SCORE = 5


def _check_score(name: str, value: Optional[int], required: bool = False) -> None:
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return
    if isinstance(value, bool) or not isinstance(value, int) or not MIN_SCORE <= value <= MAX_SCORE:
        raise ValidationError(f"{name} must be an integer between {MIN_SCORE} and {MAX_SCORE}")


class RatingService(LoggerMixin):
    """Records ratings and reveals them once both parties have rated."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or Notifier()

    async def rate(
        self,
        trade_id: str,
        rater_id: str,
        overall_score: int,
        item_accuracy_score: Optional[int] = None,
        communication_score: Optional[int] = None,
        shipping_speed_score: Optional[int] = None,
        public_comment: Optional[str] = None,
        private_feedback: Optional[str] = None,
    ) -> TradeRating:
        _check_score("overall_score", overall_score, required=True)
        _check_score("item_accuracy_score", item_accuracy_score)
        _check_score("communication_score", communication_score)
        _check_score("shipping_speed_score", shipping_speed_score)

        with trade_context(trade_id, actor_id=rater_id):
            async with get_session() as session:
                trade = await lock_trade(session, trade_id)
                if not trade.is_party(rater_id):
                    raise Forbidden(f"User {rater_id} is not a party to trade {trade_id}")
                if trade.status not in RATEABLE_STATUSES:
                    raise InvalidStateTransition(f"Cannot rate a trade in status {trade.status.value}")

                flag = f"{trade.side_of(rater_id).value.lower()}_rated"
                if getattr(trade, flag):
                    raise AlreadyRated("You have already rated this trade")

                ratee_id = trade.counterparty_of(rater_id)
                rating = TradeRating(
                    id=generate_id(),
                    trade_id=trade_id,
                    rater_id=rater_id,
                    ratee_id=ratee_id,
                    overall_score=overall_score,
                    item_accuracy_score=item_accuracy_score,
                    communication_score=communication_score,
                    shipping_speed_score=shipping_speed_score,
                    public_comment=public_comment,
                    private_feedback=private_feedback,
                    is_revealed=False,
                )
                session.add(rating)
                try:
                    await session.flush()
                except IntegrityError as e:
                    raise AlreadyRated("You have already rated this trade") from e

                setattr(trade, flag, True)
                await self.notifier.notify(
                    session, NotificationType.RATING_RECEIVED, ratee_id, trade_id, other_user_id=rater_id
                )

                if trade.proposer_rated and trade.receiver_rated:
                    for each in await get_ratings_for_trade(session, trade_id):
                        each.is_revealed = True
                    trade.status = TradeStatus.COMPLETED
                    self.log.info("Ratings revealed, trade completed")
                else:
                    self.log.info("Rating recorded, awaiting counterparty", ratee_id=ratee_id)

                return rating

    async def get_ratings_for_user(self, user_id: str) -> list[TradeRating]:
        """Revealed ratings a user has received."""
        return await get_ratings_for_user(user_id, revealed_only=True)
