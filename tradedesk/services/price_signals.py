"""
Trade price signals.

Every settled trade leaves one signal per traded item recording the value both
parties implicitly agreed on. Signals are market history only: writing them is
best-effort and never blocks settlement.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.db.database import generate_id, get_price_signals_for_item, load_items
from tradedesk.db.models import PriceSignal, Trade, utcnow
from tradedesk.utils.logging import get_logger

logger = get_logger(__name__)

BASE_CONFIDENCE = 70


def calculate_signal_confidence(total_items: int, cash_ratio: float) -> int:
    """Confidence 0-100 that an item's implied value reflects the market.

    Cash-heavy trades and bundles make per-item value attribution fuzzy.
    """
    confidence = BASE_CONFIDENCE

    if cash_ratio > 0.5:
        confidence -= 10
    elif cash_ratio > 0.25:
        confidence -= 5

    if total_items > 4:
        confidence -= 15
    elif total_items > 2:
        confidence -= 10

    return max(0, min(100, confidence))


@dataclass
class PriceStats:
    """Aggregate of the signals recorded for one item."""
    item_id: str
    count: int
    average_cents: Optional[int]
    min_cents: Optional[int]
    max_cents: Optional[int]
    average_confidence: Optional[int]

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "count": self.count,
            "average_cents": self.average_cents,
            "min_cents": self.min_cents,
            "max_cents": self.max_cents,
            "average_confidence": self.average_confidence,
        }


class PriceSignalRecorder:
    """Derives and stores price signals for settled trades."""

    async def build_signals(
        self,
        session: AsyncSession,
        trade: Trade,
        completed_at: Optional[datetime] = None,
    ) -> list[PriceSignal]:
        proposer_ids = trade.proposer_item_ids
        receiver_ids = trade.receiver_item_ids
        all_ids = proposer_ids + receiver_ids
        if not all_ids:
            return []

        items = await load_items(session, all_ids)
        proposer_value = sum(items[i].estimated_market_value for i in proposer_ids)
        receiver_value = sum(items[i].estimated_market_value for i in receiver_ids)

        # Midpoint of what each side gave is the agreed trade value
        agreed_value = (proposer_value + trade.proposer_cash + receiver_value + trade.receiver_cash) / 2
        total_cash = trade.proposer_cash + trade.receiver_cash
        cash_ratio = total_cash / agreed_value if agreed_value > 0 else 0.0

        confidence = calculate_signal_confidence(len(all_ids), cash_ratio)
        completed_at = completed_at or utcnow()

        return [
            PriceSignal(
                id=generate_id(),
                trade_id=trade.id,
                item_id=item.id,
                item_name=item.name,
                condition=item.condition,
                implied_value_cents=item.estimated_market_value,
                signal_confidence=confidence,
                trade_completed_at=completed_at,
            )
            for item in (items[i] for i in all_ids)
        ]

    async def record(self, session: AsyncSession, trade: Trade, completed_at: Optional[datetime] = None) -> int:
        """Write signals for a settled trade inside a savepoint.

        Returns the number of signals written; 0 when generation failed.
        """
        try:
            # The item query shares the savepoint; a failed statement there
            # must not poison the settlement transaction
            async with session.begin_nested():
                signals = await self.build_signals(session, trade, completed_at)
                session.add_all(signals)
            if not signals:
                return 0
        except Exception as e:
            logger.warning("Price signal generation failed", trade_id=trade.id, error=str(e))
            return 0

        logger.info("Price signals recorded", trade_id=trade.id, count=len(signals))
        return len(signals)


async def get_item_price_stats(item_id: str) -> PriceStats:
    """Count, average, range and average confidence of an item's signals."""
    signals = await get_price_signals_for_item(item_id)
    if not signals:
        return PriceStats(item_id, 0, None, None, None, None)

    values = [s.implied_value_cents for s in signals]
    return PriceStats(
        item_id=item_id,
        count=len(signals),
        average_cents=round(sum(values) / len(values)),
        min_cents=min(values),
        max_cents=max(values),
        average_confidence=round(sum(s.signal_confidence for s in signals) / len(signals)),
    )
