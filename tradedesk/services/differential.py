"""
Cash differential calculator.

Single source of truth for "who pays whom" in a trade. Both the escrow
coordinator and the preview endpoint go through ``calculate_cash_differential``.

    proposer_total = sum(proposer item values) + proposer_cash
    receiver_total = sum(receiver item values) + receiver_cash
    difference     = proposer_total - receiver_total

A positive difference means the receiver is under-offering and owes the
proposer; a negative one means the proposer owes the receiver.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.db.database import sum_item_values
from tradedesk.db.models import Trade
from tradedesk.errors import ValidationError

# Differences smaller than one minor currency unit are treated as equal
MIN_UNIT = 1


@dataclass(frozen=True)
class CashDifferential:
    """Net cash one party owes the other, in cents."""
    payer_id: Optional[str]
    recipient_id: Optional[str]
    amount: int
    description: str
    # Proposer item value minus receiver item value, cash excluded
    item_difference: int = 0

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    @property
    def requires_escrow(self) -> bool:
        """Whether acceptance must wait for the payer to fund escrow.

        Cash each side offered moves between balances at settlement. Escrow is
        only needed when the items themselves are unbalanced and those offers
        do not close the gap.
        """
        return self.amount != 0 and abs(self.item_difference) >= MIN_UNIT

    def to_dict(self) -> dict:
        return {
            "payer_id": self.payer_id,
            "recipient_id": self.recipient_id,
            "amount": self.amount,
            "description": self.description,
            "requires_escrow": self.requires_escrow,
        }


def format_cents(cents: int) -> str:
    """Format cents for display: 1234 -> "$12.34"."""
    return f"${cents / 100:,.2f}"


def calculate_cash_differential(
    proposer_id: str,
    receiver_id: str,
    proposer_items_value: int,
    receiver_items_value: int,
    proposer_cash: int = 0,
    receiver_cash: int = 0,
) -> CashDifferential:
    """Pure differential calculation from side totals."""
    if min(proposer_items_value, receiver_items_value, proposer_cash, receiver_cash) < 0:
        raise ValidationError("Item values and cash offers must be non-negative")

    proposer_total = proposer_items_value + proposer_cash
    receiver_total = receiver_items_value + receiver_cash
    difference = proposer_total - receiver_total
    item_difference = proposer_items_value - receiver_items_value

    if abs(difference) < MIN_UNIT:
        return CashDifferential(
            payer_id=None,
            recipient_id=None,
            amount=0,
            description="Equal trade - no cash differential",
            item_difference=item_difference,
        )

    amount = abs(difference)
    if difference > 0:
        return CashDifferential(
            payer_id=receiver_id,
            recipient_id=proposer_id,
            amount=amount,
            description=f"Receiver pays {format_cents(amount)} to proposer",
            item_difference=item_difference,
        )

    return CashDifferential(
        payer_id=proposer_id,
        recipient_id=receiver_id,
        amount=amount,
        description=f"Proposer pays {format_cents(amount)} to receiver",
        item_difference=item_difference,
    )


async def differential_for_trade(session: AsyncSession, trade: Trade) -> CashDifferential:
    """Recompute the differential from current item valuations."""
    proposer_value = await sum_item_values(session, trade.proposer_item_ids)
    receiver_value = await sum_item_values(session, trade.receiver_item_ids)
    return calculate_cash_differential(
        trade.proposer_id,
        trade.receiver_id,
        proposer_value,
        receiver_value,
        trade.proposer_cash,
        trade.receiver_cash,
    )
