"""
Trade lifecycle state machine.

    PROPOSED      --accept-->   ACCEPTED (escrow needed)
    PROPOSED      --accept-->   COMPLETED_AWAITING_RATING (settled on the spot)
    PROPOSED      --reject-->   REJECTED
    PROPOSED      --counter-->  COUNTERED (plus a new PROPOSED trade)
    ACCEPTED      --fund-->     ESCROW_FUNDED
    ESCROW_FUNDED --verify x2-> COMPLETED_AWAITING_RATING --rate x2--> COMPLETED
    ESCROW_FUNDED --release-->  COMPLETED_AWAITING_RATING (operator)
    ESCROW_FUNDED --refund-->   ACCEPTED (full refund, escrow.refund_escrow)
    PROPOSED | ACCEPTED | ESCROW_FUNDED --cancel--> CANCELLED

Disputes (services.disputes) move ACCEPTED, ESCROW_FUNDED and
COMPLETED_AWAITING_RATING trades to DISPUTE_OPENED, which freezes every
transition here until the dispute is resolved.

Each transition locks the trade row and runs in a single transaction together
with the side effects it licenses (settlement, escrow, notifications).
"""

from datetime import timedelta
from typing import Optional, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.config import get_settings
from tradedesk.db.database import (
    generate_id,
    get_live_hold,
    get_session,
    get_trades_for_user,
    load_items,
    lock_trade,
    require_user,
    transfer_balance,
)
from tradedesk.db.models import (
    EscrowHold,
    EscrowStatus,
    Item,
    NotificationType,
    Trade,
    TradeItem,
    TradeSide,
    TradeStatus,
    utcnow,
)
from tradedesk.errors import Forbidden, InvalidStateTransition, NotFound, ValidationError
from tradedesk.services.differential import CashDifferential, differential_for_trade
from tradedesk.services.escrow import EscrowCoordinator
from tradedesk.services.notifications import Notifier
from tradedesk.services.price_signals import PriceSignalRecorder
from tradedesk.utils.logging import LoggerMixin, trade_context

CANCELLABLE_STATUSES = (TradeStatus.PROPOSED, TradeStatus.ACCEPTED, TradeStatus.ESCROW_FUNDED)
SHIPPING_STATUSES = (TradeStatus.ACCEPTED, TradeStatus.ESCROW_FUNDED)
# Hold states under which the differential counts as paid
PAID_HOLD_STATUSES = (EscrowStatus.FUNDED, EscrowStatus.PARTIALLY_REFUNDED)

RESPOND_ACTIONS = ("accept", "reject")


def _require_status(trade: Trade, allowed: Sequence[TradeStatus], action: str) -> None:
    if trade.status not in allowed:
        raise InvalidStateTransition(f"Cannot {action} a trade in status {trade.status.value}")


def _require_party(trade: Trade, user_id: str) -> None:
    if not trade.is_party(user_id):
        raise Forbidden(f"User {user_id} is not a party to trade {trade.id}")


class TradeService(LoggerMixin):
    """Applies trade transitions and their side effects."""

    def __init__(
        self,
        escrow: EscrowCoordinator,
        notifier: Optional[Notifier] = None,
        price_signals: Optional[PriceSignalRecorder] = None,
        rating_window_days: Optional[int] = None,
    ):
        self.escrow = escrow
        self.notifier = notifier or escrow.notifier
        self.price_signals = price_signals or PriceSignalRecorder()
        self.rating_window_days = rating_window_days or get_settings().rating_window_days

    # ===================
    # Queries
    # ===================

    async def get_trade(self, trade_id: str) -> Trade:
        async with get_session() as session:
            trade = await session.get(Trade, trade_id)
            if trade is None:
                raise NotFound(f"Trade not found: {trade_id}")
            return trade

    async def list_trades(self, user_id: str) -> list[Trade]:
        return await get_trades_for_user(user_id)

    async def get_cash_differential(self, trade_id: str) -> CashDifferential:
        """Preview who pays whom at current item valuations."""
        async with get_session() as session:
            trade = await session.get(Trade, trade_id)
            if trade is None:
                raise NotFound(f"Trade not found: {trade_id}")
            return await differential_for_trade(session, trade)

    async def get_tracking(self, trade_id: str) -> dict:
        trade = await self.get_trade(trade_id)
        return {
            "trade_id": trade.id,
            "proposer": {
                "tracking_number": trade.proposer_tracking_number,
                "carrier": trade.proposer_carrier,
                "submitted": trade.proposer_submitted_tracking,
            },
            "receiver": {
                "tracking_number": trade.receiver_tracking_number,
                "carrier": trade.receiver_carrier,
                "submitted": trade.receiver_submitted_tracking,
            },
        }

    # ===================
    # Proposal
    # ===================

    async def propose(
        self,
        proposer_id: str,
        receiver_id: str,
        proposer_item_ids: Sequence[str],
        receiver_item_ids: Sequence[str],
        proposer_cash: int = 0,
        receiver_cash: int = 0,
    ) -> Trade:
        """Create a PROPOSED trade and notify the receiver."""
        async with get_session() as session:
            trade = await self._create_trade(
                session, proposer_id, receiver_id, proposer_item_ids, receiver_item_ids, proposer_cash, receiver_cash
            )
            await self.notifier.notify(
                session, NotificationType.TRADE_PROPOSED, receiver_id, trade.id, other_user_id=proposer_id
            )
            self.log.info("Trade proposed", trade_id=trade.id, proposer_id=proposer_id, receiver_id=receiver_id)
            return trade

    async def _create_trade(
        self,
        session: AsyncSession,
        proposer_id: str,
        receiver_id: str,
        proposer_item_ids: Sequence[str],
        receiver_item_ids: Sequence[str],
        proposer_cash: int,
        receiver_cash: int,
        parent_trade_id: Optional[str] = None,
        counter_message: Optional[str] = None,
    ) -> Trade:
        proposer_item_ids = list(proposer_item_ids)
        receiver_item_ids = list(receiver_item_ids)

        if proposer_id == receiver_id:
            raise ValidationError("Cannot propose a trade to yourself")
        if proposer_cash < 0 or receiver_cash < 0:
            raise ValidationError("Cash offers must be non-negative")
        for ids in (proposer_item_ids, receiver_item_ids):
            if len(set(ids)) != len(ids):
                raise ValidationError("Duplicate item ids in offer")
        overlap = set(proposer_item_ids) & set(receiver_item_ids)
        if overlap:
            raise ValidationError(f"Items offered by both sides: {', '.join(sorted(overlap))}")

        await require_user(session, proposer_id)
        await require_user(session, receiver_id)
        items = await load_items(session, proposer_item_ids + receiver_item_ids)

        # Ownership is enforced at acceptance; listings may still be in flux here
        for ids, owner_id in ((proposer_item_ids, proposer_id), (receiver_item_ids, receiver_id)):
            for item_id in ids:
                if items[item_id].owner_id != owner_id:
                    self.log.warning(
                        "Offered item not owned by offering party",
                        item_id=item_id,
                        expected_owner=owner_id,
                        actual_owner=items[item_id].owner_id,
                    )

        trade = Trade(
            id=generate_id(),
            proposer_id=proposer_id,
            receiver_id=receiver_id,
            proposer_cash=proposer_cash,
            receiver_cash=receiver_cash,
            status=TradeStatus.PROPOSED,
            parent_trade_id=parent_trade_id,
            counter_message=counter_message,
            trade_items=[
                *(TradeItem(item_id=i, side=TradeSide.PROPOSER) for i in proposer_item_ids),
                *(TradeItem(item_id=i, side=TradeSide.RECEIVER) for i in receiver_item_ids),
            ],
        )
        session.add(trade)
        await session.flush()
        return trade

    # ===================
    # Response
    # ===================

    async def respond(self, trade_id: str, acting_user_id: str, action: str) -> Trade:
        """Receiver accepts or rejects a proposal.

        Accepting settles on the spot unless the cash differential has to go
        through escrow first, in which case the trade waits in ACCEPTED.
        """
        action = (action or "").strip().lower()
        if action not in RESPOND_ACTIONS:
            raise ValidationError(f"Unknown action: {action!r}. Expected one of {', '.join(RESPOND_ACTIONS)}")

        with trade_context(trade_id, actor_id=acting_user_id):
            async with get_session() as session:
                trade = await lock_trade(session, trade_id)
                _require_status(trade, (TradeStatus.PROPOSED,), action)
                if acting_user_id != trade.receiver_id:
                    raise Forbidden(f"Only the receiver can {action} this trade")

                if action == "reject":
                    trade.status = TradeStatus.REJECTED
                    await self.notifier.notify(
                        session, NotificationType.TRADE_REJECTED, trade.proposer_id, trade.id, other_user_id=trade.receiver_id
                    )
                    self.log.info("Trade rejected")
                    return trade

                await self._verify_ownership(session, trade)
                differential = await differential_for_trade(session, trade)

                await self.notifier.notify(
                    session, NotificationType.TRADE_ACCEPTED, trade.proposer_id, trade.id, other_user_id=trade.receiver_id
                )
                if differential.requires_escrow:
                    trade.status = TradeStatus.ACCEPTED
                    self.log.info(
                        "Trade accepted, awaiting escrow",
                        payer_id=differential.payer_id,
                        amount=differential.amount,
                    )
                else:
                    await self.settle_in_session(session, trade)
                return trade

    async def _verify_ownership(self, session: AsyncSession, trade: Trade) -> None:
        items = await load_items(session, trade.proposer_item_ids + trade.receiver_item_ids)
        for ids, owner_id in ((trade.proposer_item_ids, trade.proposer_id), (trade.receiver_item_ids, trade.receiver_id)):
            for item_id in ids:
                if items[item_id].owner_id != owner_id:
                    raise InvalidStateTransition(f"Item {item_id} is no longer owned by user {owner_id}")

    async def cancel(self, trade_id: str, acting_user_id: str) -> Trade:
        """Proposer withdraws; a funded hold is refunded in the same transaction."""
        with trade_context(trade_id, actor_id=acting_user_id):
            async with get_session() as session:
                trade = await lock_trade(session, trade_id)
                _require_status(trade, CANCELLABLE_STATUSES, "cancel")
                if acting_user_id != trade.proposer_id:
                    raise Forbidden("Only the proposer can cancel this trade")

                hold = await self.escrow.current_hold(session, trade.id)
                if hold is not None:
                    if hold.status == EscrowStatus.PARTIALLY_REFUNDED:
                        raise InvalidStateTransition("Escrow was partially refunded; the trade can only complete")
                    if hold.status == EscrowStatus.FUNDED:
                        await self.escrow.refund_in_session(session, hold)
                    elif hold.status == EscrowStatus.PENDING:
                        await self.escrow.cancel_pending_hold(hold)

                trade.status = TradeStatus.CANCELLED
                await self.notifier.notify(
                    session, NotificationType.TRADE_CANCELLED, trade.receiver_id, trade.id, other_user_id=trade.proposer_id
                )
                self.log.info("Trade cancelled", refunded_hold=hold.id if hold else None)
                return trade

    async def counter(
        self,
        trade_id: str,
        acting_user_id: str,
        proposer_item_ids: Sequence[str],
        receiver_item_ids: Sequence[str],
        proposer_cash: int = 0,
        receiver_cash: int = 0,
        message: Optional[str] = None,
    ) -> Trade:
        """Receiver answers with new terms.

        The counter is a fresh PROPOSED trade with roles swapped: the acting
        user becomes its proposer, and the item and cash arguments are read
        from that perspective. The original closes as COUNTERED.
        """
        with trade_context(trade_id, actor_id=acting_user_id):
            async with get_session() as session:
                original = await lock_trade(session, trade_id)
                _require_status(original, (TradeStatus.PROPOSED,), "counter")
                if acting_user_id != original.receiver_id:
                    raise Forbidden("Only the receiver can counter this trade")

                counter_trade = await self._create_trade(
                    session,
                    proposer_id=original.receiver_id,
                    receiver_id=original.proposer_id,
                    proposer_item_ids=proposer_item_ids,
                    receiver_item_ids=receiver_item_ids,
                    proposer_cash=proposer_cash,
                    receiver_cash=receiver_cash,
                    parent_trade_id=original.id,
                    counter_message=message,
                )
                original.status = TradeStatus.COUNTERED

                await self.notifier.notify(
                    session, NotificationType.COUNTER_OFFER, original.proposer_id, counter_trade.id, other_user_id=acting_user_id
                )
                self.log.info("Trade countered", counter_trade_id=counter_trade.id)
                return counter_trade

    # ===================
    # Shipping & Verification
    # ===================

    async def submit_tracking(
        self,
        trade_id: str,
        user_id: str,
        tracking_number: str,
        carrier: Optional[str] = None,
    ) -> Trade:
        if not tracking_number or not tracking_number.strip():
            raise ValidationError("Tracking number is required")

        with trade_context(trade_id, actor_id=user_id):
            async with get_session() as session:
                trade = await lock_trade(session, trade_id)
                _require_party(trade, user_id)
                _require_status(trade, SHIPPING_STATUSES, "submit tracking for")

                side = trade.side_of(user_id).value.lower()
                setattr(trade, f"{side}_tracking_number", tracking_number.strip())
                setattr(trade, f"{side}_carrier", carrier)
                setattr(trade, f"{side}_submitted_tracking", True)

                await self.notifier.notify(
                    session, NotificationType.TRACKING_ADDED, trade.counterparty_of(user_id), trade.id, other_user_id=user_id
                )
                self.log.info("Tracking submitted", side=side, carrier=carrier)
                return trade

    async def verify_satisfaction(self, trade_id: str, user_id: str) -> Trade:
        """Mark receipt as verified by one party; the second verification completes the trade."""
        with trade_context(trade_id, actor_id=user_id):
            async with get_session() as session:
                trade = await lock_trade(session, trade_id)
                _require_party(trade, user_id)
                _require_status(trade, SHIPPING_STATUSES, "verify")
                await self._require_paid(session, trade)

                flag = f"{trade.side_of(user_id).value.lower()}_verified_satisfaction"
                if getattr(trade, flag):
                    return trade
                setattr(trade, flag, True)

                await self.notifier.notify(
                    session, NotificationType.ITEMS_VERIFIED, trade.counterparty_of(user_id), trade.id, other_user_id=user_id
                )
                self.log.info("Satisfaction verified", flag=flag)

                if trade.proposer_verified_satisfaction and trade.receiver_verified_satisfaction:
                    await self._complete(session, trade)
                return trade

    async def release_escrow(self, trade_id: str) -> EscrowHold:
        """Operator completion: settle a funded trade and pay its hold out without waiting for verification."""
        with trade_context(trade_id):
            async with get_session() as session:
                trade = await lock_trade(session, trade_id)
                hold = await self.escrow.current_hold(session, trade_id)
                self.escrow.require_active(hold, trade_id)
                _require_status(trade, (TradeStatus.ESCROW_FUNDED,), "release escrow for")

                await self._complete(session, trade)
                return hold

    async def _require_paid(self, session: AsyncSession, trade: Trade) -> None:
        differential = await differential_for_trade(session, trade)
        if not differential.requires_escrow:
            return
        hold = await self.escrow.current_hold(session, trade.id)
        if hold is None or hold.status not in PAID_HOLD_STATUSES:
            raise InvalidStateTransition("Escrow must be funded before items can be verified")

    async def _complete(self, session: AsyncSession, trade: Trade) -> None:
        # Database writes first so a failed settlement never pays out
        await self.settle_in_session(session, trade)
        hold = await get_live_hold(session, trade.id)
        if hold is not None and hold.status == EscrowStatus.FUNDED:
            await self.escrow.release_in_session(session, hold)

    # ===================
    # Settlement
    # ===================

    async def settle_in_session(self, session: AsyncSession, trade: Trade) -> None:
        """Swap items, move offered cash, open the rating window.

        Runs inside the caller's transaction: any failure here rolls back the
        status change that triggered it.
        """
        now = utcnow()

        await self._transfer_items(session, trade.proposer_item_ids, trade.proposer_id, trade.receiver_id)
        await self._transfer_items(session, trade.receiver_item_ids, trade.receiver_id, trade.proposer_id)

        await transfer_balance(session, trade.proposer_id, trade.receiver_id, trade.proposer_cash)
        await transfer_balance(session, trade.receiver_id, trade.proposer_id, trade.receiver_cash)

        trade.settled_at = now
        trade.status = TradeStatus.COMPLETED_AWAITING_RATING
        trade.rating_deadline = now + timedelta(days=self.rating_window_days)

        await self.price_signals.record(session, trade, completed_at=now)
        await self.notifier.notify_both(
            session, NotificationType.TRADE_COMPLETED, trade.proposer_id, trade.receiver_id, trade.id
        )
        self.log.info(
            "Trade settled",
            trade_id=trade.id,
            proposer_cash=trade.proposer_cash,
            receiver_cash=trade.receiver_cash,
        )

    @staticmethod
    async def _transfer_items(session: AsyncSession, item_ids: list[str], from_user_id: str, to_user_id: str) -> None:
        if not item_ids:
            return
        result = await session.execute(
            update(Item)
            .where(Item.id.in_(item_ids), Item.owner_id == from_user_id)
            .values(owner_id=to_user_id, updated_at=utcnow())
        )
        if result.rowcount != len(item_ids):
            raise InvalidStateTransition(f"Items changed owner before settlement; expected all owned by {from_user_id}")
