"""
Dispute state machine.

    OPEN_AWAITING_RESPONSE --respond--> IN_MEDIATION --resolve--> RESOLVED
    OPEN_AWAITING_RESPONSE --resolve--> RESOLVED

The dispute row is authoritative. While it is unresolved the trade sits in
DISPUTE_OPENED and any funded hold is marked DISPUTED; resolution decides
whether escrow goes back to the payer or forward to the recipient.
"""

from typing import Optional, Union

from sqlalchemy.exc import IntegrityError

from tradedesk.db.database import generate_id, get_live_hold, get_session, lock_dispute, lock_trade
from tradedesk.db.models import (
    Dispute,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    EscrowStatus,
    NotificationType,
    TradeStatus,
    utcnow,
)
from tradedesk.errors import (
    DisputeAlreadyOpen,
    Forbidden,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from tradedesk.services.differential import differential_for_trade
from tradedesk.services.escrow import ACTIVE_HOLD_STATUSES, EscrowCoordinator
from tradedesk.services.trades import TradeService
from tradedesk.utils.logging import LoggerMixin, trade_context

DISPUTABLE_STATUSES = (
    TradeStatus.ACCEPTED,
    TradeStatus.ESCROW_FUNDED,
    TradeStatus.COMPLETED_AWAITING_RATING,
)


def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label}: {value!r}. Expected one of {allowed}") from None


class DisputeService(LoggerMixin):
    """Opens, answers and resolves disputes on trades."""

    def __init__(self, trades: TradeService, escrow: Optional[EscrowCoordinator] = None):
        self.trades = trades
        self.escrow = escrow or trades.escrow
        self.notifier = trades.notifier

    async def get_dispute(self, dispute_id: str) -> Dispute:
        async with get_session() as session:
            dispute = await session.get(Dispute, dispute_id)
            if dispute is None:
                raise NotFound(f"Dispute not found: {dispute_id}")
            return dispute

    async def open_dispute(
        self,
        trade_id: str,
        initiator_id: str,
        dispute_type: Union[DisputeType, str],
        statement: str,
    ) -> Dispute:
        dispute_type = _parse_enum(DisputeType, dispute_type, "dispute type")
        if not statement or not statement.strip():
            raise ValidationError("A statement is required to open a dispute")

        with trade_context(trade_id, actor_id=initiator_id):
            async with get_session() as session:
                trade = await lock_trade(session, trade_id)
                if not trade.is_party(initiator_id):
                    raise Forbidden(f"User {initiator_id} is not a party to trade {trade_id}")
                if trade.status == TradeStatus.DISPUTE_OPENED:
                    raise DisputeAlreadyOpen(f"Trade {trade_id} already has an open dispute")
                if trade.status not in DISPUTABLE_STATUSES:
                    raise InvalidStateTransition(f"Cannot open a dispute on a trade in status {trade.status.value}")

                respondent_id = trade.counterparty_of(initiator_id)
                dispute = Dispute(
                    id=generate_id(),
                    trade_id=trade_id,
                    initiator_id=initiator_id,
                    respondent_id=respondent_id,
                    dispute_type=dispute_type,
                    status=DisputeStatus.OPEN_AWAITING_RESPONSE,
                    initiator_statement=statement.strip(),
                    trade_status_before=trade.status,
                )
                session.add(dispute)
                try:
                    await session.flush()
                except IntegrityError as e:
                    raise DisputeAlreadyOpen(f"Trade {trade_id} already has an open dispute") from e

                trade.dispute_id = dispute.id
                trade.status = TradeStatus.DISPUTE_OPENED

                hold = await get_live_hold(session, trade_id)
                if hold is not None and hold.status == EscrowStatus.FUNDED:
                    hold.status = EscrowStatus.DISPUTED

                await self.notifier.notify(
                    session, NotificationType.DISPUTE_OPENED, respondent_id, trade_id, other_user_id=initiator_id
                )
                self.log.info("Dispute opened", dispute_id=dispute.id, dispute_type=dispute_type.value)
                return dispute

    async def respond_dispute(self, dispute_id: str, respondent_id: str, statement: str) -> Dispute:
        if not statement or not statement.strip():
            raise ValidationError("A statement is required")

        async with get_session() as session:
            dispute = await lock_dispute(session, dispute_id)
            with trade_context(dispute.trade_id, actor_id=respondent_id, dispute_id=dispute_id):
                if respondent_id != dispute.respondent_id:
                    raise Forbidden("Only the respondent can answer this dispute")
                if dispute.status != DisputeStatus.OPEN_AWAITING_RESPONSE:
                    raise InvalidStateTransition(f"Cannot respond to a dispute in status {dispute.status.value}")

                dispute.respondent_statement = statement.strip()
                dispute.status = DisputeStatus.IN_MEDIATION

                await self.notifier.notify(
                    session, NotificationType.DISPUTE_RESPONDED, dispute.initiator_id, dispute.trade_id,
                    other_user_id=respondent_id,
                )
                self.log.info("Dispute moved to mediation")
                return dispute

    async def resolve_dispute(
        self,
        dispute_id: str,
        resolution: Union[DisputeResolution, str],
        notes: Optional[str] = None,
    ) -> Dispute:
        """Close a dispute and settle the money.

        REFUND_INITIATOR refunds any held escrow and cancels the trade.
        TRADE_UPHELD and MUTUALLY_RESOLVED release escrow and settle the trade
        if that has not happened yet. A trade whose differential was never
        funded returns to its pre-dispute status instead of settling.
        """
        resolution = _parse_enum(DisputeResolution, resolution, "resolution")
        dispute = await self.get_dispute(dispute_id)

        with trade_context(dispute.trade_id, dispute_id=dispute_id):
            async with get_session() as session:
                # Same lock order as open_dispute: trade, then dispute
                trade = await lock_trade(session, dispute.trade_id)
                dispute = await lock_dispute(session, dispute_id)
                if dispute.status == DisputeStatus.RESOLVED:
                    raise InvalidStateTransition("Dispute is already resolved")

                hold = await get_live_hold(session, trade.id)

                if resolution == DisputeResolution.REFUND_INITIATOR:
                    if hold is not None and hold.status in ACTIVE_HOLD_STATUSES:
                        await self.escrow.refund_in_session(session, hold)
                    elif hold is not None and hold.status == EscrowStatus.PENDING:
                        await self.escrow.cancel_pending_hold(hold)
                    trade.status = TradeStatus.CANCELLED
                else:
                    paid = hold is not None and hold.status in ACTIVE_HOLD_STATUSES
                    if trade.settled_at is not None:
                        trade.status = dispute.trade_status_before
                    elif paid or not (await differential_for_trade(session, trade)).requires_escrow:
                        await self.trades.settle_in_session(session, trade)
                    else:
                        # Differential still owed; back to waiting for escrow
                        trade.status = dispute.trade_status_before
                    if paid:
                        await self.escrow.release_in_session(session, hold)

                dispute.status = DisputeStatus.RESOLVED
                dispute.resolution = resolution
                dispute.resolution_notes = notes
                dispute.resolved_at = utcnow()

                await self.notifier.notify_both(
                    session, NotificationType.DISPUTE_RESOLVED, trade.proposer_id, trade.receiver_id, trade.id
                )
                self.log.info("Dispute resolved", resolution=resolution.value, trade_status=trade.status.value)
                return dispute
