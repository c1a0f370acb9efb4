"""
Escrow coordinator.

Moves the cash differential of an accepted trade through a payment provider:
fund -> (confirm) -> release or refund. The provider is injected once; the
coordinator never knows which backend it talks to.

Funding runs in two short transactions around the provider call so that a
failed or slow provider leaves the hold PENDING, never FUNDED, and a retry
reuses the same hold id as idempotency key.
"""

from datetime import timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.db.database import (
    generate_id,
    get_holds_for_trade,
    get_live_hold,
    get_session,
    lock_trade,
)
from tradedesk.db.models import EscrowHold, EscrowStatus, NotificationType, Trade, TradeStatus, utcnow
from tradedesk.errors import (
    AlreadyFunded,
    InvalidEscrowState,
    InvalidStateTransition,
    NoCashDifferential,
    NoEscrowFound,
    NotFound,
    ValidationError,
    WrongPayer,
)
from tradedesk.payments.base import PaymentProvider, ProviderHold
from tradedesk.services.differential import differential_for_trade
from tradedesk.services.notifications import Notifier
from tradedesk.utils.logging import LoggerMixin, trade_context

# Holds that still have money under escrow
ACTIVE_HOLD_STATUSES = (EscrowStatus.FUNDED, EscrowStatus.DISPUTED)

# A hold_funds call older than this is presumed dead and may be retried
FUNDING_ATTEMPT_TIMEOUT = timedelta(minutes=5)


def _attempt_in_flight(hold: EscrowHold) -> bool:
    started = hold.funding_started_at
    if started is None:
        return False
    if started.tzinfo is None:
        # SQLite hands back naive datetimes
        started = started.replace(tzinfo=timezone.utc)
    return utcnow() - started < FUNDING_ATTEMPT_TIMEOUT


class EscrowCoordinator(LoggerMixin):
    """Funds, releases and refunds escrow holds for trades."""

    def __init__(self, provider: PaymentProvider, notifier: Optional[Notifier] = None):
        self.provider = provider
        self.notifier = notifier or Notifier()

    # ===================
    # Funding
    # ===================

    async def fund_escrow(self, trade_id: str, payer_id: str, amount: Optional[int] = None) -> EscrowHold:
        """Hold the cash differential from ``payer_id``.

        Raises NoCashDifferential, WrongPayer, AlreadyFunded or
        InvalidStateTransition before any money moves. A second call while
        the first is still waiting on the provider raises AlreadyFunded.
        """
        with trade_context(trade_id, actor_id=payer_id):
            hold = await self._reserve_hold(trade_id, payer_id, amount)

            try:
                provider_hold = await self.provider.hold_funds(
                    hold_id=hold.id,
                    amount=hold.amount,
                    trade_id=trade_id,
                    payer_id=payer_id,
                    recipient_id=hold.recipient_id,
                )
            except Exception as e:
                self.log.warning("Provider hold failed, escrow left pending", hold_id=hold.id, error=str(e))
                await self._end_attempt(hold.id)
                raise

            return await self._apply_provider_hold(trade_id, hold.id, provider_hold)

    async def _reserve_hold(self, trade_id: str, payer_id: str, amount: Optional[int]) -> EscrowHold:
        """Validate the request and create (or reuse) a PENDING hold row."""
        async with get_session() as session:
            trade = await lock_trade(session, trade_id)

            live = await get_live_hold(session, trade_id)
            if live is not None and live.status != EscrowStatus.PENDING:
                raise AlreadyFunded(f"Escrow already {live.status.value.lower()} for trade {trade_id}")

            if trade.status != TradeStatus.ACCEPTED:
                raise InvalidStateTransition(
                    f"Cannot fund escrow for trade in status {trade.status.value}"
                )

            differential = await differential_for_trade(session, trade)
            if differential.is_zero:
                raise NoCashDifferential("No cash differential - escrow not needed")
            if payer_id != differential.payer_id:
                raise WrongPayer(f"User {payer_id} is not the payer for this trade")
            if amount is not None and amount != differential.amount:
                raise ValidationError(
                    f"Amount {amount} does not match cash differential {differential.amount}"
                )

            if live is not None:
                if _attempt_in_flight(live):
                    raise AlreadyFunded(f"Escrow funding already in progress for trade {trade_id}")
                live.funding_started_at = utcnow()
                self.log.info("Reusing pending escrow hold", hold_id=live.id)
                return live

            hold = EscrowHold(
                id=generate_id(),
                trade_id=trade_id,
                payer_id=payer_id,
                recipient_id=differential.recipient_id,
                amount=differential.amount,
                refunded_amount=0,
                status=EscrowStatus.PENDING,
                provider=self.provider.name,
                funding_started_at=utcnow(),
            )
            session.add(hold)
            try:
                await session.flush()
            except IntegrityError as e:
                raise AlreadyFunded(f"Escrow already exists for trade {trade_id}") from e

            self.log.info("Escrow hold reserved", hold_id=hold.id, amount=hold.amount)
            return hold

    async def _end_attempt(self, hold_id: str) -> None:
        async with get_session() as session:
            hold = await self._lock_hold(session, hold_id)
            hold.funding_started_at = None

    async def _apply_provider_hold(self, trade_id: str, hold_id: str, provider_hold: ProviderHold) -> EscrowHold:
        async with get_session() as session:
            trade = await lock_trade(session, trade_id)
            hold = await self._lock_hold(session, hold_id)
            if hold.status == EscrowStatus.FUNDED:
                raise AlreadyFunded(f"Escrow already funded for trade {trade_id}")

            hold.funding_started_at = None
            hold.provider_reference = provider_hold.reference
            hold.client_secret = provider_hold.client_secret

            if hold.status != EscrowStatus.PENDING or trade.status != TradeStatus.ACCEPTED:
                # Voided, or the trade moved on while the provider call was in flight
                self.log.warning(
                    "Provider hold landed on inactive escrow, returning funds",
                    hold_id=hold_id,
                    hold_status=hold.status.value,
                    trade_status=trade.status.value,
                    provider_status=provider_hold.status.value,
                )
                if provider_hold.status == EscrowStatus.FUNDED:
                    await self.refund_in_session(session, hold)
                else:
                    await self.cancel_pending_hold(hold)
            elif provider_hold.status == EscrowStatus.FUNDED:
                hold.status = EscrowStatus.FUNDED
                await self._mark_trade_funded(session, trade, hold)
            else:
                self.log.info("Escrow awaiting payer confirmation", hold_id=hold_id)
            return hold

    async def confirm_escrow(self, trade_id: str, payer_id: str) -> EscrowHold:
        """Promote a PENDING hold to FUNDED once the provider reports the money held."""
        with trade_context(trade_id, actor_id=payer_id):
            async with get_session() as session:
                hold = await get_live_hold(session, trade_id)
                if hold is None:
                    raise NoEscrowFound(f"No escrow hold found for trade: {trade_id}")
                if hold.payer_id != payer_id:
                    raise WrongPayer(f"User {payer_id} is not the payer for this trade")
                if hold.status != EscrowStatus.PENDING:
                    if hold.status == EscrowStatus.FUNDED:
                        return hold
                    raise InvalidEscrowState(f"Escrow is not PENDING: {hold.status.value}")
                if not hold.provider_reference:
                    raise InvalidEscrowState("Escrow hold was never submitted to the provider; fund it again")
                hold_id, reference = hold.id, hold.provider_reference

            provider_hold = await self.provider.get_escrow_hold(reference)
            if provider_hold is None:
                raise NoEscrowFound(f"Provider has no record of escrow hold {reference}")
            if provider_hold.status != EscrowStatus.FUNDED:
                raise InvalidEscrowState(
                    f"Provider reports escrow as {provider_hold.status.value}",
                    retryable=provider_hold.status == EscrowStatus.PENDING,
                )

            return await self._apply_provider_hold(trade_id, hold_id, provider_hold)

    async def _mark_trade_funded(self, session: AsyncSession, trade: Trade, hold: EscrowHold) -> None:
        trade.status = TradeStatus.ESCROW_FUNDED
        await self.notifier.notify(
            session, NotificationType.ESCROW_FUNDED, hold.recipient_id, trade.id, other_user_id=hold.payer_id
        )
        self.log.info("Escrow funded", hold_id=hold.id, amount=hold.amount)

    # ===================
    # Release & Refund
    # ===================

    async def refund_escrow(self, trade_id: str, amount: Optional[int] = None) -> EscrowHold:
        """Return a held differential to the payer; partial when ``amount`` is given.

        A full refund puts the trade back to ACCEPTED so the payer can fund
        it again. A partial refund is a price adjustment: the remainder stays
        with the recipient and the trade carries on to verification.
        """
        with trade_context(trade_id):
            async with get_session() as session:
                trade = await lock_trade(session, trade_id)
                hold = await self.current_hold(session, trade_id)
                self.require_active(hold, trade_id)
                if trade.status == TradeStatus.DISPUTE_OPENED:
                    raise InvalidStateTransition("Escrow under dispute is settled by resolving the dispute")

                await self.refund_in_session(session, hold, amount)
                if hold.status == EscrowStatus.REFUNDED and trade.status == TradeStatus.ESCROW_FUNDED:
                    trade.status = TradeStatus.ACCEPTED
                    self.log.info("Trade back to awaiting escrow")
                return hold

    async def release_in_session(self, session: AsyncSession, hold: EscrowHold) -> None:
        """Release inside the caller's transaction; the caller holds the trade lock."""
        await self.provider.release_funds(hold.provider_reference)
        hold.status = EscrowStatus.RELEASED
        await self.notifier.notify(
            session, NotificationType.ESCROW_RELEASED, hold.recipient_id, hold.trade_id, other_user_id=hold.payer_id
        )
        self.log.info("Escrow released", hold_id=hold.id, recipient_id=hold.recipient_id, amount=hold.amount)

    async def refund_in_session(self, session: AsyncSession, hold: EscrowHold, amount: Optional[int] = None) -> None:
        """Refund inside the caller's transaction; the caller holds the trade lock."""
        if amount is not None and not 1 <= amount <= hold.amount:
            raise ValidationError(f"Refund amount must be between 1 and {hold.amount}")
        partial = amount is not None and amount < hold.amount

        await self.provider.refund_held_funds(hold.provider_reference, amount if partial else None)
        if partial:
            hold.status = EscrowStatus.PARTIALLY_REFUNDED
            hold.refunded_amount = amount
        else:
            hold.status = EscrowStatus.REFUNDED
            hold.refunded_amount = hold.amount

        await self.notifier.notify(
            session, NotificationType.ESCROW_REFUNDED, hold.payer_id, hold.trade_id, other_user_id=hold.recipient_id
        )
        self.log.info("Escrow refunded", hold_id=hold.id, refunded_amount=hold.refunded_amount, partial=partial)

    async def cancel_pending_hold(self, hold: EscrowHold) -> None:
        """Void a hold that never got funded; nothing was collected."""
        if hold.provider_reference:
            # Drop the provider side too, or the payer could still confirm it
            await self.provider.refund_held_funds(hold.provider_reference)
        hold.status = EscrowStatus.REFUNDED
        hold.refunded_amount = 0
        hold.funding_started_at = None
        self.log.info("Pending escrow hold voided", hold_id=hold.id)

    # ===================
    # Queries
    # ===================

    async def current_hold(self, session: AsyncSession, trade_id: str) -> Optional[EscrowHold]:
        """The live hold, or the most recent one when all are refunded."""
        live = await get_live_hold(session, trade_id)
        if live is not None:
            return live
        holds = await get_holds_for_trade(session, trade_id)
        return holds[-1] if holds else None

    async def get_escrow_status(self, trade_id: str) -> dict:
        """Holds for a trade plus a freshly computed differential."""
        async with get_session() as session:
            trade = await session.get(Trade, trade_id)
            if trade is None:
                raise NotFound(f"Trade not found: {trade_id}")
            holds = await get_holds_for_trade(session, trade_id)
            current = await self.current_hold(session, trade_id)
            differential = await differential_for_trade(session, trade)

        return {
            "has_escrow": current is not None,
            "escrow_hold": current,
            "holds": holds,
            "cash_differential": differential,
        }

    @staticmethod
    def require_active(hold: Optional[EscrowHold], trade_id: str) -> None:
        if hold is None:
            raise NoEscrowFound(f"No escrow hold found for trade: {trade_id}")
        if hold.status not in ACTIVE_HOLD_STATUSES:
            raise InvalidEscrowState(f"Escrow is not in FUNDED state: {hold.status.value}")

    @staticmethod
    async def _lock_hold(session: AsyncSession, hold_id: str) -> EscrowHold:
        result = await session.execute(
            select(EscrowHold)
            .where(EscrowHold.id == hold_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
