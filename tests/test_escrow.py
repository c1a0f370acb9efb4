"""
Tests for the escrow coordinator.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from tradedesk.db import database as db
from tradedesk.db.models import DisputeType, EscrowHold, EscrowStatus, NotificationType, TradeStatus, utcnow
from tradedesk.errors import (
    AlreadyFunded,
    InvalidEscrowState,
    InvalidStateTransition,
    NoCashDifferential,
    NoEscrowFound,
    NotFound,
    PaymentProviderError,
    ProviderTimeout,
    ValidationError,
    WrongPayer,
)
from tradedesk.payments import MockPaymentProvider, PaymentStatus
from tradedesk.services.escrow import FUNDING_ATTEMPT_TIMEOUT, EscrowCoordinator
from tradedesk.services.trades import TradeService


class FlakyProvider(MockPaymentProvider):
    """Times out on the first hold request."""

    def __init__(self):
        super().__init__()
        self.hold_calls: list[str] = []

    async def hold_funds(self, hold_id, amount, trade_id, payer_id, recipient_id):
        self.hold_calls.append(hold_id)
        if len(self.hold_calls) == 1:
            raise ProviderTimeout("no response", self.name)
        return await super().hold_funds(hold_id, amount, trade_id, payer_id, recipient_id)


class ConfirmingProvider(MockPaymentProvider):
    """Holds start PENDING until the payer confirms out of band."""

    async def hold_funds(self, hold_id, amount, trade_id, payer_id, recipient_id):
        hold = await super().hold_funds(hold_id, amount, trade_id, payer_id, recipient_id)
        if hold.status == EscrowStatus.FUNDED and hold.client_secret is None:
            hold.status = EscrowStatus.PENDING
            hold.client_secret = f"secret_{hold_id}"
        return hold

    def confirm(self, reference: str) -> None:
        self._holds[reference].status = EscrowStatus.FUNDED


class GatedProvider(ConfirmingProvider):
    """Blocks inside hold_funds until the test opens the gate."""

    def __init__(self, needs_confirmation: bool = False):
        super().__init__()
        self.needs_confirmation = needs_confirmation
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def hold_funds(self, hold_id, amount, trade_id, payer_id, recipient_id):
        self.entered.set()
        await self.gate.wait()
        if self.needs_confirmation:
            return await super().hold_funds(hold_id, amount, trade_id, payer_id, recipient_id)
        return await MockPaymentProvider.hold_funds(self, hold_id, amount, trade_id, payer_id, recipient_id)


async def _holds(trade_id: str):
    async with db.get_session() as session:
        return await db.get_holds_for_trade(session, trade_id)


async def _accepted_trade(trades: TradeService, alice, bob, make_item):
    alice_item = await make_item(alice, 5000)
    bob_item = await make_item(bob, 3000)
    trade = await trades.propose(alice.id, bob.id, [alice_item.id], [bob_item.id])
    return await trades.respond(trade.id, bob.id, "accept")


class TestFundEscrow:
    """Funding guards and the happy path."""

    async def test_fund_moves_trade_to_escrow_funded(self, escrow, trades, escrow_trade, alice, bob):
        trade, _, _ = escrow_trade

        hold = await escrow.fund_escrow(trade.id, bob.id, 2000)

        assert hold.status == EscrowStatus.FUNDED
        assert hold.payer_id == bob.id
        assert hold.recipient_id == alice.id
        assert hold.amount == 2000
        assert hold.provider == "mock"
        assert hold.provider_reference.startswith("escrow_")
        assert (await trades.get_trade(trade.id)).status == TradeStatus.ESCROW_FUNDED

        funded = [
            n for n in await db.get_notifications_for_user(alice.id)
            if n.type == NotificationType.ESCROW_FUNDED
        ]
        assert len(funded) == 1
        assert funded[0].message == "Bob funded the escrow. Money is secured!"

    async def test_amount_defaults_to_differential(self, escrow, escrow_trade, bob):
        trade, _, _ = escrow_trade

        hold = await escrow.fund_escrow(trade.id, bob.id)

        assert hold.amount == 2000

    async def test_wrong_payer(self, escrow, escrow_trade, alice, carol):
        trade, _, _ = escrow_trade

        for user in (alice, carol):
            with pytest.raises(WrongPayer):
                await escrow.fund_escrow(trade.id, user.id, 2000)
        assert await _holds(trade.id) == []

    async def test_wrong_amount(self, escrow, escrow_trade, bob):
        trade, _, _ = escrow_trade

        with pytest.raises(ValidationError):
            await escrow.fund_escrow(trade.id, bob.id, 1999)
        assert await _holds(trade.id) == []

    async def test_second_funding_rejected(self, escrow, funded_trade, bob):
        trade, _, _, _ = funded_trade

        with pytest.raises(AlreadyFunded):
            await escrow.fund_escrow(trade.id, bob.id, 2000)

        holds = await _holds(trade.id)
        assert [h.status for h in holds] == [EscrowStatus.FUNDED]

    async def test_proposed_trade_cannot_be_funded(self, escrow, trades, alice, bob, make_item):
        a1 = await make_item(alice, 5000)
        b1 = await make_item(bob, 3000)
        trade = await trades.propose(alice.id, bob.id, [a1.id], [b1.id])

        with pytest.raises(InvalidStateTransition):
            await escrow.fund_escrow(trade.id, bob.id, 2000)

    async def test_balanced_trade_has_nothing_to_fund(self, escrow, trades, alice, bob, make_item, force_status):
        a1 = await make_item(alice, 3000)
        b1 = await make_item(bob, 3000)
        trade = await trades.propose(alice.id, bob.id, [a1.id], [b1.id])
        await force_status(trade.id, TradeStatus.ACCEPTED)

        with pytest.raises(NoCashDifferential):
            await escrow.fund_escrow(trade.id, bob.id)

    async def test_unknown_trade(self, escrow, bob):
        with pytest.raises(NotFound):
            await escrow.fund_escrow("missing", bob.id, 2000)


class TestProviderFailures:
    """Provider trouble never marks a hold FUNDED."""

    async def test_timeout_leaves_pending_and_retry_reuses_hold(self, database, notifier, alice, bob, make_item):
        provider = FlakyProvider()
        escrow = EscrowCoordinator(provider, notifier)
        trades = TradeService(escrow, notifier, rating_window_days=7)
        trade = await _accepted_trade(trades, alice, bob, make_item)

        with pytest.raises(ProviderTimeout) as exc_info:
            await escrow.fund_escrow(trade.id, bob.id, 2000)
        assert exc_info.value.retryable

        holds = await _holds(trade.id)
        assert [h.status for h in holds] == [EscrowStatus.PENDING]
        assert (await trades.get_trade(trade.id)).status == TradeStatus.ACCEPTED

        hold = await escrow.fund_escrow(trade.id, bob.id, 2000)

        assert hold.status == EscrowStatus.FUNDED
        assert provider.hold_calls == [holds[0].id, holds[0].id]
        assert [h.id for h in await _holds(trade.id)] == [holds[0].id]

    async def test_cancel_voids_pending_hold(self, database, notifier, alice, bob, make_item):
        provider = FlakyProvider()
        escrow = EscrowCoordinator(provider, notifier)
        trades = TradeService(escrow, notifier, rating_window_days=7)
        trade = await _accepted_trade(trades, alice, bob, make_item)
        with pytest.raises(ProviderTimeout):
            await escrow.fund_escrow(trade.id, bob.id, 2000)

        await trades.cancel(trade.id, alice.id)

        holds = await _holds(trade.id)
        assert holds[0].status == EscrowStatus.REFUNDED
        assert holds[0].refunded_amount == 0

    async def test_hold_funded_after_cancel_is_refunded(self, database, notifier, alice, bob, make_item, force_status):
        """A trade cancelled while the provider call was in flight gets its money back."""

        class CancellingProvider(MockPaymentProvider):
            async def hold_funds(self, hold_id, amount, trade_id, payer_id, recipient_id):
                await force_status(trade_id, TradeStatus.CANCELLED)
                return await super().hold_funds(hold_id, amount, trade_id, payer_id, recipient_id)

        provider = CancellingProvider()
        escrow = EscrowCoordinator(provider, notifier)
        trades = TradeService(escrow, notifier, rating_window_days=7)
        trade = await _accepted_trade(trades, alice, bob, make_item)

        hold = await escrow.fund_escrow(trade.id, bob.id, 2000)

        assert hold.status == EscrowStatus.REFUNDED
        assert hold.refunded_amount == 2000
        assert (await provider.get_escrow_hold(hold.provider_reference)).status == EscrowStatus.REFUNDED
        assert (await trades.get_trade(trade.id)).status == TradeStatus.CANCELLED


class TestInFlightFunding:
    """Calls that land while hold_funds is still waiting on the provider."""

    @pytest.fixture
    def gated(self, database, notifier):
        def _build(needs_confirmation: bool = False):
            provider = GatedProvider(needs_confirmation)
            escrow = EscrowCoordinator(provider, notifier)
            return provider, escrow, TradeService(escrow, notifier, rating_window_days=7)
        return _build

    async def test_second_funding_during_first_is_rejected(self, gated, alice, bob, make_item):
        provider, escrow, trades = gated()
        trade = await _accepted_trade(trades, alice, bob, make_item)

        first = asyncio.create_task(escrow.fund_escrow(trade.id, bob.id, 2000))
        await provider.entered.wait()

        with pytest.raises(AlreadyFunded):
            await escrow.fund_escrow(trade.id, bob.id, 2000)

        provider.gate.set()
        hold = await first

        assert hold.status == EscrowStatus.FUNDED
        assert [h.status for h in await _holds(trade.id)] == [EscrowStatus.FUNDED]
        assert len(provider._holds) == 1

    async def test_cancel_during_funding_refunds_the_payer(self, gated, alice, bob, make_item):
        provider, escrow, trades = gated()
        trade = await _accepted_trade(trades, alice, bob, make_item)

        funding = asyncio.create_task(escrow.fund_escrow(trade.id, bob.id, 2000))
        await provider.entered.wait()
        await trades.cancel(trade.id, alice.id)
        provider.gate.set()
        hold = await funding

        assert hold.status == EscrowStatus.REFUNDED
        assert hold.refunded_amount == 2000
        assert (await provider.get_escrow_hold(hold.provider_reference)).status == EscrowStatus.REFUNDED
        assert (await trades.get_trade(trade.id)).status == TradeStatus.CANCELLED
        assert NotificationType.ESCROW_REFUNDED in [n.type for n in await db.get_notifications_for_user(bob.id)]

    async def test_cancel_during_funding_voids_unconfirmed_hold(self, gated, alice, bob, make_item):
        provider, escrow, trades = gated(needs_confirmation=True)
        trade = await _accepted_trade(trades, alice, bob, make_item)

        funding = asyncio.create_task(escrow.fund_escrow(trade.id, bob.id, 2000))
        await provider.entered.wait()
        await trades.cancel(trade.id, alice.id)
        provider.gate.set()
        hold = await funding

        assert hold.status == EscrowStatus.REFUNDED
        assert hold.refunded_amount == 0
        # The payer can no longer confirm it
        assert (await provider.get_escrow_hold(hold.provider_reference)).status == EscrowStatus.REFUNDED

    async def test_cancel_voids_submitted_pending_hold_at_provider(self, gated, alice, bob, make_item):
        provider, escrow, trades = gated(needs_confirmation=True)
        provider.gate.set()
        trade = await _accepted_trade(trades, alice, bob, make_item)
        hold = await escrow.fund_escrow(trade.id, bob.id, 2000)
        assert hold.status == EscrowStatus.PENDING

        await trades.cancel(trade.id, alice.id)

        assert (await provider.get_escrow_hold(hold.provider_reference)).status == EscrowStatus.REFUNDED
        assert (await _holds(trade.id))[0].status == EscrowStatus.REFUNDED

    async def test_abandoned_attempt_can_be_retried_once_stale(self, gated, alice, bob, make_item):
        provider, escrow, trades = gated()
        trade = await _accepted_trade(trades, alice, bob, make_item)

        abandoned = asyncio.create_task(escrow.fund_escrow(trade.id, bob.id, 2000))
        await provider.entered.wait()
        abandoned.cancel()
        with pytest.raises(asyncio.CancelledError):
            await abandoned

        with pytest.raises(AlreadyFunded):
            await escrow.fund_escrow(trade.id, bob.id, 2000)

        stale = utcnow() - FUNDING_ATTEMPT_TIMEOUT - timedelta(seconds=1)
        async with db.get_session() as session:
            await session.execute(update(EscrowHold).values(funding_started_at=stale))

        provider.gate.set()
        hold = await escrow.fund_escrow(trade.id, bob.id, 2000)

        assert hold.status == EscrowStatus.FUNDED
        assert [h.id for h in await _holds(trade.id)] == [hold.id]


class TestConfirmEscrow:

    @pytest.fixture
    def confirming(self, database, notifier):
        provider = ConfirmingProvider()
        escrow = EscrowCoordinator(provider, notifier)
        return provider, escrow, TradeService(escrow, notifier, rating_window_days=7)

    async def test_pending_hold_confirmed_later(self, confirming, alice, bob, make_item):
        provider, escrow, trades = confirming
        trade = await _accepted_trade(trades, alice, bob, make_item)

        hold = await escrow.fund_escrow(trade.id, bob.id, 2000)
        assert hold.status == EscrowStatus.PENDING
        assert hold.client_secret == f"secret_{hold.id}"
        assert (await trades.get_trade(trade.id)).status == TradeStatus.ACCEPTED

        with pytest.raises(InvalidEscrowState) as exc_info:
            await escrow.confirm_escrow(trade.id, bob.id)
        assert exc_info.value.retryable

        provider.confirm(hold.provider_reference)
        hold = await escrow.confirm_escrow(trade.id, bob.id)

        assert hold.status == EscrowStatus.FUNDED
        assert (await trades.get_trade(trade.id)).status == TradeStatus.ESCROW_FUNDED

        # Confirming again is a no-op
        again = await escrow.confirm_escrow(trade.id, bob.id)
        assert again.id == hold.id
        assert again.status == EscrowStatus.FUNDED

    async def test_confirm_requires_payer_and_hold(self, confirming, alice, bob, make_item):
        _, escrow, trades = confirming
        trade = await _accepted_trade(trades, alice, bob, make_item)

        with pytest.raises(NoEscrowFound):
            await escrow.confirm_escrow(trade.id, bob.id)

        await escrow.fund_escrow(trade.id, bob.id, 2000)
        with pytest.raises(WrongPayer):
            await escrow.confirm_escrow(trade.id, alice.id)


class TestReleaseAndRefund:

    async def test_release_completes_the_trade(self, escrow, trades, provider, funded_trade, alice, bob):
        trade, alice_item, bob_item, hold = funded_trade

        released = await trades.release_escrow(trade.id)

        assert released.status == EscrowStatus.RELEASED
        assert (await provider.get_escrow_hold(hold.provider_reference)).status == EscrowStatus.RELEASED
        assert NotificationType.ESCROW_RELEASED in [n.type for n in await db.get_notifications_for_user(alice.id)]

        stored = await trades.get_trade(trade.id)
        assert stored.status == TradeStatus.COMPLETED_AWAITING_RATING
        assert (await db.get_item(alice_item.id)).owner_id == bob.id
        assert (await db.get_item(bob_item.id)).owner_id == alice.id

        with pytest.raises(InvalidEscrowState):
            await trades.release_escrow(trade.id)
        with pytest.raises(InvalidEscrowState):
            await escrow.refund_escrow(trade.id)

    async def test_nothing_to_release(self, escrow, trades, escrow_trade):
        trade, _, _ = escrow_trade

        with pytest.raises(NoEscrowFound):
            await trades.release_escrow(trade.id)
        with pytest.raises(NoEscrowFound):
            await escrow.refund_escrow(trade.id)

    async def test_full_refund_reopens_funding(self, escrow, trades, funded_trade, alice, bob):
        trade, alice_item, _, _ = funded_trade

        hold = await escrow.refund_escrow(trade.id)

        assert hold.status == EscrowStatus.REFUNDED
        assert hold.refunded_amount == 2000
        assert NotificationType.ESCROW_REFUNDED in [n.type for n in await db.get_notifications_for_user(bob.id)]
        assert (await trades.get_trade(trade.id)).status == TradeStatus.ACCEPTED

        # Refunded money no longer licenses settlement
        with pytest.raises(InvalidStateTransition):
            await trades.verify_satisfaction(trade.id, alice.id)
        assert (await db.get_item(alice_item.id)).owner_id == alice.id

        again = await escrow.fund_escrow(trade.id, bob.id, 2000)
        assert again.id != hold.id
        assert (await trades.get_trade(trade.id)).status == TradeStatus.ESCROW_FUNDED

    async def test_partial_refund(self, escrow, trades, provider, funded_trade, alice, bob):
        trade, alice_item, _, _ = funded_trade

        hold = await escrow.refund_escrow(trade.id, 500)

        assert hold.status == EscrowStatus.PARTIALLY_REFUNDED
        assert hold.refunded_amount == 500
        assert (await provider.get_escrow_hold(hold.provider_reference)).refunded_amount == 500
        assert (await trades.get_trade(trade.id)).status == TradeStatus.ESCROW_FUNDED

        with pytest.raises(InvalidEscrowState):
            await escrow.refund_escrow(trade.id, 500)
        with pytest.raises(InvalidStateTransition):
            await trades.cancel(trade.id, alice.id)

        # The adjusted price still completes through verification
        await trades.verify_satisfaction(trade.id, alice.id)
        settled = await trades.verify_satisfaction(trade.id, bob.id)
        assert settled.status == TradeStatus.COMPLETED_AWAITING_RATING
        assert (await db.get_item(alice_item.id)).owner_id == bob.id

    async def test_refund_amount_out_of_range(self, escrow, funded_trade):
        trade, _, _, _ = funded_trade

        for amount in (0, -5, 2001):
            with pytest.raises(ValidationError):
                await escrow.refund_escrow(trade.id, amount)

        holds = await _holds(trade.id)
        assert holds[0].status == EscrowStatus.FUNDED
        assert holds[0].refunded_amount == 0

    async def test_disputed_escrow_is_not_refunded_directly(self, escrow, disputes, funded_trade, alice):
        trade, _, _, _ = funded_trade
        await disputes.open_dispute(trade.id, alice.id, DisputeType.ITEM_NOT_RECEIVED, "Nothing arrived")

        with pytest.raises(InvalidStateTransition):
            await escrow.refund_escrow(trade.id)
        assert (await _holds(trade.id))[0].status == EscrowStatus.DISPUTED


class TestEscrowStatus:

    async def test_status_without_hold(self, escrow, escrow_trade, alice, bob):
        trade, _, _ = escrow_trade

        status = await escrow.get_escrow_status(trade.id)

        assert status["has_escrow"] is False
        assert status["escrow_hold"] is None
        assert status["holds"] == []
        assert status["cash_differential"].payer_id == bob.id
        assert status["cash_differential"].amount == 2000

    async def test_status_with_hold(self, escrow, funded_trade):
        trade, _, _, hold = funded_trade

        status = await escrow.get_escrow_status(trade.id)

        assert status["has_escrow"] is True
        assert status["escrow_hold"].id == hold.id
        assert status["escrow_hold"].status == EscrowStatus.FUNDED
        assert len(status["holds"]) == 1

    async def test_unknown_trade(self, escrow):
        with pytest.raises(NotFound):
            await escrow.get_escrow_status("missing")


class TestMockProvider:
    """Payment intent side of the in-memory provider."""

    async def test_payment_intent_lifecycle(self):
        provider = MockPaymentProvider()

        intent = await provider.create_payment_intent(2000, "usd", "t1", "bob", metadata={"note": "x"})

        assert intent.status == PaymentStatus.SUCCEEDED
        assert intent.metadata == {"trade_id": "t1", "payer_id": "bob", "note": "x"}
        await provider.capture_payment(intent.id)

        await provider.refund_payment(intent.id, 500)
        assert intent.status == PaymentStatus.SUCCEEDED
        await provider.refund_payment(intent.id)
        assert intent.status == PaymentStatus.CANCELLED

        with pytest.raises(PaymentProviderError):
            await provider.capture_payment("pi_missing")

    async def test_holds_are_idempotent_per_hold_id(self):
        provider = MockPaymentProvider()

        first = await provider.hold_funds("h1", 2000, "t1", "bob", "alice")
        again = await provider.hold_funds("h1", 2000, "t1", "bob", "alice")

        assert again.reference == first.reference
        assert (await provider.get_escrow_hold_for_trade("t1")).reference == first.reference
        assert await provider.get_escrow_hold_for_trade("t2") is None

        await provider.release_funds(first.reference)
        with pytest.raises(PaymentProviderError):
            await provider.refund_held_funds(first.reference)
