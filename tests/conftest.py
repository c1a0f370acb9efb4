"""
Pytest configuration and fixtures.
"""

import os

# Must be set before tradedesk modules read settings at import
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("PAYMENT_PROVIDER", "mock")

from typing import Awaitable, Callable, Optional

import pytest
from sqlalchemy import update

from tradedesk.db import database as db
from tradedesk.db.models import Item, Trade, TradeStatus, User
from tradedesk.payments import MockPaymentProvider
from tradedesk.services.disputes import DisputeService
from tradedesk.services.escrow import EscrowCoordinator
from tradedesk.services.notifications import Notifier
from tradedesk.services.ratings import RatingService
from tradedesk.services.trades import TradeService


@pytest.fixture
async def database(tmp_path):
    """Fresh SQLite database per test."""
    await db.init_db(f"sqlite+aiosqlite:///{tmp_path / 'tradedesk.db'}")
    await db.create_tables()
    yield
    await db.close_db()


@pytest.fixture
def provider() -> MockPaymentProvider:
    return MockPaymentProvider()


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture
def escrow(database, provider, notifier) -> EscrowCoordinator:
    return EscrowCoordinator(provider, notifier)


@pytest.fixture
def trades(escrow, notifier) -> TradeService:
    return TradeService(escrow, notifier, rating_window_days=7)


@pytest.fixture
def ratings(database, notifier) -> RatingService:
    return RatingService(notifier)


@pytest.fixture
def disputes(trades) -> DisputeService:
    return DisputeService(trades)


@pytest.fixture
def make_user(database) -> Callable[..., Awaitable[User]]:
    async def _make(name: str = "user", balance: int = 10_000, email: Optional[str] = None) -> User:
        return await db.create_user(name, email=email, balance=balance)
    return _make


@pytest.fixture
def make_item(database) -> Callable[..., Awaitable[Item]]:
    async def _make(owner: User, value: int, name: str = "item", condition: Optional[str] = "NEAR_MINT") -> Item:
        return await db.create_item(owner.id, name, estimated_market_value=value, condition=condition)
    return _make


@pytest.fixture
async def alice(make_user) -> User:
    return await make_user("Alice", email="alice@example.com")


@pytest.fixture
async def bob(make_user) -> User:
    return await make_user("Bob", email="bob@example.com")


@pytest.fixture
async def carol(make_user) -> User:
    return await make_user("Carol", email="carol@example.com")


@pytest.fixture
async def escrow_trade(trades, alice, bob, make_item):
    """Accepted trade where Bob owes Alice a 2000 cent differential.

    Returns (trade, alice_item, bob_item).
    """
    alice_item = await make_item(alice, 5000, name="Charizard")
    bob_item = await make_item(bob, 3000, name="Blastoise")
    trade = await trades.propose(alice.id, bob.id, [alice_item.id], [bob_item.id])
    trade = await trades.respond(trade.id, bob.id, "accept")
    return trade, alice_item, bob_item


@pytest.fixture
async def funded_trade(escrow, escrow_trade, bob):
    trade, alice_item, bob_item = escrow_trade
    hold = await escrow.fund_escrow(trade.id, bob.id, 2000)
    return trade, alice_item, bob_item, hold


async def force_trade_status(trade_id: str, status: TradeStatus) -> None:
    """Put a trade into a state without walking the lifecycle."""
    async with db.get_session() as session:
        await session.execute(update(Trade).where(Trade.id == trade_id).values(status=status))


async def reassign_item(item_id: str, owner_id: str) -> None:
    async with db.get_session() as session:
        await session.execute(update(Item).where(Item.id == item_id).values(owner_id=owner_id))


@pytest.fixture
def force_status(database):
    return force_trade_status


@pytest.fixture
def move_item(database):
    return reassign_item
