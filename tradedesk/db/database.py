"""
Database connection, session management and repository queries.

Transition logic runs against a single ``AsyncSession`` opened by the caller so
that a status flip and the writes it licenses commit together. The helpers that
take a ``session`` argument never commit on their own.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tradedesk.db.models import (
    Base,
    Dispute,
    EscrowHold,
    EscrowStatus,
    Item,
    Notification,
    PriceSignal,
    Trade,
    TradeRating,
    User,
)
from tradedesk.errors import AlreadyExists, NotFound, ValidationError
from tradedesk.utils.logging import get_logger

logger = get_logger(__name__)

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _normalize_url(database_url: str) -> str:
    # Heroku-style URLs lack the async driver
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


async def init_db(database_url: Optional[str] = None) -> None:
    """Initialize database connection."""
    global _engine, _session_factory

    if database_url is None:
        from tradedesk.config import get_settings
        database_url = get_settings().database_url

    database_url = _normalize_url(database_url)

    if database_url.startswith("sqlite"):
        _engine = create_async_engine(database_url, echo=False)
    else:
        _engine = create_async_engine(
            database_url,
            echo=False,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )

    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    logger.info("Database connection initialized", dialect=_engine.dialect.name)


async def create_tables() -> None:
    """Create all database tables."""
    if _engine is None:
        raise RuntimeError("Database not initialized")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")


async def close_db() -> None:
    """Close database connection."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional session: commits on success, rolls back on any exception."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ===================
# User & Item Operations
# ===================

async def create_user(name: str, email: Optional[str] = None, balance: int = 0) -> User:
    """Create a marketplace user."""
    async with get_session() as session:
        user = User(id=generate_id(), name=name, email=email, balance=balance)
        session.add(user)
        try:
            await session.flush()
        except IntegrityError as e:
            raise AlreadyExists(f"Email already registered: {email}") from e
        logger.info("Created user", user_id=user.id)
        return user


async def get_user(user_id: str) -> Optional[User]:
    async with get_session() as session:
        return await session.get(User, user_id)


async def create_item(
    owner_id: str,
    name: str,
    estimated_market_value: int = 0,
    description: Optional[str] = None,
    condition: Optional[str] = None,
) -> Item:
    """List a new item for a user."""
    if estimated_market_value < 0:
        raise ValidationError("Estimated market value must be non-negative")
    async with get_session() as session:
        if await session.get(User, owner_id) is None:
            raise NotFound(f"User not found: {owner_id}")
        item = Item(
            id=generate_id(),
            owner_id=owner_id,
            name=name,
            description=description,
            condition=condition,
            estimated_market_value=estimated_market_value,
        )
        session.add(item)
        await session.flush()
        return item


async def get_item(item_id: str) -> Optional[Item]:
    async with get_session() as session:
        return await session.get(Item, item_id)


async def get_items_for_user(user_id: str) -> list[Item]:
    """Inventory of a user."""
    async with get_session() as session:
        result = await session.execute(
            select(Item).where(Item.owner_id == user_id).order_by(Item.created_at)
        )
        return list(result.scalars().all())


async def require_user(session: AsyncSession, user_id: str) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFound(f"User not found: {user_id}")
    return user


async def load_items(session: AsyncSession, item_ids: Iterable[str]) -> dict[str, Item]:
    """Fetch items by id; raises NotFound naming every missing id."""
    ids = list(item_ids)
    if not ids:
        return {}
    result = await session.execute(select(Item).where(Item.id.in_(ids)))
    items = {item.id: item for item in result.scalars().all()}
    missing = [item_id for item_id in ids if item_id not in items]
    if missing:
        raise NotFound(f"Items not found: {', '.join(missing)}")
    return items


async def sum_item_values(session: AsyncSession, item_ids: Iterable[str]) -> int:
    """Total estimated market value of the given items, in cents."""
    ids = list(item_ids)
    if not ids:
        return 0
    result = await session.execute(
        select(func.coalesce(func.sum(Item.estimated_market_value), 0)).where(Item.id.in_(ids))
    )
    return int(result.scalar_one())


async def transfer_balance(session: AsyncSession, from_user_id: str, to_user_id: str, amount: int) -> None:
    """Move cents between users inside the caller's transaction."""
    if amount == 0:
        return
    await session.execute(
        update(User).where(User.id == from_user_id).values(balance=User.balance - amount)
    )
    await session.execute(
        update(User).where(User.id == to_user_id).values(balance=User.balance + amount)
    )


# ===================
# Trade Operations
# ===================

async def lock_trade(session: AsyncSession, trade_id: str) -> Trade:
    """Load a trade for update; serializes transitions on the same trade."""
    result = await session.execute(
        select(Trade)
        .where(Trade.id == trade_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    trade = result.scalar_one_or_none()
    if trade is None:
        raise NotFound(f"Trade not found: {trade_id}")
    return trade


async def get_trades_for_user(user_id: str) -> list[Trade]:
    async with get_session() as session:
        result = await session.execute(
            select(Trade)
            .where((Trade.proposer_id == user_id) | (Trade.receiver_id == user_id))
            .order_by(Trade.created_at.desc())
        )
        return list(result.scalars().all())


# ===================
# Escrow Hold Operations
# ===================

async def get_holds_for_trade(session: AsyncSession, trade_id: str) -> list[EscrowHold]:
    result = await session.execute(
        select(EscrowHold)
        .where(EscrowHold.trade_id == trade_id)
        .order_by(EscrowHold.created_at)
    )
    return list(result.scalars().all())


async def get_live_hold(session: AsyncSession, trade_id: str) -> Optional[EscrowHold]:
    """The one hold per trade that has not been refunded, if any."""
    result = await session.execute(
        select(EscrowHold)
        .where(
            EscrowHold.trade_id == trade_id,
            EscrowHold.status.not_in([EscrowStatus.REFUNDED, EscrowStatus.PARTIALLY_REFUNDED]),
        )
        .with_for_update()
    )
    return result.scalar_one_or_none()


# ===================
# Rating & Dispute Operations
# ===================

async def get_ratings_for_trade(session: AsyncSession, trade_id: str) -> list[TradeRating]:
    result = await session.execute(
        select(TradeRating).where(TradeRating.trade_id == trade_id)
    )
    return list(result.scalars().all())


async def get_ratings_for_user(user_id: str, revealed_only: bool = True) -> list[TradeRating]:
    """Ratings a user has received, newest first."""
    async with get_session() as session:
        query = select(TradeRating).where(TradeRating.ratee_id == user_id)
        if revealed_only:
            query = query.where(TradeRating.is_revealed.is_(True))
        result = await session.execute(query.order_by(TradeRating.created_at.desc()))
        return list(result.scalars().all())


async def get_dispute(dispute_id: str) -> Optional[Dispute]:
    async with get_session() as session:
        return await session.get(Dispute, dispute_id)


async def lock_dispute(session: AsyncSession, dispute_id: str) -> Dispute:
    result = await session.execute(
        select(Dispute).where(Dispute.id == dispute_id).with_for_update()
    )
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFound(f"Dispute not found: {dispute_id}")
    return dispute


# ===================
# Notification Operations
# ===================

async def get_notifications_for_user(user_id: str, limit: int = 50) -> list[Notification]:
    async with get_session() as session:
        result = await session.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


async def get_unread_count(user_id: str) -> int:
    async with get_session() as session:
        result = await session.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
        )
        return int(result.scalar_one())


async def mark_notification_read(notification_id: str) -> bool:
    async with get_session() as session:
        result = await session.execute(
            update(Notification).where(Notification.id == notification_id).values(is_read=True)
        )
        return result.rowcount > 0


async def mark_all_notifications_read(user_id: str) -> int:
    async with get_session() as session:
        result = await session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
        return result.rowcount


# ===================
# Price Signal Operations
# ===================

async def get_price_signals_for_item(item_id: str) -> list[PriceSignal]:
    async with get_session() as session:
        result = await session.execute(
            select(PriceSignal)
            .where(PriceSignal.item_id == item_id)
            .order_by(PriceSignal.trade_completed_at.desc())
        )
        return list(result.scalars().all())
