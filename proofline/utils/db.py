"""Database engine, session management, and SQLAlchemy 2.0 async models.

The orders table is the system of record. All timestamps UTC.
Amounts are raw token units (uint256), stored as NUMERIC(78, 0).
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_ORDER_ID_PREFIX = "ORD"
_ORDER_ID_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
_ORDER_ID_LENGTH = 30


def generate_order_id() -> str:
    """Opaque order identifier, e.g. ``ORD_e3mzN912TMhBafWPK1Y52wSrFD6brR``."""
    suffix = "".join(secrets.choice(_ORDER_ID_ALPHABET) for _ in range(_ORDER_ID_LENGTH))
    return f"{_ORDER_ID_PREFIX}_{suffix}"


class Base(DeclarativeBase):
    pass


# ================================================================
# ORDERS: Signed order intents and their settlement outcome
# ================================================================
class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=generate_order_id)
    asset: Mapped[str] = mapped_column(String(42), nullable=False)
    sender: Mapped[str] = mapped_column(String(42), nullable=False)
    recipient: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    signature: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_orders_tx_hash", "tx_hash"),
        Index("idx_orders_status", "status", "id"),
        Index("idx_orders_payload", "recipient", "sender", "asset", "amount"),
    )


# ================================================================
# Engine & Session Factory
# ================================================================


def build_engine(database_url: str, **kwargs: object) -> AsyncEngine:
    """Create the async SQLAlchemy engine. Owned and disposed by the caller."""
    if database_url.startswith("postgresql"):
        kwargs.setdefault("pool_size", 5)
        kwargs.setdefault("max_overflow", 10)
    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        **kwargs,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the async session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create missing tables. Development and tests only; production uses managed DDL."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
