"""Durable order store: creation, lookup and bulk settlement.

Only intake (create) and the sweeper (bulk_settle) write here.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from proofline.core.models import OrderStatus
from proofline.utils.db import Order, generate_order_id
from proofline.utils.logger import get_logger

logger = get_logger("order_repository")

_OPEN_STATUSES = [OrderStatus.PENDING.value, OrderStatus.VERIFYING.value]


class OrderRepository:
    """Access to the ``orders`` table through an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        *,
        asset: str,
        sender: str,
        recipient: str,
        amount: int,
        chain_id: int,
        signature: str,
        timestamp: int,
    ) -> Order:
        """Insert a PENDING order. Returns the persisted row."""
        order = Order(
            id=generate_order_id(),
            asset=asset.lower(),
            sender=sender.lower(),
            recipient=recipient.lower(),
            amount=Decimal(amount),
            chain_id=chain_id,
            signature=signature.lower(),
            timestamp=timestamp,
            status=OrderStatus.PENDING.value,
        )
        async with self._session_factory() as session:
            session.add(order)
            await session.commit()
        logger.info("order_created", order_id=order.id, chain_id=chain_id)
        return order

    async def get(self, order_id: str) -> Order | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Order).where(Order.id == order_id))
            return result.scalar_one_or_none()

    async def get_by_signature(self, signature: str) -> Order | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Order).where(Order.signature == signature.lower()))
            return result.scalar_one_or_none()

    async def bulk_settle(
        self,
        completed: dict[str, str],
        cancelled: dict[str, tuple[str, str]],
    ) -> set[str]:
        """Persist terminal outcomes in one transaction.

        Args:
            completed: order_id -> settlement tx hash.
            cancelled: order_id -> (tx hash, reason).

        Returns:
            Order ids whose row now holds the requested outcome: rows updated
            by this call plus rows an earlier call already settled identically.
            Any database error propagates and nothing is committed.
        """
        if not completed and not cancelled:
            return set()

        confirmed: set[str] = set()
        async with self._session_factory() as session:
            if completed:
                stmt = (
                    update(Order)
                    .where(Order.id.in_(list(completed)), Order.status.in_(_OPEN_STATUSES))
                    .values(
                        status=OrderStatus.COMPLETED.value,
                        tx_hash=case(completed, value=Order.id),
                    )
                    .returning(Order.id)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                confirmed.update(result.scalars().all())

            if cancelled:
                stmt = (
                    update(Order)
                    .where(Order.id.in_(list(cancelled)), Order.status.in_(_OPEN_STATUSES))
                    .values(
                        status=OrderStatus.CANCELLED.value,
                        tx_hash=case({k: v[0] for k, v in cancelled.items()}, value=Order.id),
                        error=case({k: v[1] for k, v in cancelled.items()}, value=Order.id),
                    )
                    .returning(Order.id)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                confirmed.update(result.scalars().all())

            # Rows settled by an earlier sweep that crashed before evicting.
            expected: dict[str, tuple[str, str, str | None]] = {
                order_id: (OrderStatus.COMPLETED.value, tx_hash, None)
                for order_id, tx_hash in completed.items()
            }
            expected.update(
                {
                    order_id: (OrderStatus.CANCELLED.value, tx_hash, reason)
                    for order_id, (tx_hash, reason) in cancelled.items()
                }
            )
            remaining = [order_id for order_id in expected if order_id not in confirmed]
            if remaining:
                rows = await session.execute(
                    select(Order.id, Order.status, Order.tx_hash, Order.error).where(
                        Order.id.in_(remaining)
                    )
                )
                seen: set[str] = set()
                for order_id, status, tx_hash, error in rows.all():
                    seen.add(order_id)
                    if (status, tx_hash, error) == expected[order_id]:
                        confirmed.add(order_id)
                    else:
                        logger.warning(
                            "settle_mismatch",
                            order_id=order_id,
                            status=status,
                            expected_status=expected[order_id][0],
                        )
                for order_id in set(remaining) - seen:
                    logger.warning("settle_order_missing", order_id=order_id)

            await session.commit()

        logger.info(
            "orders_settled",
            requested=len(expected),
            confirmed=len(confirmed),
        )
        return confirmed
