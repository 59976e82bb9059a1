"""Settlement sweeper: flushes settled intents into the durable store.

One cycle drains a batch from the settled index, writes both partitions
(COMPLETED / CANCELLED) in a single transaction, then evicts from the fast
store only the keys the database confirmed. A failed write leaves the batch
in place for the next cycle.
"""

from __future__ import annotations

from proofline.core.intent_store import IntentStore  # noqa: TC001
from proofline.core.models import OrderStatus, SweepResult
from proofline.core.order_repository import OrderRepository  # noqa: TC001
from proofline.utils.logger import get_logger

logger = get_logger("sweeper")


class SettlementSweeper:
    def __init__(self, store: IntentStore, repository: OrderRepository, batch_size: int = 500) -> None:
        self._store = store
        self._repository = repository
        self._batch_size = batch_size

    async def sweep(self) -> SweepResult:
        """Run one sweep cycle. Database errors propagate; nothing is evicted then."""
        settled = await self._store.drain_settled(self._batch_size)
        result = SweepResult(drained=len(settled))
        if not settled:
            return result

        completed: dict[str, str] = {}
        cancelled: dict[str, tuple[str, str]] = {}
        keys_by_order: dict[str, str] = {}
        for entry in settled:
            intent = entry.intent
            keys_by_order[intent.order_id] = entry.unique_key
            if entry.status is OrderStatus.COMPLETED:
                completed[intent.order_id] = intent.tx_hash or ""
            elif entry.status is OrderStatus.CANCELLED:
                cancelled[intent.order_id] = (intent.tx_hash or "", intent.error or "")
            else:
                logger.warning(
                    "sweep_non_terminal_entry",
                    unique_key=entry.unique_key,
                    status=entry.status.value,
                )

        confirmed = await self._repository.bulk_settle(completed, cancelled)

        result.completed = len(confirmed.intersection(completed))
        result.cancelled = len(confirmed.intersection(cancelled))
        result.evicted = [keys_by_order[order_id] for order_id in keys_by_order if order_id in confirmed]
        result.unconfirmed = [
            keys_by_order[order_id] for order_id in keys_by_order if order_id not in confirmed
        ]

        await self._store.evict(result.evicted)

        logger.info(
            "sweep_complete",
            drained=result.drained,
            completed=result.completed,
            cancelled=result.cancelled,
            evicted=len(result.evicted),
            unconfirmed=len(result.unconfirmed),
        )
        return result
