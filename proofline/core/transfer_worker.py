"""Match-and-verify worker: pairs an observed transfer with a signed intent.

For each transfer:
1. Look up active intents sharing the transfer's base key.
2. Claim the oldest one still PENDING (VERIFYING).
3. Recompute the signature from the transfer fields + the intent timestamp.
4. Mismatch -> CANCELLED (INVALID_SIGNATURE). Match -> COMPLETED.

Business outcomes are returned as MatchOutcome; store and bus failures
propagate so the queue retries the job.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections import Counter
from enum import Enum

from proofline.core.event_bus import (
    CancelledEvent,
    CompletedEvent,
    ProgressEvent,
    StatusEventBus,
)
from proofline.core.ingest_queue import TransferQueue  # noqa: TC001
from proofline.core.intent_store import IntentStore  # noqa: TC001
from proofline.core.models import OrderFailReason, OrderIntent, OrderStatus, TransferRecord
from proofline.core.signature import OrderSigner  # noqa: TC001
from proofline.utils.logger import get_logger

logger = get_logger("transfer_worker")

_LOOP_ERROR_PAUSE_S = 1.0


class MatchOutcome(str, Enum):
    NO_MATCH = "no_match"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransferMatcher:
    """Runs the match-and-verify state machine for one transfer at a time."""

    def __init__(self, store: IntentStore, signer: OrderSigner, bus: StatusEventBus) -> None:
        self._store = store
        self._signer = signer
        self._bus = bus

    async def process(self, transfer: TransferRecord) -> MatchOutcome:
        candidates = await self._store.find_candidates_by_transfer(transfer)
        if not candidates:
            logger.debug("transfer_no_match", tx_hash=transfer.tx_hash, chain_id=transfer.chain_id)
            return MatchOutcome.NO_MATCH

        unique_key: str | None = None
        intent: OrderIntent | None = None
        for candidate in candidates:
            intent = await self._store.mark_verifying(candidate, tx_hash=transfer.tx_hash)
            if intent is not None:
                unique_key = candidate
                break

        if unique_key is None or intent is None:
            logger.info(
                "transfer_skipped",
                tx_hash=transfer.tx_hash,
                candidates=len(candidates),
                reason="all_candidates_claimed",
            )
            return MatchOutcome.SKIPPED

        await self._bus.publish(ProgressEvent(order_id=intent.order_id, status=OrderStatus.VERIFYING))

        valid = self._signer.verify(
            intent.signature,
            chain_id=transfer.chain_id,
            recipient=transfer.recipient,
            sender=transfer.sender,
            asset=transfer.asset,
            amount=transfer.amount,
            timestamp=intent.timestamp,
        )

        if not valid:
            return await self._cancel(unique_key, intent, transfer)
        return await self._complete(unique_key, intent, transfer)

    async def _cancel(
        self,
        unique_key: str,
        intent: OrderIntent,
        transfer: TransferRecord,
    ) -> MatchOutcome:
        reason = OrderFailReason.INVALID_SIGNATURE
        if not await self._store.mark_cancelled(unique_key, transfer.tx_hash, reason):
            return MatchOutcome.SKIPPED

        await self._bus.publish(ProgressEvent(order_id=intent.order_id, status=OrderStatus.CANCELLED))
        await self._bus.publish(CancelledEvent(order_id=intent.order_id, reason=reason.value))
        logger.warning(
            "order_cancelled",
            order_id=intent.order_id,
            tx_hash=transfer.tx_hash,
            reason=reason.value,
        )
        return MatchOutcome.CANCELLED

    async def _complete(
        self,
        unique_key: str,
        intent: OrderIntent,
        transfer: TransferRecord,
    ) -> MatchOutcome:
        if not await self._store.mark_completed(unique_key, transfer.tx_hash):
            return MatchOutcome.SKIPPED

        await self._bus.publish(ProgressEvent(order_id=intent.order_id, status=OrderStatus.COMPLETED))
        await self._bus.publish(
            CompletedEvent(
                order_id=intent.order_id,
                asset=transfer.asset,
                sender=transfer.sender,
                recipient=transfer.recipient,
                amount=transfer.amount,
                chain_id=transfer.chain_id,
                tx_hash=transfer.tx_hash,
                signature=intent.signature,
            )
        )
        logger.info(
            "order_completed",
            order_id=intent.order_id,
            tx_hash=transfer.tx_hash,
            amount=str(transfer.amount),
            chain_id=transfer.chain_id,
        )
        return MatchOutcome.COMPLETED


class TransferWorkerPool:
    """Bounded set of consumer tasks feeding queue jobs to the matcher."""

    def __init__(
        self,
        queue: TransferQueue,
        matcher: TransferMatcher,
        concurrency: int = 4,
        consumer_prefix: str = "worker",
        block_ms: int | None = None,
    ) -> None:
        self._queue = queue
        self._matcher = matcher
        self._concurrency = concurrency
        self._consumer_prefix = consumer_prefix
        self._block_ms = block_ms
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self.outcomes: Counter[str] = Counter()

    @property
    def consumers(self) -> list[str]:
        pid = os.getpid()
        return [f"{self._consumer_prefix}-{pid}-{i}" for i in range(self._concurrency)]

    async def start(self) -> None:
        await self._queue.ensure_group()
        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume(consumer), name=consumer) for consumer in self.consumers
        ]
        logger.info("worker_pool_started", concurrency=self._concurrency)

    async def run(self) -> None:
        """Start and wait until every consumer exits."""
        await self.start()
        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("worker_pool_stopped", outcomes=dict(self.outcomes))

    async def handle(self, transfer: TransferRecord) -> MatchOutcome:
        outcome = await self._matcher.process(transfer)
        self.outcomes[outcome.value] += 1
        return outcome

    async def _consume(self, consumer: str) -> None:
        while self._running:
            try:
                await self._queue.process_next(consumer, self.handle, block_ms=self._block_ms)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker_loop_error",
                    consumer=consumer,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(_LOOP_ERROR_PAUSE_S)
