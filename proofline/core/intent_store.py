"""Fast store: Redis index of active and settled order intents.

Key layout:
    activeSet              SET   unique keys still awaiting a transfer
    baseIndex:<baseKey>    ZSET  unique keys sharing economic fields, scored by
                                 registration sequence (insertion order)
    intent:<uniqueKey>     HASH  intent snapshot + status + baseKey
    settledIndex           ZSET  terminal unique keys scored by settlement time
    intentSeq              STR   registration counter

Every transition of one intent runs under WATCH on its ``intent:`` hash, so
concurrent workers can never conclude the same intent twice. Transitions
out of the active set (complete / cancel) update all indexes in one
MULTI/EXEC block.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from redis.asyncio import Redis  # noqa: TC002
from redis.asyncio.client import Pipeline

from proofline.core.models import (
    OrderFailReason,
    OrderIntent,
    OrderStatus,
    SettledIntent,
    TransferRecord,
)
from proofline.core.signature import OrderSigner  # noqa: TC001
from proofline.utils.logger import get_logger
from proofline.utils.redis_tx import run_watched

logger = get_logger("intent_store")

ACTIVE_SET_KEY = "activeSet"
SETTLED_INDEX_KEY = "settledIndex"
INTENT_SEQ_KEY = "intentSeq"


def intent_key(unique_key: str) -> str:
    return f"intent:{unique_key}"


def base_index_key(base_key: str) -> str:
    return f"baseIndex:{base_key}"


class IntentStore:
    """Dual-key index of order intents on Redis.

    Args:
        redis: ``redis.asyncio`` client created with ``decode_responses=True``.
        signer: Computes base / unique keys from intent or transfer fields.
        clock: Wall clock in epoch seconds, used for settled-index scores.
    """

    def __init__(
        self,
        redis: Redis,
        signer: OrderSigner,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._signer = signer
        self._clock = clock

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def keys_for(self, intent: OrderIntent) -> tuple[str, str]:
        """Return ``(base_key, unique_key)`` for an intent."""
        fields: dict[str, Any] = {
            "chain_id": intent.chain_id,
            "recipient": intent.recipient,
            "sender": intent.sender,
            "asset": intent.asset,
            "amount": intent.amount,
        }
        return (
            self._signer.base_key(**fields),
            self._signer.unique_key(**fields, timestamp=intent.timestamp),
        )

    def base_key_for_transfer(self, transfer: TransferRecord) -> str:
        return self._signer.base_key(
            chain_id=transfer.chain_id,
            recipient=transfer.recipient,
            sender=transfer.sender,
            asset=transfer.asset,
            amount=transfer.amount,
        )

    # ------------------------------------------------------------------
    # Registration and lookup
    # ------------------------------------------------------------------

    async def register(self, intent: OrderIntent) -> str:
        """Index a new intent as PENDING. Returns its unique key.

        Registering a unique key that already exists is a no-op, so a
        settled intent is never reactivated.
        """
        base_key, unique_key = self.keys_for(intent)
        seq = await self._redis.incr(INTENT_SEQ_KEY)
        now = self._clock()

        record = intent.to_redis()
        record.update(
            {
                "status": OrderStatus.PENDING.value,
                "uniqueKey": unique_key,
                "baseKey": base_key,
                "verifyingTx": "",
                "txHash": "",
                "error": "",
                "settledAt": "",
                "createdAt": repr(now),
                "updatedAt": repr(now),
            }
        )

        async def _apply(pipe: Pipeline) -> bool:
            if await pipe.exists(intent_key(unique_key)):
                return False
            pipe.multi()
            pipe.sadd(ACTIVE_SET_KEY, unique_key)
            pipe.zadd(base_index_key(base_key), {unique_key: seq})
            pipe.hset(intent_key(unique_key), mapping=record)
            return True

        created = await run_watched(self._redis, intent_key(unique_key), _apply)
        if created:
            logger.info("intent_registered", order_id=intent.order_id, unique_key=unique_key)
        else:
            logger.info("intent_already_registered", order_id=intent.order_id, unique_key=unique_key)
        return unique_key

    async def get(self, unique_key: str) -> OrderIntent | None:
        data = await self._redis.hgetall(intent_key(unique_key))
        return OrderIntent.from_redis(data) if data else None

    async def is_active(self, unique_key: str) -> bool:
        return bool(await self._redis.sismember(ACTIVE_SET_KEY, unique_key))

    async def find_candidates_by_transfer(self, transfer: TransferRecord) -> list[str]:
        """Unique keys under the transfer's base key that are still active.

        Ordered by registration (oldest first), which is the tie-break the
        worker relies on.
        """
        base_key = self.base_key_for_transfer(transfer)
        members: list[str] = await self._redis.zrange(base_index_key(base_key), 0, -1)
        if not members:
            return []

        async with self._redis.pipeline(transaction=False) as pipe:
            for member in members:
                pipe.sismember(ACTIVE_SET_KEY, member)
            flags = await pipe.execute()

        return [member for member, active in zip(members, flags) if active]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def mark_verifying(self, unique_key: str, tx_hash: str | None = None) -> OrderIntent | None:
        """Claim a PENDING intent for verification.

        Returns the claimed snapshot, or None when the intent is missing,
        settled, or already claimed by a different transfer. A retry of the
        same transfer (same ``tx_hash``) re-claims its own VERIFYING intent.
        """
        key = intent_key(unique_key)

        async def _apply(pipe: Pipeline) -> OrderIntent | None:
            data: dict[str, str] = await pipe.hgetall(key)
            if not data:
                return None
            status = OrderStatus(data["status"])
            if status is OrderStatus.VERIFYING and tx_hash and data.get("verifyingTx") == tx_hash:
                return OrderIntent.from_redis(data)
            if status is not OrderStatus.PENDING:
                return None
            if not await pipe.sismember(ACTIVE_SET_KEY, unique_key):
                return None

            now = self._clock()
            changes = {
                "status": OrderStatus.VERIFYING.value,
                "verifyingTx": tx_hash or "",
                "updatedAt": repr(now),
            }
            pipe.multi()
            pipe.hset(key, mapping=changes)
            data.update(changes)
            return OrderIntent.from_redis(data)

        return await run_watched(self._redis, key, _apply)

    async def mark_completed(self, unique_key: str, tx_hash: str) -> bool:
        """Settle as COMPLETED with the matching transaction hash."""
        return await self._settle(unique_key, OrderStatus.COMPLETED, tx_hash, None)

    async def mark_cancelled(
        self,
        unique_key: str,
        tx_hash: str,
        reason: OrderFailReason | str,
    ) -> bool:
        """Settle as CANCELLED, recording why."""
        reason_value = reason.value if isinstance(reason, OrderFailReason) else str(reason)
        return await self._settle(unique_key, OrderStatus.CANCELLED, tx_hash, reason_value)

    async def _settle(
        self,
        unique_key: str,
        status: OrderStatus,
        tx_hash: str,
        reason: str | None,
    ) -> bool:
        """Move an intent from active to settled in one MULTI/EXEC.

        Returns True when the intent now holds exactly this outcome, including
        a repeat of an earlier identical call. Returns False for a missing
        intent or one already settled with a different outcome.
        """
        key = intent_key(unique_key)

        async def _apply(pipe: Pipeline) -> bool:
            data: dict[str, str] = await pipe.hgetall(key)
            if not data:
                logger.warning("settle_missing_intent", unique_key=unique_key, status=status.value)
                return False

            current = OrderStatus(data["status"])
            if current.is_terminal:
                same = (
                    current is status
                    and data.get("txHash") == tx_hash
                    and (data.get("error") or None) == reason
                )
                if not same:
                    logger.warning(
                        "settle_conflict",
                        unique_key=unique_key,
                        current=current.value,
                        requested=status.value,
                        tx_hash=tx_hash,
                    )
                return same

            now = self._clock()
            pipe.multi()
            pipe.hset(
                key,
                mapping={
                    "status": status.value,
                    "txHash": tx_hash,
                    "error": reason or "",
                    "settledAt": repr(now),
                    "updatedAt": repr(now),
                },
            )
            pipe.zadd(SETTLED_INDEX_KEY, {unique_key: now})
            pipe.srem(ACTIVE_SET_KEY, unique_key)
            pipe.zrem(base_index_key(data["baseKey"]), unique_key)
            return True

        return await run_watched(self._redis, key, _apply)

    # ------------------------------------------------------------------
    # Settled index (sweeper side)
    # ------------------------------------------------------------------

    async def drain_settled(self, limit: int) -> list[SettledIntent]:
        """Up to ``limit`` settled entries, most recent first.

        Entries with a record are left in place. Index entries whose record
        has vanished carry nothing to persist and are pruned.
        """
        if limit <= 0:
            return []
        entries: list[tuple[str, float]] = await self._redis.zrevrange(
            SETTLED_INDEX_KEY, 0, limit - 1, withscores=True
        )
        if not entries:
            return []

        async with self._redis.pipeline(transaction=False) as pipe:
            for unique_key, _ in entries:
                pipe.hgetall(intent_key(unique_key))
            records = await pipe.execute()

        settled: list[SettledIntent] = []
        for (unique_key, score), data in zip(entries, records):
            if not data:
                pruned = await self._prune_orphan(unique_key)
                logger.warning("settled_entry_without_record", unique_key=unique_key, pruned=pruned)
                continue
            settled.append(
                SettledIntent(
                    unique_key=unique_key,
                    intent=OrderIntent.from_redis(data),
                    settled_at=float(score),
                )
            )
        return settled

    async def _prune_orphan(self, unique_key: str) -> bool:
        key = intent_key(unique_key)

        async def _apply(pipe: Pipeline) -> bool:
            if await pipe.exists(key):
                return False
            pipe.multi()
            pipe.zrem(SETTLED_INDEX_KEY, unique_key)
            return True

        return await run_watched(self._redis, key, _apply)

    async def evict(self, unique_keys: list[str]) -> int:
        """Drop settled records and their settled-index entries. Idempotent.

        Keys that are not in the settled index are left alone, so an active
        intent can never be evicted by mistake.
        """
        if not unique_keys:
            return 0

        async with self._redis.pipeline(transaction=False) as pipe:
            for unique_key in unique_keys:
                pipe.zscore(SETTLED_INDEX_KEY, unique_key)
            scores = await pipe.execute()

        settled = [key for key, score in zip(unique_keys, scores) if score is not None]
        if not settled:
            return 0

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(*[intent_key(key) for key in settled])
            pipe.zrem(SETTLED_INDEX_KEY, *settled)
            await pipe.execute()

        logger.debug("intents_evicted", count=len(settled))
        return len(settled)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def counts(self) -> dict[str, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.scard(ACTIVE_SET_KEY)
            pipe.zcard(SETTLED_INDEX_KEY)
            active, settled = await pipe.execute()
        return {"active": int(active), "settled": int(settled)}
