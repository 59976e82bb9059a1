"""Durable at-least-once transfer queue on Redis Streams.

Job identity is the transaction hash. Each job has a record
``transfers:job:<txHash>`` whose existence deduplicates enqueues; the stream
carries only the hash. Consumers read through one consumer group:

    queued -> active -> completed
                     -> delayed -> queued        (retry with backoff)
                     -> dead                     (after ``attempts`` failures)

Dead jobs are parked on ``transfers:dead`` and never discarded. Completed
records expire after ``completed_ttl_s``; until then a re-enqueue of the same
hash is a no-op.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from redis.asyncio import Redis  # noqa: TC002
from redis.asyncio.client import Pipeline
from redis.exceptions import ResponseError

from proofline.config.settings import QueueConfig
from proofline.core.models import TransferRecord
from proofline.utils.logger import get_logger
from proofline.utils.redis_tx import run_watched

logger = get_logger("ingest_queue")

STREAM_KEY = "transfers:stream"
DELAYED_KEY = "transfers:delayed"
DEAD_KEY = "transfers:dead"

_RECLAIM_BATCH = 100

TransferHandler = Callable[[TransferRecord], Awaitable[Any]]


def job_key(tx_hash: str) -> str:
    return f"transfers:job:{tx_hash}"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    DEAD = "dead"


@dataclass
class TransferJob:
    """Snapshot of one job record."""

    tx_hash: str
    state: JobState
    attempts: int
    payload: str
    last_error: str | None = None
    created_at: float | None = None
    updated_at: float | None = None

    @property
    def transfer(self) -> TransferRecord:
        return TransferRecord.from_json(self.payload)

    @classmethod
    def from_redis(cls, data: dict[str, str]) -> TransferJob:
        return cls(
            tx_hash=data["txHash"],
            state=JobState(data["state"]),
            attempts=int(data.get("attempts") or 0),
            payload=data["payload"],
            last_error=data.get("lastError") or None,
            created_at=float(data["createdAt"]) if data.get("createdAt") else None,
            updated_at=float(data["updatedAt"]) if data.get("updatedAt") else None,
        )


class TransferQueue:
    """Ingest queue with dedup, retry/backoff and a dead state.

    Args:
        redis: ``redis.asyncio`` client created with ``decode_responses=True``.
        config: Retry and retention policy.
        clock: Wall clock in epoch seconds.
    """

    def __init__(
        self,
        redis: Redis,
        config: QueueConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._config = config or QueueConfig()
        self._clock = clock

    @property
    def group(self) -> str:
        return self._config.consumer_group

    async def ensure_group(self) -> None:
        """Create the stream and consumer group if missing."""
        try:
            await self._redis.xgroup_create(STREAM_KEY, self.group, id="0", mkstream=True)
            logger.info("consumer_group_created", stream=STREAM_KEY, group=self.group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, transfer: TransferRecord) -> bool:
        """Add a transfer job. Returns False when the hash is already known."""
        tx_hash = transfer.tx_hash
        key = job_key(tx_hash)
        now = repr(self._clock())

        async def _apply(pipe: Pipeline) -> bool:
            if await pipe.exists(key):
                return False
            pipe.multi()
            pipe.hset(
                key,
                mapping={
                    "txHash": tx_hash,
                    "state": JobState.QUEUED.value,
                    "attempts": 0,
                    "payload": transfer.to_json(),
                    "lastError": "",
                    "createdAt": now,
                    "updatedAt": now,
                },
            )
            pipe.xadd(STREAM_KEY, {"txHash": tx_hash})
            return True

        added = await run_watched(self._redis, key, _apply)
        if added:
            logger.info(
                "transfer_enqueued",
                tx_hash=tx_hash,
                chain_id=transfer.chain_id,
                block_number=transfer.block_number,
            )
        else:
            logger.debug("transfer_duplicate", tx_hash=tx_hash)
        return added

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def process_next(
        self,
        consumer: str,
        handler: TransferHandler,
        block_ms: int | None = None,
    ) -> JobState | None:
        """Read one job for ``consumer`` and run ``handler`` on it.

        Returns the job's resulting state, or None when nothing was read
        within ``block_ms`` (or the entry was stale). ``block_ms=0`` polls
        without blocking.
        """
        block = self._config.block_ms if block_ms is None else block_ms
        response = await self._redis.xreadgroup(
            self.group,
            consumer,
            {STREAM_KEY: ">"},
            count=1,
            block=block or None,
        )
        if not response:
            return None
        _, entries = response[0]
        if not entries:
            return None
        entry_id, fields = entries[0]
        return await self._run(entry_id, fields or {}, handler)

    async def _run(
        self,
        entry_id: str,
        fields: dict[str, str],
        handler: TransferHandler,
    ) -> JobState | None:
        tx_hash = fields.get("txHash", "")
        key = job_key(tx_hash)
        data = await self._redis.hgetall(key)
        if not data or data.get("state") != JobState.QUEUED.value:
            # Duplicate or orphaned stream entry; the job record is authoritative.
            logger.debug("stale_stream_entry", entry_id=entry_id, tx_hash=tx_hash)
            await self._ack(entry_id)
            return None

        attempts = int(data.get("attempts") or 0) + 1
        await self._redis.hset(
            key,
            mapping={
                "state": JobState.ACTIVE.value,
                "attempts": attempts,
                "updatedAt": repr(self._clock()),
            },
        )

        transfer = TransferRecord.from_json(data["payload"])
        try:
            await asyncio.wait_for(handler(transfer), timeout=self._config.job_timeout_s)
        except asyncio.TimeoutError:
            return await self._fail(entry_id, tx_hash, attempts, "job timed out")
        except Exception as e:
            return await self._fail(entry_id, tx_hash, attempts, f"{type(e).__name__}: {e}")

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={"state": JobState.COMPLETED.value, "updatedAt": repr(self._clock())},
            )
            pipe.expire(key, self._config.completed_ttl_s)
            pipe.xack(STREAM_KEY, self.group, entry_id)
            pipe.xdel(STREAM_KEY, entry_id)
            await pipe.execute()

        logger.debug("transfer_job_completed", tx_hash=tx_hash, attempts=attempts)
        return JobState.COMPLETED

    async def _fail(self, entry_id: str, tx_hash: str, attempts: int, error: str) -> JobState:
        key = job_key(tx_hash)
        now = self._clock()

        if attempts >= self._config.attempts:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={"state": JobState.DEAD.value, "lastError": error, "updatedAt": repr(now)},
                )
                pipe.lpush(DEAD_KEY, tx_hash)
                pipe.xack(STREAM_KEY, self.group, entry_id)
                pipe.xdel(STREAM_KEY, entry_id)
                await pipe.execute()
            logger.error("transfer_job_dead", tx_hash=tx_hash, attempts=attempts, error=error)
            return JobState.DEAD

        delay = self.backoff_delay(attempts)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={"state": JobState.DELAYED.value, "lastError": error, "updatedAt": repr(now)},
            )
            pipe.zadd(DELAYED_KEY, {tx_hash: now + delay})
            pipe.xack(STREAM_KEY, self.group, entry_id)
            pipe.xdel(STREAM_KEY, entry_id)
            await pipe.execute()
        logger.warning(
            "transfer_job_retry",
            tx_hash=tx_hash,
            attempts=attempts,
            retry_in_s=delay,
            error=error,
        )
        return JobState.DELAYED

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before retry number ``attempts``."""
        base = self._config.backoff_delay_ms / 1000
        if self._config.backoff_type == "fixed":
            return base
        return base * 2 ** max(attempts - 1, 0)

    async def _ack(self, entry_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.xack(STREAM_KEY, self.group, entry_id)
            pipe.xdel(STREAM_KEY, entry_id)
            await pipe.execute()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        """Move retries whose backoff has elapsed back onto the stream."""
        due: list[str] = await self._redis.zrangebyscore(DELAYED_KEY, "-inf", self._clock())
        promoted = 0
        for tx_hash in due:
            if await self._requeue(tx_hash, (JobState.DELAYED,)):
                promoted += 1
        if promoted:
            logger.debug("delayed_jobs_promoted", count=promoted)
        return promoted

    async def reclaim_stale(self, consumer: str) -> int:
        """Re-queue entries left pending by consumers that died mid-job.

        A consumer can die after reading an entry but before marking the job
        active, so jobs still ``queued`` are re-queued as well. The old entry
        is acked only once its replacement is on the stream.
        """
        result = await self._redis.xautoclaim(
            STREAM_KEY,
            self.group,
            consumer,
            min_idle_time=self._config.visibility_timeout_s * 1000,
            start_id="0-0",
            count=_RECLAIM_BATCH,
        )
        claimed = result[1] if len(result) > 1 else []
        reclaimed = 0
        for entry_id, fields in claimed:
            tx_hash = (fields or {}).get("txHash")
            if tx_hash and await self._requeue(tx_hash, (JobState.ACTIVE, JobState.QUEUED)):
                reclaimed += 1
            await self._ack(entry_id)
        if reclaimed:
            logger.warning("stale_jobs_reclaimed", count=reclaimed, consumer=consumer)
        return reclaimed

    async def dead_letters(self, limit: int = 100) -> list[TransferJob]:
        """Parked jobs, most recently parked first."""
        hashes: list[str] = await self._redis.lrange(DEAD_KEY, 0, limit - 1)
        jobs: list[TransferJob] = []
        for tx_hash in hashes:
            job = await self.get_job(tx_hash)
            if job is not None:
                jobs.append(job)
        return jobs

    async def requeue_dead(self, tx_hash: str) -> bool:
        """Give a parked job a fresh set of attempts."""
        requeued = await self._requeue(tx_hash, (JobState.DEAD,), reset_attempts=True)
        if requeued:
            logger.info("dead_job_requeued", tx_hash=tx_hash)
        return requeued

    async def _requeue(
        self,
        tx_hash: str,
        from_states: tuple[JobState, ...],
        reset_attempts: bool = False,
    ) -> bool:
        """Put a job back on the stream if it is currently in one of ``from_states``."""
        key = job_key(tx_hash)
        allowed = {state.value for state in from_states}

        async def _apply(pipe: Pipeline) -> bool:
            state = await pipe.hget(key, "state")
            if state not in allowed:
                return False
            from_state = JobState(state)
            pipe.multi()
            mapping: dict[str, Any] = {"state": JobState.QUEUED.value, "updatedAt": repr(self._clock())}
            if reset_attempts:
                mapping.update({"attempts": 0, "lastError": ""})
            pipe.hset(key, mapping=mapping)
            if from_state is JobState.DELAYED:
                pipe.zrem(DELAYED_KEY, tx_hash)
            elif from_state is JobState.DEAD:
                pipe.lrem(DEAD_KEY, 0, tx_hash)
            pipe.xadd(STREAM_KEY, {"txHash": tx_hash})
            return True

        return await run_watched(self._redis, key, _apply)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job(self, tx_hash: str) -> TransferJob | None:
        data = await self._redis.hgetall(job_key(tx_hash))
        return TransferJob.from_redis(data) if data else None

    async def stats(self) -> dict[str, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.xlen(STREAM_KEY)
            pipe.zcard(DELAYED_KEY)
            pipe.llen(DEAD_KEY)
            stream, delayed, dead = await pipe.execute()
        return {"stream": int(stream), "delayed": int(delayed), "dead": int(dead)}
