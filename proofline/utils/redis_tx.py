"""Optimistic Redis transactions (WATCH / MULTI / EXEC) with bounded retries."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from redis.asyncio import Redis  # noqa: TC002
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from proofline.utils.logger import get_logger

logger = get_logger("redis_tx")

T = TypeVar("T")

MAX_WATCH_RETRIES = 16


class WatchContentionError(Exception):
    """A watched key kept changing; the caller should retry later."""


async def run_watched(
    redis: Redis,
    key: str,
    apply: Callable[[Pipeline], Awaitable[T]],
    retries: int = MAX_WATCH_RETRIES,
) -> T:
    """Run ``apply`` under WATCH ``key`` and execute whatever it queued.

    ``apply`` reads in immediate mode, then either returns without queuing
    (a no-op) or calls ``pipe.multi()`` and queues its writes. When the key
    changes before EXEC the whole callback is re-run.
    """
    async with redis.pipeline(transaction=True) as pipe:
        for attempt in range(retries):
            try:
                await pipe.watch(key)
                result = await apply(pipe)
                if len(pipe):
                    await pipe.execute()
                else:
                    await pipe.reset()
                return result
            except WatchError:
                logger.debug("watch_retry", key=key, attempt=attempt + 1)
                continue
    raise WatchContentionError(f"Gave up on {key} after {retries} attempts")
