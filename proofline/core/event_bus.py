"""Typed order lifecycle events and a best-effort async event bus.

Events are plain dataclasses with a wire form of camelCase JSON carrying an
``event`` discriminator (``order:progress``, ``order:completed``,
``order:cancelled``). Sinks implement ``on_event``; a sink that raises is
logged and skipped so one bad subscriber never blocks settlement.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, Union

from redis.asyncio import Redis  # noqa: TC002

from proofline.core.models import OrderStatus
from proofline.utils.logger import get_logger

logger = get_logger("event_bus")


@dataclass(frozen=True)
class ProgressEvent:
    event_name: ClassVar[str] = "order:progress"

    order_id: str
    status: OrderStatus

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event_name, "orderId": self.order_id, "status": self.status.value}


@dataclass(frozen=True)
class CompletedEvent:
    """Emitted once per order when a transfer settles it."""

    event_name: ClassVar[str] = "order:completed"

    order_id: str
    asset: str
    sender: str
    recipient: str
    amount: int
    chain_id: int
    tx_hash: str
    signature: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event_name,
            "orderId": self.order_id,
            "asset": self.asset,
            "from": self.sender,
            "to": self.recipient,
            "amount": str(self.amount),
            "chainId": self.chain_id,
            "txHash": self.tx_hash,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class CancelledEvent:
    event_name: ClassVar[str] = "order:cancelled"

    order_id: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event_name, "orderId": self.order_id, "reason": self.reason}


OrderEvent = Union[ProgressEvent, CompletedEvent, CancelledEvent]


class EventSink(Protocol):
    async def on_event(self, event: OrderEvent) -> None:
        """Consume one order event."""


class StatusEventBus:
    """Dispatches order events to registered sinks, in registration order."""

    def __init__(self, sinks: Iterable[EventSink] | None = None) -> None:
        self._sinks: list[EventSink] = list(sinks) if sinks is not None else []

    def subscribe(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    @property
    def sinks(self) -> list[EventSink]:
        return list(self._sinks)

    async def publish(self, event: OrderEvent) -> int:
        """Deliver ``event`` to every sink. Returns how many sinks accepted it."""
        delivered = 0
        for sink in self._sinks:
            try:
                await sink.on_event(event)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "event_sink_failed",
                    sink=type(sink).__name__,
                    event_name=event.event_name,
                    order_id=event.order_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return delivered


class RedisStreamEventSink:
    """Appends events to a Redis stream for downstream consumers."""

    def __init__(self, redis: Redis, stream: str = "orderEvents", maxlen: int = 10000) -> None:
        self._redis = redis
        self._stream = stream
        self._maxlen = maxlen

    async def on_event(self, event: OrderEvent) -> None:
        payload = event.to_dict()
        await self._redis.xadd(
            self._stream,
            {"event": payload["event"], "data": json.dumps(payload, separators=(",", ":"))},
            maxlen=self._maxlen,
            approximate=True,
        )


class LoggingEventSink:
    """Logs every event as ``order_event``."""

    async def on_event(self, event: OrderEvent) -> None:
        payload = event.to_dict()
        payload["event_name"] = payload.pop("event")
        logger.info("order_event", **payload)
