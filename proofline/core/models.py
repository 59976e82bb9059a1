"""Domain types shared by the intake path, the worker and the sweeper.

OrderIntent mirrors a durable order while it is active in the fast store.
TransferRecord is one normalized ERC-20 Transfer log.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    VERIFYING = "VERIFYING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class OrderFailReason(str, Enum):
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass(frozen=True)
class TransferRecord:
    """Observed on-chain transfer, already normalized (lower-case hex, int amount)."""

    sender: str
    recipient: str
    asset: str
    amount: int
    chain_id: int
    network: str
    tx_hash: str
    block_number: int
    block_hash: str

    def to_payload(self) -> dict[str, Any]:
        """Wire form used on the ingest queue."""
        return {
            "from": self.sender,
            "to": self.recipient,
            "asset": self.asset,
            "amount": str(self.amount),
            "chainId": self.chain_id,
            "network": self.network,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TransferRecord:
        return cls(
            sender=str(payload["from"]).lower(),
            recipient=str(payload["to"]).lower(),
            asset=str(payload["asset"]).lower(),
            amount=int(payload["amount"]),
            chain_id=int(payload["chainId"]),
            network=str(payload.get("network", "")),
            tx_hash=str(payload["txHash"]).lower(),
            block_number=int(payload.get("blockNumber", 0)),
            block_hash=str(payload.get("blockHash", "")).lower(),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> TransferRecord:
        return cls.from_payload(json.loads(raw))


@dataclass
class OrderIntent:
    """Signed promise of an expected transfer.

    Attributes:
        order_id: Durable order identifier.
        asset: Token contract address.
        sender: Expected ``from`` of the transfer.
        recipient: Expected ``to`` of the transfer.
        chain_id: EVM chain id.
        amount: Raw token units.
        signature: Hex HMAC tag produced at intake.
        timestamp: Signing timestamp, part of the unique key.
        status: Lifecycle status.
        tx_hash: Settlement transaction, once matched.
        error: Cancellation reason, if any.
    """

    order_id: str
    asset: str
    sender: str
    recipient: str
    chain_id: int
    amount: int
    signature: str
    timestamp: int
    status: OrderStatus = OrderStatus.PENDING
    tx_hash: str | None = None
    error: str | None = None
    created_at: float | None = None
    updated_at: float | None = None

    def to_redis(self) -> dict[str, str]:
        """Flatten into a Redis hash mapping. Empty strings stand for None."""
        return {
            "orderId": self.order_id,
            "asset": self.asset.lower(),
            "from": self.sender.lower(),
            "to": self.recipient.lower(),
            "chainId": str(self.chain_id),
            "amount": str(self.amount),
            "signature": self.signature,
            "timestamp": str(self.timestamp),
            "status": self.status.value,
            "txHash": self.tx_hash or "",
            "error": self.error or "",
            "createdAt": "" if self.created_at is None else repr(self.created_at),
            "updatedAt": "" if self.updated_at is None else repr(self.updated_at),
        }

    @classmethod
    def from_redis(cls, data: dict[str, str]) -> OrderIntent:
        return cls(
            order_id=data["orderId"],
            asset=data["asset"],
            sender=data["from"],
            recipient=data["to"],
            chain_id=int(data["chainId"]),
            amount=int(data["amount"]),
            signature=data["signature"],
            timestamp=int(data["timestamp"]),
            status=OrderStatus(data["status"]),
            tx_hash=data.get("txHash") or None,
            error=data.get("error") or None,
            created_at=float(data["createdAt"]) if data.get("createdAt") else None,
            updated_at=float(data["updatedAt"]) if data.get("updatedAt") else None,
        )


@dataclass
class SettledIntent:
    """Entry of the settled index, awaiting the sweeper."""

    unique_key: str
    intent: OrderIntent
    settled_at: float

    @property
    def status(self) -> OrderStatus:
        return self.intent.status


@dataclass
class SweepResult:
    """Outcome of one sweep cycle."""

    drained: int = 0
    completed: int = 0
    cancelled: int = 0
    evicted: list[str] = field(default_factory=list)
    unconfirmed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
