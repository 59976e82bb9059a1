"""Order intake: validate, persist, then index for matching."""

from __future__ import annotations

import re

from sqlalchemy.exc import IntegrityError
from web3 import Web3

from proofline.core.intent_store import IntentStore  # noqa: TC001
from proofline.core.models import OrderIntent, OrderStatus
from proofline.core.order_repository import OrderRepository  # noqa: TC001
from proofline.core.signature import OrderSigner  # noqa: TC001
from proofline.utils.db import Order  # noqa: TC001
from proofline.utils.logger import get_logger

logger = get_logger("order_manager")

_SIGNATURE_RE = re.compile(r"[0-9a-fA-F]{128}")


def _intent_from_order(order: Order) -> OrderIntent:
    return OrderIntent(
        order_id=order.id,
        asset=order.asset,
        sender=order.sender,
        recipient=order.recipient,
        chain_id=order.chain_id,
        amount=int(order.amount),
        signature=order.signature,
        timestamp=order.timestamp,
        status=OrderStatus.PENDING,
    )


class InvalidOrderError(ValueError):
    """Intake input rejected before it reaches the settlement core."""


class OrderManager:
    """Creates orders in the durable store and registers them in the fast store."""

    def __init__(self, repository: OrderRepository, store: IntentStore, signer: OrderSigner) -> None:
        self._repository = repository
        self._store = store
        self._signer = signer

    def sign(
        self,
        *,
        chain_id: int,
        recipient: str,
        sender: str,
        asset: str,
        amount: int,
        timestamp: int,
    ) -> str:
        """Signature an intake client attaches to a new order."""
        return self._signer.sign(
            chain_id=chain_id,
            recipient=recipient,
            sender=sender,
            asset=asset,
            amount=amount,
            timestamp=timestamp,
        )

    async def create_order(
        self,
        *,
        asset: str,
        sender: str,
        recipient: str,
        amount: int,
        chain_id: int,
        timestamp: int,
        signature: str,
    ) -> OrderIntent:
        """Persist a PENDING order and index it. Returns the registered intent.

        Raises:
            InvalidOrderError: on malformed addresses, amount, chain id or signature,
                or when another order already holds the signature.
        """
        for name, address in (("asset", asset), ("from", sender), ("to", recipient)):
            if not isinstance(address, str) or not Web3.is_address(address):
                raise InvalidOrderError(f"Invalid {name} address: {address!r}")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidOrderError(f"Amount must be a positive integer, got {amount!r}")
        if chain_id <= 0:
            raise InvalidOrderError(f"Invalid chain id: {chain_id!r}")
        if timestamp < 0:
            raise InvalidOrderError(f"Invalid timestamp: {timestamp!r}")
        if not isinstance(signature, str) or not _SIGNATURE_RE.fullmatch(signature):
            raise InvalidOrderError("Signature must be a 128-character hex string")

        try:
            order = await self._repository.create(
                asset=asset,
                sender=sender,
                recipient=recipient,
                amount=amount,
                chain_id=chain_id,
                signature=signature,
                timestamp=timestamp,
            )
        except IntegrityError as e:
            order = await self._resume_unindexed(
                signature,
                (asset.lower(), sender.lower(), recipient.lower(), amount, chain_id, timestamp),
            )
            if order is None:
                raise InvalidOrderError("An order with this signature already exists") from e

        intent = _intent_from_order(order)
        await self._store.register(intent)

        logger.info(
            "order_accepted",
            order_id=order.id,
            chain_id=chain_id,
            amount=str(amount),
        )
        return intent

    async def _resume_unindexed(self, signature: str, fields: tuple) -> Order | None:
        """Existing PENDING row for ``signature`` that never reached the fast store.

        Covers an intake that committed the row and then failed to register
        it. Returns None for a genuine duplicate.
        """
        order = await self._repository.get_by_signature(signature)
        if order is None or order.status != OrderStatus.PENDING.value:
            return None
        stored = (
            order.asset,
            order.sender,
            order.recipient,
            int(order.amount),
            order.chain_id,
            order.timestamp,
        )
        if stored != fields:
            return None
        _, unique_key = self._store.keys_for(_intent_from_order(order))
        if await self._store.get(unique_key) is not None:
            return None
        logger.warning("order_intake_resumed", order_id=order.id)
        return order

    async def get_order(self, order_id: str) -> Order | None:
        return await self._repository.get(order_id)
