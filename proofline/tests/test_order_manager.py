"""Tests for order intake."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from proofline.core.intent_store import IntentStore
from proofline.core.models import OrderStatus, TransferRecord
from proofline.core.order_manager import InvalidOrderError, OrderManager
from proofline.core.order_repository import OrderRepository
from proofline.core.signature import OrderSigner

ASSET = "0x" + "aa" * 20
SENDER = "0x" + "11" * 20
RECIPIENT = "0x" + "22" * 20


@pytest.fixture
def manager(repository: OrderRepository, store: IntentStore, signer: OrderSigner) -> OrderManager:
    return OrderManager(repository, store, signer)


def _order_kwargs(manager: OrderManager, **overrides) -> dict:
    kwargs = {
        "asset": ASSET,
        "sender": SENDER,
        "recipient": RECIPIENT,
        "amount": 10**18,
        "chain_id": 97,
        "timestamp": 1700000000,
    }
    kwargs.update(overrides)
    kwargs.setdefault(
        "signature",
        manager.sign(
            chain_id=kwargs["chain_id"],
            recipient=kwargs["recipient"],
            sender=kwargs["sender"],
            asset=kwargs["asset"],
            amount=kwargs["amount"],
            timestamp=kwargs["timestamp"],
        ),
    )
    return kwargs


class TestCreateOrder:
    async def test_persists_and_registers(self, manager: OrderManager, store: IntentStore) -> None:
        intent = await manager.create_order(**_order_kwargs(manager))

        assert intent.order_id.startswith("ORD_")
        assert len(intent.order_id) == 34
        assert intent.status is OrderStatus.PENDING

        order = await manager.get_order(intent.order_id)
        assert order is not None
        assert order.status == "PENDING"
        assert order.recipient == RECIPIENT

        transfer = TransferRecord(
            sender=SENDER,
            recipient=RECIPIENT,
            asset=ASSET,
            amount=10**18,
            chain_id=97,
            network="bsc-testnet",
            tx_hash="0xt1",
            block_number=1,
            block_hash="0xb",
        )
        candidates = await store.find_candidates_by_transfer(transfer)
        assert len(candidates) == 1
        assert (await store.get(candidates[0])).order_id == intent.order_id

    async def test_checksummed_addresses_accepted(self, manager: OrderManager) -> None:
        checksummed = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
        intent = await manager.create_order(**_order_kwargs(manager, asset=checksummed))
        assert intent.asset == checksummed.lower()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"asset": "0x123"},
            {"sender": "not-an-address"},
            {"recipient": ""},
            {"amount": 0},
            {"amount": -5},
            {"chain_id": 0},
        ],
    )
    async def test_rejects_malformed_input(self, manager: OrderManager, overrides: dict) -> None:
        kwargs = _order_kwargs(manager, signature="ab" * 64)
        kwargs.update(overrides)
        with pytest.raises(InvalidOrderError):
            await manager.create_order(**kwargs)

    async def test_duplicate_signature_rejected(self, manager: OrderManager) -> None:
        kwargs = _order_kwargs(manager)
        await manager.create_order(**kwargs)
        with pytest.raises(InvalidOrderError):
            await manager.create_order(**kwargs)

    @pytest.mark.parametrize("signature", ["sigé", "ab" * 63, "0x" + "ab" * 63, "zz" * 64])
    async def test_rejects_malformed_signature(self, manager: OrderManager, signature: str) -> None:
        with pytest.raises(InvalidOrderError):
            await manager.create_order(**_order_kwargs(manager, signature=signature))

    async def test_retry_after_failed_registration_indexes_order(
        self, manager: OrderManager, store: IntentStore
    ) -> None:
        kwargs = _order_kwargs(manager)
        with patch.object(store, "register", AsyncMock(side_effect=ConnectionError("redis down"))):
            with pytest.raises(ConnectionError):
                await manager.create_order(**kwargs)

        intent = await manager.create_order(**kwargs)

        _, unique_key = store.keys_for(intent)
        indexed = await store.get(unique_key)
        assert indexed is not None
        assert indexed.order_id == intent.order_id
        assert (await manager.get_order(intent.order_id)).status == "PENDING"

    async def test_same_signature_with_other_fields_rejected(
        self, manager: OrderManager, store: IntentStore
    ) -> None:
        kwargs = _order_kwargs(manager)
        with patch.object(store, "register", AsyncMock(side_effect=ConnectionError("redis down"))):
            with pytest.raises(ConnectionError):
                await manager.create_order(**kwargs)

        with pytest.raises(InvalidOrderError):
            await manager.create_order(**{**kwargs, "amount": 5})

    async def test_get_unknown_order(self, manager: OrderManager) -> None:
        assert await manager.get_order("ORD_unknown") is None
