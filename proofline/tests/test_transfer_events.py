"""Tests for the ERC-20 Transfer log source.

Tests verify:
1. normalize_transfer_log: valid log, wrong topic, 4-topic (ERC-721) log, removed log, malformed
2. Transport selection by URL scheme
3. HTTP polling: cold start, bounded block ranges, RPC errors
4. WebSocket subscription message handling
5. Listener: normalized logs are enqueued, unrelated logs ignored
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from aioresponses import aioresponses

from proofline.config.settings import ContractConfig, ListenerConfig
from proofline.connectors.transfer_events import (
    TRANSFER_TOPIC,
    HttpLogSource,
    RpcError,
    TransferLogListener,
    WebSocketLogSource,
    normalize_transfer_log,
    select_log_source,
)

RPC_URL = "https://rpc.example.org"
TOKEN = "0x" + "aa" * 20

# ================================================================
# Factory helpers
# ================================================================


def _pad(address: str) -> str:
    return "0x" + "00" * 12 + address[2:]


def _make_log(
    amount: int = 1000,
    topics: list[str] | None = None,
    block_number: str = "0x10",
    **overrides,
) -> dict:
    log = {
        "address": "0x" + "AA" * 20,
        "topics": topics
        if topics is not None
        else [TRANSFER_TOPIC, _pad("0x" + "BB" * 20), _pad("0x" + "CC" * 20)],
        "data": "0x" + f"{amount:064x}",
        "blockNumber": block_number,
        "blockHash": "0x" + "DD" * 32,
        "transactionHash": "0x" + "EE" * 32,
        "removed": False,
    }
    log.update(overrides)
    return log


def _make_contract(rpc_url: str = RPC_URL) -> ContractConfig:
    return ContractConfig(chain_id=97, network="bsc-testnet", rpc_url=rpc_url, address=TOKEN)


# ================================================================
# Normalizer
# ================================================================


class TestNormalizeTransferLog:
    def test_topic_constant(self) -> None:
        assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

    def test_valid_log(self) -> None:
        record = normalize_transfer_log(_make_log(amount=10**24), 97, "bsc-testnet")
        assert record is not None
        assert record.sender == "0x" + "bb" * 20
        assert record.recipient == "0x" + "cc" * 20
        assert record.asset == "0x" + "aa" * 20
        assert record.amount == 10**24
        assert record.tx_hash == "0x" + "ee" * 32
        assert record.block_number == 16
        assert record.block_hash == "0x" + "dd" * 32
        assert record.chain_id == 97
        assert record.network == "bsc-testnet"

    def test_payload_shape(self) -> None:
        payload = normalize_transfer_log(_make_log(), 97, "bsc-testnet").to_payload()
        assert set(payload) == {
            "from",
            "to",
            "asset",
            "amount",
            "chainId",
            "network",
            "txHash",
            "blockNumber",
            "blockHash",
        }
        assert payload["amount"] == "1000"

    def test_wrong_topic(self) -> None:
        log = _make_log(topics=["0x" + "00" * 32, _pad("0x" + "bb" * 20), _pad("0x" + "cc" * 20)])
        assert normalize_transfer_log(log, 97, "x") is None

    def test_erc721_transfer_ignored(self) -> None:
        log = _make_log(
            topics=[TRANSFER_TOPIC, _pad("0x" + "bb" * 20), _pad("0x" + "cc" * 20), "0x" + "00" * 31 + "07"],
            data="0x",
        )
        assert normalize_transfer_log(log, 97, "x") is None

    def test_removed_log_ignored(self) -> None:
        assert normalize_transfer_log(_make_log(removed=True), 97, "x") is None

    def test_missing_tx_hash(self) -> None:
        log = _make_log()
        del log["transactionHash"]
        assert normalize_transfer_log(log, 97, "x") is None

    def test_integer_block_number(self) -> None:
        assert normalize_transfer_log(_make_log(block_number=12), 97, "x").block_number == 12


# ================================================================
# Transport selection
# ================================================================


class TestSelectLogSource:
    @pytest.mark.parametrize("url", ["http://node:8545", "https://rpc.example.org"])
    def test_http(self, url: str) -> None:
        assert isinstance(select_log_source(url, TOKEN), HttpLogSource)

    @pytest.mark.parametrize("url", ["ws://node:8546", "wss://rpc.example.org/ws"])
    def test_websocket(self, url: str) -> None:
        assert isinstance(select_log_source(url, TOKEN), WebSocketLogSource)

    def test_unknown_scheme(self) -> None:
        with pytest.raises(ValueError):
            select_log_source("ipc:///tmp/geth.ipc", TOKEN)


# ================================================================
# HTTP polling
# ================================================================


class TestHttpLogSource:
    async def test_cold_start_and_ranges(self) -> None:
        source = HttpLogSource(RPC_URL, TOKEN, cold_start_blocks=100, max_block_range=40)
        source._get_block_number = AsyncMock(return_value=1000)
        source._get_logs = AsyncMock(side_effect=[[_make_log()], [], []])
        on_log = AsyncMock()

        delivered = await source.poll_once(on_log)

        assert delivered == 1
        ranges = [call.args for call in source._get_logs.await_args_list]
        assert ranges == [(901, 940), (941, 980), (981, 1000)]
        assert source.last_block == 1000
        on_log.assert_awaited_once()

    async def test_no_new_blocks(self) -> None:
        source = HttpLogSource(RPC_URL, TOKEN, cold_start_blocks=10)
        source._get_block_number = AsyncMock(side_effect=[500, 500])
        source._get_logs = AsyncMock(return_value=[])

        await source.poll_once(AsyncMock())
        source._get_logs.reset_mock()
        assert await source.poll_once(AsyncMock()) == 0
        source._get_logs.assert_not_awaited()

    async def test_rpc_calls(self) -> None:
        source = HttpLogSource(RPC_URL, TOKEN, cold_start_blocks=1)
        on_log = AsyncMock()
        with aioresponses() as m:
            m.post(RPC_URL, payload={"jsonrpc": "2.0", "id": 1, "result": "0x10"})
            m.post(RPC_URL, payload={"jsonrpc": "2.0", "id": 2, "result": [_make_log()]})
            async with aiohttp.ClientSession() as session:
                source._session = session
                assert await source.poll_once(on_log) == 1
        on_log.assert_awaited_once_with(_make_log())

    async def test_rpc_error_raises(self) -> None:
        source = HttpLogSource(RPC_URL, TOKEN)
        with aioresponses() as m:
            error = {"code": -32005, "message": "limit exceeded"}
            m.post(RPC_URL, payload={"jsonrpc": "2.0", "id": 1, "error": error})
            async with aiohttp.ClientSession() as session:
                source._session = session
                with pytest.raises(RpcError):
                    await source.poll_once(AsyncMock())

    async def test_requires_session(self) -> None:
        with pytest.raises(RuntimeError):
            await HttpLogSource(RPC_URL, TOKEN).poll_once(AsyncMock())


# ================================================================
# WebSocket subscription
# ================================================================


class TestWebSocketLogSource:
    def test_subscribe_request(self) -> None:
        request = WebSocketLogSource("wss://x", TOKEN).subscribe_request()
        assert request["method"] == "eth_subscribe"
        assert request["params"] == ["logs", {"address": TOKEN, "topics": [TRANSFER_TOPIC]}]

    async def test_subscription_message_delivers_log(self) -> None:
        on_log = AsyncMock()
        message = {
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": "0x1", "result": _make_log()},
        }
        await WebSocketLogSource("wss://x", TOKEN).handle_message(message, on_log)
        on_log.assert_awaited_once_with(_make_log())

    async def test_subscription_ack_ignored(self) -> None:
        on_log = AsyncMock()
        await WebSocketLogSource("wss://x", TOKEN).handle_message({"id": 1, "result": "0x1"}, on_log)
        on_log.assert_not_awaited()

    async def test_error_message_raises(self) -> None:
        with pytest.raises(RpcError):
            await WebSocketLogSource("wss://x", TOKEN).handle_message(
                {"id": 1, "error": {"message": "nope"}}, AsyncMock()
            )


# ================================================================
# Listener
# ================================================================


class TestTransferLogListener:
    async def test_enqueues_transfers(self) -> None:
        queue = MagicMock()
        queue.enqueue = AsyncMock(return_value=True)
        listener = TransferLogListener(_make_contract(), queue, ListenerConfig(), source=MagicMock())

        await listener.handle_log(_make_log())
        await listener.handle_log(_make_log(topics=[]))

        queue.enqueue.assert_awaited_once()
        record = queue.enqueue.await_args.args[0]
        assert record.chain_id == 97
        assert listener.stats == {"enqueued": 1, "ignored": 1}

    async def test_duplicate_not_counted(self) -> None:
        queue = MagicMock()
        queue.enqueue = AsyncMock(return_value=False)
        listener = TransferLogListener(_make_contract(), queue, source=MagicMock())
        await listener.handle_log(_make_log())
        assert listener.stats["enqueued"] == 0

    def test_source_from_contract_url(self) -> None:
        listener = TransferLogListener(_make_contract("wss://rpc.example.org"), MagicMock())
        assert isinstance(listener._source, WebSocketLogSource)

    async def test_start_stop(self) -> None:
        source = MagicMock()
        source.run = AsyncMock(side_effect=ConnectionError("refused"))
        listener = TransferLogListener(
            _make_contract(), MagicMock(), ListenerConfig(poll_interval_s=1), source=source
        )

        await listener.start()
        await listener.stop()

        assert listener._task is None
