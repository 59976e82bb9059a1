"""ERC-20 Transfer log source.

Watches one token contract for ``Transfer(address,address,uint256)`` logs,
normalizes each log into a TransferRecord and enqueues it on the ingest
queue. The transport is chosen once from the RPC URL scheme:

- ``http(s)://``: JSON-RPC polling of ``eth_blockNumber`` / ``eth_getLogs``
- ``ws(s)://``: ``eth_subscribe("logs", ...)`` over a WebSocket

Transport errors are logged; the listener resumes on the next interval.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any, Protocol
from urllib.parse import urlparse

import aiohttp
from web3 import Web3

from proofline.config.settings import ContractConfig, ListenerConfig
from proofline.core.ingest_queue import TransferQueue  # noqa: TC001
from proofline.core.models import TransferRecord
from proofline.utils.logger import get_logger

logger = get_logger("transfer_events")

TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text=TRANSFER_EVENT_SIGNATURE))

LogHandler = Callable[[dict[str, Any]], Awaitable[None]]


class RpcError(Exception):
    """JSON-RPC error response from the node."""


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value or 0)


def normalize_transfer_log(
    log: dict[str, Any],
    chain_id: int,
    network: str,
) -> TransferRecord | None:
    """Decode a raw Transfer log into a TransferRecord.

    Args:
        log: Raw log dict (``address``, ``topics``, ``data``,
            ``transactionHash``, ``blockNumber``, ``blockHash``).
        chain_id: Chain the log was read from.
        network: Network label for the record.

    Returns:
        The normalized record, or None for logs that are not a standard
        ERC-20 Transfer (wrong topic, ERC-721 style 4 topics, removed by a
        reorg, malformed).
    """
    try:
        topics = [str(t).lower() for t in log.get("topics") or []]
        if len(topics) != 3 or topics[0] != TRANSFER_TOPIC:
            return None
        if log.get("removed"):
            return None

        data = str(log.get("data") or "0x")
        data_hex = data[2:] if data.startswith("0x") else data

        return TransferRecord(
            sender="0x" + topics[1][-40:],
            recipient="0x" + topics[2][-40:],
            asset=str(log["address"]).lower(),
            amount=int(data_hex[:64], 16) if data_hex else 0,
            chain_id=chain_id,
            network=network,
            tx_hash=str(log["transactionHash"]).lower(),
            block_number=_to_int(log.get("blockNumber")),
            block_hash=str(log.get("blockHash") or "").lower(),
        )
    except (KeyError, ValueError, TypeError) as e:
        logger.debug("parse_transfer_log_error", error=str(e))
        return None


# ================================================================
# Transports
# ================================================================


class LogSource(Protocol):
    async def run(self, on_log: LogHandler) -> None:
        """Deliver raw logs to ``on_log`` until the transport ends."""


class HttpLogSource:
    """Polls ``eth_getLogs`` in bounded block ranges."""

    def __init__(
        self,
        rpc_url: str,
        address: str,
        poll_interval_s: int = 5,
        cold_start_blocks: int = 100,
        max_block_range: int = 2000,
    ) -> None:
        self._rpc_url = rpc_url
        self._address = address
        self._poll_interval_s = poll_interval_s
        self._cold_start_blocks = cold_start_blocks
        self._max_block_range = max_block_range
        self._session: aiohttp.ClientSession | None = None
        self._last_block: int | None = None
        self._request_id = 0

    @property
    def last_block(self) -> int | None:
        return self._last_block

    async def run(self, on_log: LogHandler) -> None:
        async with aiohttp.ClientSession() as session:
            self._session = session
            try:
                while True:
                    try:
                        await self.poll_once(on_log)
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        logger.warning(
                            "transfer_poll_error",
                            address=self._address,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                    await asyncio.sleep(self._poll_interval_s)
            finally:
                self._session = None

    async def poll_once(self, on_log: LogHandler) -> int:
        """Fetch logs from the last processed block up to head. Returns log count."""
        current = await self._get_block_number()
        if self._last_block is None:
            self._last_block = max(current - self._cold_start_blocks, 0)
            logger.info("transfer_poll_cold_start", from_block=self._last_block, latest=current)

        delivered = 0
        while self._last_block < current:
            from_block = self._last_block + 1
            to_block = min(from_block + self._max_block_range - 1, current)
            logs = await self._get_logs(from_block, to_block)
            for log in logs:
                await on_log(log)
            delivered += len(logs)
            self._last_block = to_block
            logger.debug(
                "transfer_poll_ok",
                from_block=from_block,
                to_block=to_block,
                logs=len(logs),
            )
        return delivered

    async def _call(self, method: str, params: list[Any]) -> Any:
        if self._session is None:
            raise RuntimeError("Session not initialized")
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        async with self._session.post(self._rpc_url, json=payload) as resp:
            data = await resp.json()
        if data.get("error"):
            raise RpcError(f"{method}: {data['error']}")
        return data.get("result")

    async def _get_block_number(self) -> int:
        return _to_int(await self._call("eth_blockNumber", []))

    async def _get_logs(self, from_block: int, to_block: int) -> list[dict[str, Any]]:
        result = await self._call(
            "eth_getLogs",
            [
                {
                    "address": self._address,
                    "topics": [TRANSFER_TOPIC],
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                }
            ],
        )
        return result or []


class WebSocketLogSource:
    """Subscribes to Transfer logs with ``eth_subscribe``."""

    def __init__(self, rpc_url: str, address: str, heartbeat_s: float = 30.0) -> None:
        self._rpc_url = rpc_url
        self._address = address
        self._heartbeat_s = heartbeat_s

    def subscribe_request(self) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self._address, "topics": [TRANSFER_TOPIC]}],
        }

    async def run(self, on_log: LogHandler) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self._rpc_url, heartbeat=self._heartbeat_s) as ws:
                await ws.send_json(self.subscribe_request())
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self.handle_message(msg.json(), on_log)
                    elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
        logger.info("transfer_subscription_closed", address=self._address)

    async def handle_message(self, data: dict[str, Any], on_log: LogHandler) -> None:
        if data.get("error"):
            raise RpcError(f"eth_subscribe: {data['error']}")
        if data.get("method") == "eth_subscription":
            await on_log(data["params"]["result"])
        elif "result" in data:
            logger.info("transfer_subscription_started", subscription=data["result"])


def select_log_source(rpc_url: str, address: str, config: ListenerConfig | None = None) -> LogSource:
    """Pick the transport for ``rpc_url`` by URL scheme."""
    config = config or ListenerConfig()
    scheme = urlparse(rpc_url).scheme.lower()
    if scheme in ("http", "https"):
        return HttpLogSource(
            rpc_url,
            address,
            poll_interval_s=config.poll_interval_s,
            cold_start_blocks=config.cold_start_blocks,
            max_block_range=config.max_block_range,
        )
    if scheme in ("ws", "wss"):
        return WebSocketLogSource(rpc_url, address)
    raise ValueError(f"Unsupported RPC URL scheme: {scheme!r}")


# ================================================================
# Listener
# ================================================================


class TransferLogListener:
    """Feeds one contract's Transfer logs into the ingest queue."""

    def __init__(
        self,
        contract: ContractConfig,
        queue: TransferQueue,
        config: ListenerConfig | None = None,
        source: LogSource | None = None,
    ) -> None:
        self._contract = contract
        self._queue = queue
        self._config = config or ListenerConfig()
        self._source = source or select_log_source(contract.rpc_url, contract.address, self._config)
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._enqueued = 0
        self._ignored = 0

    @property
    def name(self) -> str:
        return f"listener-{self._contract.network}-{self._contract.address.lower()[:10]}"

    @property
    def stats(self) -> dict[str, int]:
        return {"enqueued": self._enqueued, "ignored": self._ignored}

    async def start(self) -> None:
        """Start the listener loop as a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self.run(), name=self.name)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("transfer_listener_stopped", listener=self.name, **self.stats)

    async def run(self) -> None:
        self._running = True
        logger.info(
            "transfer_listener_started",
            listener=self.name,
            chain_id=self._contract.chain_id,
            source=type(self._source).__name__,
        )
        while self._running:
            try:
                await self._source.run(self.handle_log)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "transfer_source_error",
                    listener=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            if self._running:
                await asyncio.sleep(self._config.poll_interval_s)

    async def handle_log(self, log: dict[str, Any]) -> None:
        transfer = normalize_transfer_log(log, self._contract.chain_id, self._contract.network)
        if transfer is None:
            self._ignored += 1
            return
        if await self._queue.enqueue(transfer):
            self._enqueued += 1
