"""Proofline orchestrator: builds all handles and supervises the runtime tasks.

Entry point: python -m proofline [--role all|listener|worker|sweeper] [--log-level INFO]

Architecture:
- ProoflineOrchestrator owns the Redis client, the SQLAlchemy engine and every component
- Task-per-role model: worker pool, queue maintenance, sweeper, one listener per contract
- Failed tasks back off min(60, 2**restarts) seconds and stop after max_restart_count
- Graceful shutdown on SIGINT/SIGTERM: set asyncio.Event, cancel tasks, close handles
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis

from proofline.config.settings import ProoflineConfig, get_config
from proofline.connectors.transfer_events import TransferLogListener
from proofline.core.event_bus import LoggingEventSink, RedisStreamEventSink, StatusEventBus
from proofline.core.ingest_queue import TransferQueue
from proofline.core.intent_store import IntentStore
from proofline.core.models import SweepResult
from proofline.core.order_manager import OrderManager
from proofline.core.order_repository import OrderRepository
from proofline.core.signature import OrderSigner
from proofline.core.sweeper import SettlementSweeper
from proofline.core.transfer_worker import TransferMatcher, TransferWorkerPool
from proofline.utils.db import build_engine, build_session_factory, create_schema
from proofline.utils.logger import get_logger, setup_logging

logger = get_logger("orchestrator")

ROLES = ("all", "listener", "worker", "sweeper")


@dataclass
class TaskState:
    """Runtime state for a single supervised task."""

    name: str
    task: asyncio.Task[None] | None = None
    restart_count: int = 0
    last_heartbeat: float = field(default_factory=time.monotonic)
    permanent_stop: bool = False


class ProoflineOrchestrator:
    """Owns every component of one Proofline process.

    Lifecycle: ``__init__`` -> ``start()`` -> runs until ``stop()`` or signal.
    """

    def __init__(self, role: str = "all", config: ProoflineConfig | None = None) -> None:
        if role not in ROLES:
            raise ValueError(f"Unknown role {role!r}, expected one of {ROLES}")
        self._role = role
        self._config = config or get_config()
        self._orch_cfg = self._config.orchestrator

        self._shutdown_event = asyncio.Event()
        self._tasks: dict[str, TaskState] = {}

        # --- Handles and components (initialized in init_components()) ---
        self._redis: Any = None
        self._engine: Any = None
        self.bus: StatusEventBus | None = None
        self.store: IntentStore | None = None
        self.queue: TransferQueue | None = None
        self.repository: OrderRepository | None = None
        self.order_manager: OrderManager | None = None
        self.sweeper: SettlementSweeper | None = None
        self.worker_pool: TransferWorkerPool | None = None
        self.listeners: list[TransferLogListener] = []

    @property
    def tasks(self) -> dict[str, TaskState]:
        return self._tasks

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Initialize components, start role tasks and block until shutdown."""
        logger.info("orchestrator_starting", role=self._role, mode=self._config.mode)

        self._install_signal_handlers()
        await self.init_components()
        self._start_tasks()

        logger.info("orchestrator_started", role=self._role, tasks=len(self._tasks))

        await self._shutdown_event.wait()
        await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Graceful shutdown: cancel all tasks, close handles."""
        logger.info("orchestrator_stopping")

        for state in self._tasks.values():
            if state.task and not state.task.done():
                state.task.cancel()
        for state in self._tasks.values():
            if state.task:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await state.task

        await self._close_components()
        logger.info("orchestrator_stopped")

    async def sweep_once(self) -> SweepResult:
        """Run a single sweep cycle and close all handles."""
        await self.init_components()
        try:
            if self.sweeper is None:
                raise RuntimeError("Sweeper not initialized")
            return await self.sweeper.sweep()
        finally:
            await self._close_components()

    # ------------------------------------------------------------------
    # Component initialization
    # ------------------------------------------------------------------

    async def init_components(self) -> None:
        cfg = self._config

        self._redis = aioredis.from_url(cfg.redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_connected", redis_url=cfg.redis_url)

        self._engine = build_engine(cfg.database_url)
        if self._orch_cfg.create_schema:
            await create_schema(self._engine)
            logger.info("database_schema_created")
        session_factory = build_session_factory(self._engine)

        signer = OrderSigner(cfg.hmac_signature_secret, cfg.hmac_index_secret)

        self.bus = StatusEventBus()
        self.bus.subscribe(
            RedisStreamEventSink(self._redis, stream=cfg.events.stream, maxlen=cfg.events.stream_maxlen)
        )
        if cfg.events.log_events:
            self.bus.subscribe(LoggingEventSink())

        self.store = IntentStore(self._redis, signer)
        self.queue = TransferQueue(self._redis, cfg.queue)
        self.repository = OrderRepository(session_factory)
        self.order_manager = OrderManager(self.repository, self.store, signer)
        self.sweeper = SettlementSweeper(self.store, self.repository, batch_size=cfg.sweeper.batch_size)
        self.worker_pool = TransferWorkerPool(
            self.queue,
            TransferMatcher(self.store, signer, self.bus),
            concurrency=cfg.workers.concurrency,
            consumer_prefix=cfg.workers.consumer_prefix,
        )
        self.listeners = [
            TransferLogListener(contract, self.queue, cfg.listener) for contract in cfg.contracts
        ]

        await self.queue.ensure_group()
        logger.info(
            "components_initialized",
            contracts=len(self.listeners),
            concurrency=cfg.workers.concurrency,
        )

    async def _close_components(self) -> None:
        if self.worker_pool is not None:
            try:
                await self.worker_pool.stop()
            except Exception as e:
                logger.warning("close_component_error", component="worker_pool", error=str(e))

        for listener in self.listeners:
            try:
                await listener.stop()
            except Exception as e:
                logger.warning("close_component_error", component=listener.name, error=str(e))

        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning("close_component_error", component="redis", error=str(e))
            self._redis = None

        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def _task_defs(self) -> list[tuple[str, Callable[[], Awaitable[Any]], float]]:
        defs: list[tuple[str, Callable[[], Awaitable[Any]], float]] = []
        if self._role in ("all", "worker") and self.worker_pool is not None:
            defs.append(("workers", self.worker_pool.run, 0))
            defs.append(("queue_maintenance", self._run_maintenance, self._orch_cfg.maintenance_interval_s))
        if self._role in ("all", "sweeper"):
            defs.append(("sweeper", self._run_sweep, self._config.sweeper.interval_s))
        if self._role in ("all", "listener"):
            for listener in self.listeners:
                defs.append((listener.name, listener.run, 0))
        return defs

    def _start_tasks(self) -> None:
        for name, coro_factory, interval in self._task_defs():
            state = TaskState(name=name)
            self._tasks[name] = state
            state.task = asyncio.create_task(
                self._run_task(name, coro_factory, interval),
                name=f"task_{name}",
            )

    async def _run_task(
        self,
        name: str,
        coro_factory: Callable[[], Awaitable[Any]],
        interval_s: float,
    ) -> None:
        """Generic task loop with error handling.

        Args:
            name: Task name for logging.
            coro_factory: Async callable; one iteration, or a long-running loop.
            interval_s: Sleep between iterations (0 = continuous, run once).
        """
        state = self._tasks[name]

        while not self._shutdown_event.is_set() and not state.permanent_stop:
            try:
                state.last_heartbeat = time.monotonic()
                await coro_factory()
                state.last_heartbeat = time.monotonic()
                if interval_s <= 0:
                    logger.info("task_exited", task=name)
                    break

                # Sleep in small increments for responsive shutdown
                deadline = time.monotonic() + interval_s
                while time.monotonic() < deadline and not self._shutdown_event.is_set():
                    await asyncio.sleep(min(1.0, deadline - time.monotonic()))

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._handle_task_error(name, e)
                if not state.permanent_stop:
                    await asyncio.sleep(min(60.0, 2**state.restart_count))

    def _handle_task_error(self, name: str, error: Exception) -> None:
        """Count the failure and stop the task permanently after max_restart_count."""
        state = self._tasks[name]
        state.restart_count += 1

        logger.error(
            "task_error",
            task=name,
            error=str(error),
            error_type=type(error).__name__,
            restart_count=state.restart_count,
        )

        if state.restart_count >= self._orch_cfg.max_restart_count:
            logger.warning(
                "task_permanently_stopped",
                task=name,
                restart_count=state.restart_count,
            )
            state.permanent_stop = True

    # ------------------------------------------------------------------
    # Task coroutines
    # ------------------------------------------------------------------

    async def _run_maintenance(self) -> None:
        """Promote due retries and reclaim entries abandoned by dead consumers."""
        if self.queue is None:
            return
        await self.queue.promote_delayed()
        await self.queue.reclaim_stale(f"{self._config.workers.consumer_prefix}-reclaimer")

    async def _run_sweep(self) -> None:
        if self.sweeper is None:
            return
        await self.sweeper.sweep()

    # ------------------------------------------------------------------
    # Signal handlers
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers to trigger graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        """Handle OS signal by setting shutdown event."""
        logger.info("shutdown_signal_received", signal=sig.name)
        self._shutdown_event.set()


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point for the Proofline orchestrator."""
    parser = argparse.ArgumentParser(description="Proofline settlement engine")
    parser.add_argument("--role", default="all", choices=ROLES)
    parser.add_argument("--log-level", default=None)
    parser.add_argument(
        "--sweep-once",
        action="store_true",
        help="Run a single sweep cycle and exit",
    )
    args = parser.parse_args()

    config = get_config()
    setup_logging(log_level=args.log_level or config.log_level)

    orchestrator = ProoflineOrchestrator(role=args.role, config=config)
    if args.sweep_once:
        result = asyncio.run(orchestrator.sweep_once())
        logger.info("sweep_once_complete", **result.to_dict())
        return
    asyncio.run(orchestrator.start())


if __name__ == "__main__":
    main()
