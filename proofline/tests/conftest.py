"""Shared test fixtures for the Proofline test suite."""

from __future__ import annotations

import os

import fakeredis
import pytest
from sqlalchemy.pool import StaticPool

from proofline.config.settings import QueueConfig
from proofline.core.event_bus import StatusEventBus
from proofline.core.ingest_queue import TransferQueue
from proofline.core.intent_store import IntentStore
from proofline.core.order_repository import OrderRepository
from proofline.core.signature import OrderSigner
from proofline.utils.db import build_engine, build_session_factory, create_schema

os.environ.setdefault("HMAC_SIGNATURE_SECRET", "test-signature-secret")
os.environ.setdefault("HMAC_INDEX_SECRET", "test-index-secret")


class RecordingSink:
    """Event sink that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list = []

    async def on_event(self, event) -> None:
        self.events.append(event)

    @property
    def names(self) -> list[str]:
        return [e.event_name for e in self.events]


@pytest.fixture
async def redis():
    """Isolated in-memory Redis per test."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def signer() -> OrderSigner:
    return OrderSigner("test-signature-secret", "test-index-secret")


@pytest.fixture
def store(redis, signer) -> IntentStore:
    return IntentStore(redis, signer)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def bus(sink) -> StatusEventBus:
    return StatusEventBus([sink])


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(attempts=3, backoff_type="exponential", backoff_delay_ms=1000, job_timeout_s=1.0)


@pytest.fixture
async def queue(redis, queue_config) -> TransferQueue:
    q = TransferQueue(redis, queue_config)
    await q.ensure_group()
    return q


@pytest.fixture
async def session_factory():
    """In-memory SQLite orders table shared across sessions."""
    engine = build_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def repository(session_factory) -> OrderRepository:
    return OrderRepository(session_factory)
