"""wabridge – Pytest Configuration.

Shared fixtures for all tests: an in-memory store, a scriptable transport,
a recording event bus and a fully wired gateway built from them.
"""

import asyncio
import os

# Force testing mode so wabridge.core.db falls back to in-memory SQLite
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["REDIS_URL"] = "redis://localhost:6379/0"

from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

from config.settings import Settings
from wabridge.core.db import make_engine, run_migrations
from wabridge.core.errors import GenerationError, TransportError
from wabridge.gateway.dependencies import Gateway, build_gateway
from wabridge.gateway.persistence import PersistenceService
from wabridge.integrations.transport import ClosedEvent, TransportClient, TransportHandle


# ──────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────


class FakeHandle(TransportHandle):
    """Transport handle driven by the test: events are pushed onto a queue."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.presence: list[tuple[str, str]] = []
        self.failing: set[str] = set()
        self.fail_images = False
        self.group_subjects: dict[str, str] = {}
        self.logged_out = False
        self.closed = False

    def push(self, event: Any) -> None:
        self.queue.put_nowait(event)

    async def events(self):
        while True:
            event = await self.queue.get()
            yield event
            if isinstance(event, ClosedEvent):
                return

    async def send_message(self, identity: str, content: dict[str, Any]) -> dict[str, Any]:
        if identity in self.failing or (self.fail_images and "image" in content):
            raise TransportError(f"send to {identity} failed")
        self.sent.append((identity, content))
        return {"id": f"out-{len(self.sent)}"}

    async def send_presence(self, state: str, identity: str) -> None:
        self.presence.append((state, identity))

    async def group_metadata(self, group_id: str) -> dict[str, Any]:
        return {"subject": self.group_subjects.get(group_id, "")}

    async def profile_picture_url(self, identity: str) -> str | None:
        return None

    async def download_media(self, raw: dict[str, Any]) -> bytes:
        return b"\xff\xd8media"

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True

    def texts(self) -> list[str]:
        return [content.get("text", "") for _, content in self.sent]


class FakeTransport(TransportClient):
    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.connect_calls: list[tuple[str, str | None]] = []
        self.failures = 0

    async def connect(self, tenant_id: str, credentials: str | None) -> TransportHandle:
        self.connect_calls.append((tenant_id, credentials))
        if self.failures:
            self.failures -= 1
            raise TransportError("bridge unreachable")
        handle = FakeHandle(tenant_id)
        self.handles.append(handle)
        return handle

    def latest(self) -> FakeHandle:
        return self.handles[-1]


class RecordingBus:
    """Stands in for RedisBus; keeps every published event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, Any]] = []
        self.connect = AsyncMock()
        self.disconnect = AsyncMock()
        self.health_check = AsyncMock(return_value=True)

    async def publish_event(self, tenant_id: str, event: str, data: Any) -> int:
        self.events.append((tenant_id, event, data))
        return 1

    def of(self, event: str, tenant_id: str | None = None) -> list[Any]:
        return [d for t, e, d in self.events if e == event and (tenant_id is None or t == tenant_id)]


# ──────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def persistence():
    """PersistenceService over a private in-memory SQLite database."""
    engine = make_engine("sqlite://")
    run_migrations(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield PersistenceService(session_factory=factory)
    engine.dispose()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def llm() -> MagicMock:
    client = MagicMock()
    client.chat = AsyncMock(side_effect=GenerationError("no providers configured"))
    return client


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        environment="testing",
        stats_file=str(tmp_path / "stats.json"),
        media_dir=str(tmp_path / "media"),
        auto_reply_delay=0,
        ai_reply_delay=0,
        broadcast_send_delay=0,
        activation_wait_seconds=0.2,
        reconnect_delay_seconds=0.01,
        reconnect_max_delay_seconds=0.05,
    )


@pytest.fixture
def gateway(test_settings, transport, persistence, bus, llm) -> Gateway:
    return build_gateway(test_settings, transport=transport, persistence=persistence, bus=bus, llm=llm)


@pytest.fixture
def raw_message() -> Callable[..., dict[str, Any]]:
    """Builder for raw transport message events."""

    def _build(
        key_id: str,
        chat: str,
        text: str = "",
        *,
        from_me: bool = False,
        push_name: str | None = "Budi",
        participant: str | None = None,
        message: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        key: dict[str, Any] = {"id": key_id, "remoteJid": chat, "fromMe": from_me}
        if participant:
            key["participant"] = participant
        return {
            "key": key,
            "pushName": push_name,
            "messageTimestamp": 1700000000,
            "message": message if message is not None else {"conversation": text},
        }

    return _build


@pytest.fixture
def eventually():
    """Poll until a predicate holds, yielding to the event loop in between."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait
