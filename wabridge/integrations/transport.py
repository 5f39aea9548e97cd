"""wabridge – Messaging transport contract.

One ``TransportHandle`` per tenant connection. The handle yields lifecycle
and message events from ``events()`` and exposes the few commands the
gateway issues against the live connection.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


@dataclass
class QrEvent:
    """A pairing code is waiting to be scanned."""
    qr: str


@dataclass
class ReadyEvent:
    """The connection is open and authenticated."""
    user_id: str | None = None


@dataclass
class ClosedEvent:
    reason: str = ""
    logged_out: bool = False


@dataclass
class ContactsUpserted:
    contacts: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class MessageUpserted:
    raw: dict[str, Any]


@dataclass
class CredentialsUpdated:
    blob: str


TransportEvent = QrEvent | ReadyEvent | ClosedEvent | ContactsUpserted | MessageUpserted | CredentialsUpdated


class TransportHandle(ABC):
    """A live (or connecting) connection for one tenant."""

    tenant_id: str

    @abstractmethod
    def events(self) -> AsyncIterator[TransportEvent]:
        """Async iterator of events; ends after the connection closes."""

    @abstractmethod
    async def send_message(self, identity: str, content: dict[str, Any]) -> dict[str, Any]:
        """Send ``{"text": ...}`` or ``{"image": {"url": ...}, "caption": ...}``."""

    @abstractmethod
    async def send_presence(self, state: str, identity: str) -> None:
        ...

    @abstractmethod
    async def group_metadata(self, group_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def profile_picture_url(self, identity: str) -> str | None:
        ...

    @abstractmethod
    async def download_media(self, raw: dict[str, Any]) -> bytes:
        ...

    @abstractmethod
    async def logout(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class TransportClient(ABC):
    """Factory for per-tenant connections."""

    @abstractmethod
    async def connect(self, tenant_id: str, credentials: str | None) -> TransportHandle:
        """Open a connection. Raises TransportError when it cannot be started."""
