"""wabridge – WhatsApp Web bridge transport.

Talks to a local WhatsApp Web bridge sidecar (Baileys based) that owns the
wire protocol:

  - commands go out as HTTP calls under ``{bridge}/sessions/{tenant}/…``
  - events come back as JSON frames on ``ws(s)://…/sessions/{tenant}/events``

Frame types: ``qr``, ``ready``, ``closed``, ``contacts.upsert``,
``messages.upsert``, ``creds.update``.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator
from urllib.parse import quote

import httpx
import structlog
import websockets

from wabridge.core.errors import TransportError
from wabridge.integrations.transport import (
    ClosedEvent,
    ContactsUpserted,
    CredentialsUpdated,
    MessageUpserted,
    QrEvent,
    ReadyEvent,
    TransportClient,
    TransportEvent,
    TransportHandle,
)

logger = structlog.get_logger()

LOGGED_OUT_STATUS = 401


def parse_frame(frame: dict[str, Any]) -> TransportEvent | None:
    """Map one bridge frame onto a transport event. Unknown types yield None."""
    kind = frame.get("type")
    data = frame.get("data") or {}
    if kind == "qr":
        return QrEvent(qr=str(data.get("qr", "")))
    if kind == "ready":
        return ReadyEvent(user_id=data.get("user_id"))
    if kind == "closed":
        logged_out = bool(data.get("logged_out")) or data.get("status_code") == LOGGED_OUT_STATUS
        return ClosedEvent(reason=str(data.get("reason", "")), logged_out=logged_out)
    if kind == "contacts.upsert":
        return ContactsUpserted(contacts=list(data.get("contacts") or []))
    if kind == "messages.upsert":
        return MessageUpserted(raw=data.get("message") or data)
    if kind == "creds.update":
        blob = data.get("creds")
        return CredentialsUpdated(blob=blob if isinstance(blob, str) else json.dumps(blob))
    return None


class BridgeHandle(TransportHandle):
    def __init__(self, tenant_id: str, bridge_url: str, api_key: str = "", timeout: float = 15.0) -> None:
        self.tenant_id = tenant_id
        self._base = f"{bridge_url.rstrip('/')}/sessions/{quote(tenant_id, safe='')}"
        self._api_key = api_key
        headers = {"X-API-Key": api_key} if api_key else {}
        self._http = httpx.AsyncClient(timeout=timeout, headers=headers)
        self._ws = None
        self._closed = False

    @property
    def events_url(self) -> str:
        url = self._base.replace("https://", "wss://", 1).replace("http://", "ws://", 1) + "/events"
        if self._api_key:
            url += f"?key={quote(self._api_key, safe='')}"
        return url

    async def events(self) -> AsyncIterator[TransportEvent]:
        try:
            async with websockets.connect(self.events_url) as ws:
                self._ws = ws
                async for raw in ws:
                    try:
                        frame = json.loads(raw)
                    except ValueError:
                        logger.warning("bridge.bad_frame", tenant_id=self.tenant_id)
                        continue
                    event = parse_frame(frame)
                    if event is None:
                        continue
                    yield event
                    if isinstance(event, ClosedEvent):
                        return
        except websockets.ConnectionClosed as e:
            if self._closed:
                return
            logger.warning("bridge.stream_closed", tenant_id=self.tenant_id, error=str(e))
            yield ClosedEvent(reason=str(e), logged_out=False)
        except (OSError, websockets.InvalidHandshake) as e:
            if self._closed:
                return
            logger.error("bridge.stream_failed", tenant_id=self.tenant_id, error=str(e))
            yield ClosedEvent(reason=str(e), logged_out=False)
        finally:
            self._ws = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, f"{self._base}{path}", **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.error("bridge.request_failed", tenant_id=self.tenant_id, path=path, error=str(e))
            raise TransportError(f"bridge {method} {path} failed: {e}") from e

    def _json(self, response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error("bridge.bad_response", tenant_id=self.tenant_id, path=response.request.url.path, error=str(e))
            raise TransportError(f"bridge returned invalid JSON for {response.request.url.path}") from e

    async def send_message(self, identity: str, content: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", "/messages", json={"to": identity, "content": content})
        data = self._json(response) or {}
        logger.info("bridge.sent", tenant_id=self.tenant_id, id=data.get("id"))
        return data

    async def send_presence(self, state: str, identity: str) -> None:
        await self._request("POST", "/presence", json={"to": identity, "state": state})

    async def group_metadata(self, group_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/groups/{quote(group_id, safe='')}")
        return self._json(response) or {}

    async def profile_picture_url(self, identity: str) -> str | None:
        response = await self._request("GET", f"/contacts/{quote(identity, safe='')}/picture")
        return (self._json(response) or {}).get("url")

    async def download_media(self, raw: dict[str, Any]) -> bytes:
        response = await self._request("POST", "/media", json={"message": raw})
        return response.content

    async def logout(self) -> None:
        await self._request("POST", "/logout")

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
        await self._http.aclose()


class BridgeTransport(TransportClient):
    def __init__(self, bridge_url: str, api_key: str = "") -> None:
        self._bridge_url = bridge_url.rstrip("/")
        self._api_key = api_key

    async def connect(self, tenant_id: str, credentials: str | None) -> TransportHandle:
        handle = BridgeHandle(tenant_id, self._bridge_url, self._api_key)
        try:
            await handle._request("POST", "/start", json={"credentials": credentials})
        except TransportError:
            await handle.close()
            raise
        logger.info("bridge.session_started", tenant_id=tenant_id, restored=credentials is not None)
        return handle
