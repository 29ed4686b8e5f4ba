"""Transport over the WebSocket relay served by ``main.py``.

The host opens one socket on ``/ws/host/{code}`` and the relay multiplexes
every participant over it as ``{event, peer, data}`` frames; participants
each open ``/ws/join/{code}`` and exchange bare messages.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import settings
from .transport import ChannelClosed, ConnectionFailed, QueueChannel, QueueListener

logger = logging.getLogger(__name__)

CONNECT_OPTIONS = {
    "ping_interval": 20,
    "ping_timeout": 10,
    "close_timeout": 5,
    "max_size": 2**23,
}


async def _connect(url: str):
    try:
        return await websockets.connect(url, **CONNECT_OPTIONS)
    except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
        raise ConnectionFailed(f"could not connect to {url}: {exc}") from exc


class RelayPeerChannel(QueueChannel):
    """Host-side view of one participant multiplexed over the host socket."""

    def __init__(self, listener: "RelayListener", peer_id: str):
        super().__init__(peer_id)
        self._listener = listener

    async def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ChannelClosed(f"channel to {self.peer_id} is closed")
        await self._listener._send_frame({"peer": self.peer_id, "data": message})

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._listener._channels.pop(self.peer_id, None)
        try:
            await self._listener._send_frame({"peer": self.peer_id, "close": True})
        except ChannelClosed:
            pass
        self._remote_closed()


class RelayListener(QueueListener):
    def __init__(self, address: str, websocket):
        super().__init__(address)
        self._ws = websocket
        self._channels: Dict[str, RelayPeerChannel] = {}
        self._send_lock = asyncio.Lock()
        self._reader = asyncio.create_task(self._read())

    async def _send_frame(self, frame: Dict[str, Any]) -> None:
        try:
            async with self._send_lock:
                await self._ws.send(json.dumps(frame))
        except ConnectionClosed as exc:
            raise ChannelClosed(f"relay connection for {self.address} is closed") from exc

    async def _read(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.debug("Dropping unreadable relay frame")
                    continue
                self._route(frame)
        except ConnectionClosed as exc:
            logger.info("Relay connection for %s closed: %s", self.address, exc)
        finally:
            for channel in list(self._channels.values()):
                channel._remote_closed()
            self._channels.clear()
            self._shut()

    def _route(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            return
        event, peer_id = frame.get("event"), frame.get("peer")
        if not isinstance(peer_id, str):
            return

        if event == "open":
            channel = RelayPeerChannel(self, peer_id)
            self._channels[peer_id] = channel
            self._offer(channel)
        elif event == "message":
            channel = self._channels.get(peer_id)
            if channel is not None:
                channel._deliver(frame.get("data"))
        elif event == "close":
            channel = self._channels.pop(peer_id, None)
            if channel is not None:
                channel._remote_closed()

    async def close(self) -> None:
        await self._ws.close()
        await asyncio.gather(self._reader, return_exceptions=True)


class WebSocketChannel:
    """Participant-side channel: one relay socket carrying bare messages."""

    def __init__(self, peer_id: str, websocket):
        self.peer_id = peer_id
        self._ws = websocket

    async def send(self, message: Dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise ChannelClosed(f"channel to {self.peer_id} is closed") from exc

    async def receive(self) -> Dict[str, Any]:
        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as exc:
                raise ChannelClosed(f"channel to {self.peer_id} is closed") from exc
            try:
                return json.loads(raw)
            except ValueError:
                logger.debug("Dropping unreadable message from %s", self.peer_id)

    async def close(self) -> None:
        await self._ws.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        try:
            return await self.receive()
        except ChannelClosed as exc:
            raise StopAsyncIteration from exc


class RelayTransport:
    def __init__(self, relay_url: Optional[str] = None):
        self.relay_url = (relay_url or settings.RELAY_URL).rstrip("/")

    async def listen(self, address: str) -> RelayListener:
        websocket = await _connect(f"{self.relay_url}/ws/host/{address}")
        logger.info("Listening on %s via %s", address, self.relay_url)
        return RelayListener(address, websocket)

    async def dial(self, address: str) -> WebSocketChannel:
        websocket = await _connect(f"{self.relay_url}/ws/join/{address}")
        return WebSocketChannel(address, websocket)
